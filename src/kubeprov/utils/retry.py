# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from ..errors import RetryError

log = logging.getLogger("kubeprov")

T = TypeVar("T")

DEFAULT_JOIN_ATTEMPTS = 10
DEFAULT_JOIN_DELAY = 5.0


def _succeeded(result: Any) -> bool:
    # Remote command responses expose .success; everything else is truthiness.
    success = getattr(result, "success", None)
    if isinstance(success, bool):
        return success
    return bool(result)


def join_with_retry(
    action: Callable[[], Any],
    *,
    max_attempts: int = DEFAULT_JOIN_ATTEMPTS,
    delay: float = DEFAULT_JOIN_DELAY,
    description: str = "join",
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Attempt a node-join style action up to ``max_attempts`` times with a fixed
    ``delay`` between attempts. The action signals success by returning a
    truthy value (or a response whose ``success`` is True); raising counts as
    a failed attempt.

    Returns the attempt number that succeeded; raises RetryError otherwise.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_exc: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            if _succeeded(action()):
                if attempt > 1:
                    log.info("%s succeeded on attempt %d/%d", description, attempt, max_attempts)
                return attempt
            last_exc = None
        except Exception as exc:
            last_exc = exc
            log.debug("%s attempt %d/%d raised: %s", description, attempt, max_attempts, exc)

        if attempt < max_attempts:
            log.info("%s attempt %d/%d failed, retrying in %ss", description, attempt, max_attempts, delay)
            sleep(delay)

    raise RetryError(f"Unable to {description} after [{max_attempts}] attempts.") from last_exc


@dataclass
class ExponentialRetryPolicy:
    """
    Retries transient failures with doubling backoff, capped at
    ``max_interval`` and bounded by an overall ``timeout``. Exceptions the
    detector does not consider transient propagate immediately.
    """

    transient_detector: Callable[[BaseException], bool]
    max_attempts: int = 1_000_000
    initial_interval: float = 1.0
    max_interval: float = 5.0
    timeout: float = 120.0
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def invoke(self, fn: Callable[..., T], *args, **kwargs) -> T:
        deadline = self.clock() + self.timeout
        interval = self.initial_interval
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if not self.transient_detector(exc):
                    raise
                remaining = deadline - self.clock()
                if attempt >= self.max_attempts or remaining <= 0:
                    raise RetryError(
                        f"transient failure persisted after {attempt} attempts: {exc}"
                    ) from exc
                log.debug("transient error (attempt %d), retrying in %.1fs: %s", attempt, interval, exc)
                self.sleep(min(interval, remaining))
                interval = min(interval * 2, self.max_interval)
