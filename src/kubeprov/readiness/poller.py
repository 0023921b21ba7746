# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/readiness/poller.py

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Optional

from ..errors import ReadinessTimeout
from ..observers.dispatcher import EventBus
from ..observers.events import WaiterStarted, WaiterSucceeded, WaiterTimedOut, new_ctx, stamp

log = logging.getLogger("kubeprov")

DEFAULT_TIMEOUT = 15 * 60
DEFAULT_INTERVAL = 5.0


class PollState(str, Enum):
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"


class ReadinessPoller:
    """
    Fixed-interval poll-until-timeout state machine.

    The condition is evaluated immediately, then every ``interval`` seconds.
    The final sleep is clipped to the deadline so a condition that never
    becomes true fails after at most ``timeout`` (plus the cost of the last
    evaluation), always within ``timeout + interval``.
    """

    def __init__(
        self,
        condition: Callable[[], bool],
        *,
        timeout: float = DEFAULT_TIMEOUT,
        interval: float = DEFAULT_INTERVAL,
        description: str = "condition",
        ignore_errors: bool = False,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if timeout < 0:
            raise ValueError("timeout must be >= 0")
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.condition = condition
        self.timeout = timeout
        self.interval = interval
        self.description = description
        self.ignore_errors = ignore_errors
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self.state = PollState.POLLING
        self.polls = 0
        self.elapsed = 0.0

    def _evaluate(self) -> bool:
        self.polls += 1
        try:
            return bool(self.condition())
        except Exception as exc:
            if not self.ignore_errors:
                raise
            log.debug("[wait] %s: poll %d raised %s", self.description, self.polls, exc)
            return False

    def run(self) -> None:
        start = self._clock()
        deadline = start + self.timeout

        while True:
            if self._evaluate():
                self.state = PollState.SUCCEEDED
                self.elapsed = self._clock() - start
                return

            now = self._clock()
            self.elapsed = now - start
            if now >= deadline:
                self.state = PollState.TIMED_OUT
                raise ReadinessTimeout(
                    f"Timed out after {self.timeout}s waiting for {self.description}"
                )

            self._sleep(min(self.interval, deadline - now))


def wait_for(
    condition: Callable[[], bool],
    timeout: float = DEFAULT_TIMEOUT,
    interval: float = DEFAULT_INTERVAL,
    *,
    description: str = "condition",
    ignore_errors: bool = False,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> ReadinessPoller:
    """
    Block until ``condition()`` returns True, raising ReadinessTimeout once
    ``timeout`` seconds have elapsed. Emits waiter events when a bus is given.
    """
    poller = ReadinessPoller(
        condition,
        timeout=timeout,
        interval=interval,
        description=description,
        ignore_errors=ignore_errors,
        clock=clock,
        sleep=sleep,
    )
    ctx = run_ctx or new_ctx(cluster="-")

    if bus:
        bus.emit(WaiterStarted(name=description, timeout_s=timeout, **stamp(ctx)))
    try:
        poller.run()
    except ReadinessTimeout:
        if bus:
            bus.emit(WaiterTimedOut(name=description, timeout_s=timeout, **stamp(ctx)))
        raise
    if bus:
        bus.emit(WaiterSucceeded(name=description, polls=poller.polls, **stamp(ctx)))
    return poller
