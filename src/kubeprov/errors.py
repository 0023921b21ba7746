# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class KubeprovError(RuntimeError):
    """Base class for provisioning failures."""


class ClusterDefinitionError(KubeprovError):
    """Raised when a cluster definition is invalid or inconsistent."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        if field:
            message = f"[{field}]: {message}"
        super().__init__(message)


class StepRegistrationError(KubeprovError):
    """Raised when a step cannot be added to a setup controller."""


class MissingContextKeyError(KubeprovError, KeyError):
    """Raised when a step reads a context key no earlier step populated."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


@dataclass(frozen=True)
class StepFailure:
    step: str
    node: Optional[str]          # None for global steps
    error: str
    exception: Optional[BaseException] = None

    def describe(self) -> str:
        target = self.node or "<global>"
        return f"{self.step} on {target}: {self.error}"


class SetupFailedError(KubeprovError):
    """Raised by SetupResult.raise_on_failure() when any step faulted."""

    def __init__(self, title: str, failures: List[StepFailure]):
        self.failures = list(failures)
        lines = "\n".join(f"  - {f.describe()}" for f in self.failures)
        super().__init__(f"{title} failed:\n{lines}")


class GlobalStepError(SetupFailedError):
    """A global step failed; the run was aborted at that step."""


class ReadinessTimeout(KubeprovError, TimeoutError):
    """A polled condition never became true within its timeout."""


class RetryError(KubeprovError):
    """A retried action exhausted its attempt budget."""


class ClusterLockedError(KubeprovError):
    """A destructive lifecycle operation was requested on a locked cluster."""


class ClusterLockUnknownError(ClusterLockedError):
    """The lock could not be read while the cluster infrastructure is up."""


class ClusterLockConflict(KubeprovError):
    """The lock record changed between read and write."""


class NotSupportedError(KubeprovError, NotImplementedError):
    """The hosting environment does not support the requested operation."""


class RemoteCommandError(KubeprovError):
    """A remote command exited with a non-zero status."""

    def __init__(self, node: str, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        self.node = node
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip()
        msg = f"[{node}] command failed (rc={exit_code}): {command}"
        if detail:
            msg += f"\n{detail}"
        super().__init__(msg)
