# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/node/proxy.py

from __future__ import annotations

import logging
import posixpath
import re
import shlex
import threading
import time
from typing import Any, Callable, Optional, Tuple

from ..config.models import NodeDefinition
from ..errors import RemoteCommandError
from ..readiness.poller import wait_for
from ..utils.ssh_runner import SSHRunner, open_ssh
from .models import CommandResponse, NodeState, SshCredentials

log = logging.getLogger("kubeprov")

MARKER_ROOT = "/var/lib/kubeprov/state"
REDACTED = "[REDACTED]"

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+(/[A-Za-z0-9_.-]+)*$")

Connector = Callable[[str, int, SshCredentials], SSHRunner]
EndpointResolver = Callable[[], Tuple[str, int]]


def validate_key(key: str) -> str:
    """
    Idempotency keys map to paths below MARKER_ROOT, so they must be
    relative, '/'-separated and free of '.'/'..' segments.
    """
    if not key or not _KEY_RE.match(key) or any(seg in (".", "..") for seg in key.split("/")):
        raise ValueError(f"invalid idempotency key: {key!r}")
    return key


def marker_path(key: str) -> str:
    return posixpath.join(MARKER_ROOT, validate_key(key))


def _default_connector(address: str, port: int, credentials: SshCredentials) -> SSHRunner:
    return open_ssh(address, port, credentials)


class NodeProxy:
    """
    Remote execution endpoint for one cluster node.

    The SSH session is opened lazily on the first command. ``status`` and
    ``state`` are written by whichever step currently owns the node and may be
    read concurrently (console updaters, observers).
    """

    def __init__(
        self,
        definition: NodeDefinition,
        credentials: Optional[SshCredentials] = None,
        *,
        endpoint: Optional[EndpointResolver] = None,
        connector: Optional[Connector] = None,
        cmd_timeout: float = 600.0,
    ):
        self.definition = definition
        self._credentials = credentials
        self._endpoint = endpoint or (lambda: (definition.address, 22))
        self._connector = connector or _default_connector
        self.cmd_timeout = cmd_timeout

        self._runner: Optional[SSHRunner] = None
        self._conn_lock = threading.RLock()
        self._status_lock = threading.Lock()
        self._status = ""
        self._state = NodeState.PENDING
        self._fault: Optional[str] = None

    def __repr__(self) -> str:
        return f"NodeProxy({self.name!r}, role={self.role!r}, state={self.state.value})"

    # ------------------ identity ------------------

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def address(self) -> str:
        return self.definition.address

    @property
    def role(self) -> str:
        return self.definition.role

    @property
    def is_master(self) -> bool:
        return self.definition.is_master

    @property
    def is_worker(self) -> bool:
        return self.definition.is_worker

    # ------------------ status ------------------

    @property
    def status(self) -> str:
        with self._status_lock:
            return self._status

    @status.setter
    def status(self, value: Optional[str]) -> None:
        with self._status_lock:
            self._status = value or ""

    @property
    def state(self) -> NodeState:
        with self._status_lock:
            return self._state

    @property
    def is_faulted(self) -> bool:
        return self.state is NodeState.FAULTED

    @property
    def fault_message(self) -> Optional[str]:
        with self._status_lock:
            return self._fault

    def set_state(self, state: NodeState, status: Optional[str] = None) -> None:
        with self._status_lock:
            if self._state is NodeState.FAULTED and state is not NodeState.FAULTED:
                return
            self._state = state
            if status is not None:
                self._status = status

    def fault(self, message: str) -> None:
        with self._status_lock:
            self._state = NodeState.FAULTED
            self._fault = message
            self._status = f"[x] {message}"

    def reset_state(self) -> None:
        """Forget a previous fault; used when a new run starts."""
        with self._status_lock:
            self._state = NodeState.PENDING
            self._fault = None
            self._status = ""

    # ------------------ connection ------------------

    @property
    def credentials(self) -> Optional[SshCredentials]:
        return self._credentials

    @property
    def is_connected(self) -> bool:
        with self._conn_lock:
            return self._runner is not None

    @property
    def ssh_endpoint(self) -> Tuple[str, int]:
        return self._endpoint()

    def connect(self) -> SSHRunner:
        with self._conn_lock:
            if self._runner is None:
                if self._credentials is None:
                    raise RuntimeError(f"[{self.name}] no SSH credentials configured")
                address, port = self._endpoint()
                log.debug("[%s] connecting to %s:%d as %s", self.name, address, port, self._credentials.username)
                self._runner = self._connector(address, port, self._credentials)
            return self._runner

    def disconnect(self) -> None:
        with self._conn_lock:
            runner, self._runner = self._runner, None
        if runner is not None:
            try:
                runner.close()
            except Exception as exc:
                log.debug("[%s] error closing SSH session: %s", self.name, exc)

    def update_credentials(self, credentials: SshCredentials) -> None:
        """Switch credentials; the next command reconnects with them."""
        self.disconnect()
        with self._conn_lock:
            self._credentials = credentials

    def try_connect(self) -> bool:
        try:
            self.connect()
            return True
        except Exception as exc:
            log.debug("[%s] SSH not ready: %s: %s", self.name, type(exc).__name__, exc)
            self.disconnect()
            return False

    def wait_for_boot(self, timeout: float = 15 * 60, interval: float = 5.0) -> None:
        """Poll until an SSH session can be established; raises ReadinessTimeout."""
        self.disconnect()
        wait_for(self.try_connect, timeout, interval, description=f"{self.name} ssh")

    # ------------------ commands ------------------

    def _format(self, command: str, args: Tuple[Any, ...]) -> str:
        if not args:
            return command
        return " ".join([command, *(shlex.quote(str(a)) for a in args)])

    def run_command(
        self,
        command: str,
        *args: Any,
        sudo: bool = False,
        redact: bool = False,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> CommandResponse:
        full = self._format(command, args)
        shown = REDACTED if redact else full
        log.debug("[%s] $ %s", self.name, shown)

        rc, out, err = self.connect().run(full, sudo=sudo, timeout=timeout or self.cmd_timeout)
        response = CommandResponse(exit_code=rc, stdout=out, stderr=err)

        if rc != 0:
            log.debug("[%s][exit %d] %s", self.name, rc, shown)
            if check:
                raise RemoteCommandError(
                    self.name,
                    shown,
                    rc,
                    "" if redact else out,
                    "" if redact else err,
                )
        return response

    def sudo(self, command: str, *args: Any, redact: bool = False, check: bool = True,
             timeout: Optional[float] = None) -> CommandResponse:
        """Run a privileged command; ``args`` are shell-quoted."""
        return self.run_command(command, *args, sudo=True, redact=redact, check=check, timeout=timeout)

    # ------------------ files ------------------

    def _apply_mode(self, path: str, permissions: Optional[str], owner: Optional[str]) -> None:
        if permissions:
            self.sudo("chmod", permissions, path)
        if owner:
            self.sudo("chown", owner, path)

    def upload_bytes(self, path: str, content: bytes, *, permissions: Optional[str] = None,
                     owner: Optional[str] = None) -> None:
        log.debug("[%s] upload %s (%d bytes)", self.name, path, len(content))
        self.sudo("mkdir", "-p", posixpath.dirname(path) or "/")
        self.connect().put_bytes(content, path, sudo=True)
        self._apply_mode(path, permissions, owner)

    def upload_text(self, path: str, text: str, *, permissions: Optional[str] = None,
                    owner: Optional[str] = None) -> None:
        # Linux line endings regardless of where the payload was authored.
        self.upload_bytes(path, text.replace("\r\n", "\n").encode("utf-8"),
                          permissions=permissions, owner=owner)

    def download_bytes(self, path: str) -> bytes:
        return self.connect().get_bytes(path, sudo=True)

    def download_text(self, path: str) -> str:
        return self.download_bytes(path).decode("utf-8")

    def file_exists(self, path: str) -> bool:
        return self.sudo("test", "-f", path, check=False).success

    # ------------------ reboot ------------------

    def _boot_id(self) -> str:
        return self.run_command("cat /proc/sys/kernel/random/boot_id").stdout.strip()

    def reboot(self, wait: bool = True, timeout: float = 15 * 60, interval: float = 5.0) -> None:
        """
        Reboot the node. When ``wait`` is set, block until SSH is back and the
        kernel boot id has changed.
        """
        before = self._boot_id()
        log.info("[%s] rebooting", self.name)
        try:
            self.sudo("systemctl reboot", check=False, timeout=30)
        except Exception as exc:
            # The session commonly drops while the command is in flight.
            log.debug("[%s] reboot command interrupted: %s", self.name, exc)
        self.disconnect()

        if not wait:
            return

        def _rebooted() -> bool:
            if not self.try_connect():
                return False
            try:
                return self._boot_id() != before
            except Exception:
                self.disconnect()
                return False

        time.sleep(min(interval, 5.0))
        wait_for(_rebooted, timeout, interval, description=f"{self.name} reboot")

    # ------------------ idempotency ledger ------------------

    def has_marker(self, key: str) -> bool:
        return self.file_exists(marker_path(key))

    def set_marker(self, key: str) -> None:
        path = marker_path(key)
        self.sudo("mkdir", "-p", posixpath.dirname(path))
        self.sudo("touch", path)

    def clear_marker(self, key: str) -> None:
        self.sudo("rm", "-f", marker_path(key))

    def invoke_idempotent(self, key: str, action: Callable[[], Any]) -> bool:
        """
        Run ``action`` unless the marker for ``key`` already exists on the
        node. The marker is written only after ``action`` returns, so an
        interrupted action is retried by the next run. Returns True when the
        action ran.
        """
        if self.has_marker(key):
            log.debug("[%s] %s: already done", self.name, key)
            return False

        action()
        self.set_marker(key)
        return True
