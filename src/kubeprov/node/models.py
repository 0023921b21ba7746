# src/kubeprov/node/models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class SshCredentials:
    """
    How to authenticate to a node. Either a password or a private key
    (path or PEM text) must be provided.
    """
    username: str
    password: Optional[str] = None
    pkey_path: Optional[str] = None
    pkey_text: Optional[str] = None   # PEM; takes precedence over pkey_path

    def __post_init__(self):
        if not (self.password or self.pkey_path or self.pkey_text):
            raise ValueError(f"credentials for '{self.username}' need a password or a private key")

    def __repr__(self) -> str:
        return f"SshCredentials(username={self.username!r}, password={'***' if self.password else None}, pkey_path={self.pkey_path!r})"


class NodeState(str, Enum):
    """Per-node execution state; FAULTED is terminal for a run."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAULTED = "faulted"


@dataclass(frozen=True)
class CommandResponse:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def all_text(self) -> str:
        return self.stdout + self.stderr
