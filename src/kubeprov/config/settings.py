# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def kubeprov_home() -> Path:
    """State root for logs and cluster logins (KUBEPROV_HOME or ~/.kubeprov)."""
    env = os.environ.get("KUBEPROV_HOME")
    return Path(env) if env else Path.home() / ".kubeprov"


@dataclass(frozen=True)
class SetupOptions:
    """
    Tunables shared by the prepare/setup/remove controllers.
    """

    max_parallel: int = 10
    online_timeout_seconds: float = 15 * 60
    operation_timeout_seconds: float = 15 * 60
    poll_interval_seconds: float = 5.0
    join_attempts: int = 10
    join_delay_seconds: float = 5.0
    debug: bool = False
