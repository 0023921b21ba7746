# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/hosting/base.py

from __future__ import annotations

import logging
import secrets
import string
from abc import ABC
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Optional, Tuple

from ..config.models import ClusterDefinition, HostingEnvironment
from ..errors import ClusterDefinitionError, NotSupportedError

if TYPE_CHECKING:
    from ..node.proxy import NodeProxy
    from ..setup.controller import SetupController

log = logging.getLogger("kubeprov")

# Returned by get_data_disk() when the node has no dedicated data disk.
PRIMARY_DISK = "PRIMARY"

SSH_PORT = 22


class HostingResult(str, Enum):
    APPLIED = "applied"
    UNSUPPORTED = "unsupported"


class InfraState(str, Enum):
    """Infrastructure-level view of a cluster as reported by its hosting environment."""

    UNKNOWN = "unknown"
    NOT_PROVISIONED = "not-provisioned"
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    TRANSITIONING = "transitioning"


class StopMode(str, Enum):
    GRACEFUL = "graceful"
    TURN_OFF = "turn-off"
    PAUSE = "pause"


def generate_password(length: int = 20) -> str:
    """
    Random password with a fixed ``.Aa0`` suffix so platform complexity rules
    (symbol, upper, lower, digit) are always satisfied.
    """
    if length < 8:
        raise ValueError("password length must be >= 8")
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length - 4)) + ".Aa0"


def combine_states(states) -> InfraState:
    states = set(states)
    if not states:
        return InfraState.NOT_PROVISIONED
    if len(states) == 1:
        return states.pop()
    return InfraState.TRANSITIONING


class HostingManager(ABC):
    """
    Environment-specific infrastructure operations.

    The defaults describe an environment with no router and no lifecycle
    control: router/SSH changes report UNSUPPORTED and lifecycle methods raise
    NotSupportedError. Variants override what their environment can do.
    """

    environment: ClassVar[HostingEnvironment]
    can_manage_router: ClassVar[bool] = False
    requires_admin_privileges: ClassVar[bool] = False
    generate_secure_password: ClassVar[bool] = False
    max_parallel: ClassVar[int] = 10

    def __init__(self, definition: ClusterDefinition):
        self.definition = definition

    def __repr__(self) -> str:
        return f"{type(self).__name__}(cluster={self.definition.name!r})"

    # ------------------ validation ------------------

    def validate(self, definition: Optional[ClusterDefinition] = None) -> None:
        definition = definition or self.definition
        if definition.hosting.environment != self.environment:
            raise ClusterDefinitionError(
                f"{type(self).__name__} cannot manage '{definition.hosting.environment.value}' clusters",
                field="hosting.environment",
            )

    # ------------------ setup steps ------------------

    def add_provisioning_steps(self, controller: "SetupController") -> None:
        pass

    def add_post_provisioning_steps(self, controller: "SetupController") -> None:
        pass

    def add_deprovisioning_steps(self, controller: "SetupController") -> None:
        pass

    # ------------------ networking ------------------

    def update_internet_routing(self) -> HostingResult:
        return HostingResult.UNSUPPORTED

    def enable_internet_ssh(self) -> HostingResult:
        return HostingResult.UNSUPPORTED

    def disable_internet_ssh(self) -> HostingResult:
        return HostingResult.UNSUPPORTED

    def get_ssh_endpoint(self, node_name: str) -> Tuple[str, int]:
        node = self.definition.by_name().get(node_name)
        if node is None:
            raise KeyError(f"node '{node_name}' is not part of cluster '{self.definition.name}'")
        return node.address, SSH_PORT

    def get_data_disk(self, node: "NodeProxy") -> str:
        return node.definition.data_disk or PRIMARY_DISK

    # ------------------ lifecycle ------------------

    def _unsupported(self, operation: str) -> NotSupportedError:
        return NotSupportedError(
            f"'{self.environment.value}' hosting does not support {operation}"
        )

    def get_cluster_status(self) -> InfraState:
        raise self._unsupported("status queries")

    def start_cluster(self) -> None:
        raise self._unsupported("starting clusters")

    def stop_cluster(self, mode: StopMode = StopMode.GRACEFUL) -> None:
        raise self._unsupported("stopping clusters")

    def remove_cluster(self) -> None:
        raise self._unsupported("removing clusters")

    def start_node(self, node_name: str) -> None:
        raise self._unsupported("starting nodes")

    def stop_node(self, node_name: str, mode: StopMode = StopMode.GRACEFUL) -> None:
        raise self._unsupported("stopping nodes")

    def vm_name(self, node_name: str) -> str:
        return f"{self.definition.name}-{node_name}"
