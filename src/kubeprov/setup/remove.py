# src/kubeprov/setup/remove.py

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..observers.dispatcher import EventBus
from .common import new_controller
from .controller import SetupController, SetupResult

if TYPE_CHECKING:
    from ..cluster.proxy import ClusterProxy


def build_remove_controller(cluster: "ClusterProxy", bus: Optional[EventBus] = None) -> SetupController:
    controller = new_controller(f"remove [{cluster.name}]", cluster, bus=bus)
    cluster.hosting_manager.add_deprovisioning_steps(controller)
    controller.add_global_step("remove/forget", lambda ctx: cluster.forget(), "remove kube context and login")
    return controller


def remove_cluster(cluster: "ClusterProxy", bus: Optional[EventBus] = None) -> SetupResult:
    """Deprovision ``cluster``; refuses locked clusters before touching anything."""
    cluster.ensure_unlocked("remove")
    return build_remove_controller(cluster, bus).run()
