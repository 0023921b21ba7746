# src/kubeprov/setup/common.py

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..config.settings import SetupOptions
from ..observers.dispatcher import EventBus
from . import properties
from .context import SetupContext
from .controller import SetupController

if TYPE_CHECKING:
    from ..cluster.proxy import ClusterProxy


def new_controller(
    title: str,
    cluster: "ClusterProxy",
    options: Optional[SetupOptions] = None,
    bus: Optional[EventBus] = None,
    run_id: Optional[str] = None,
) -> SetupController:
    """
    Controller over every node of ``cluster`` with the context pre-seeded
    with the cluster-level objects steps look up.
    """
    options = options or SetupOptions()
    max_parallel = min(options.max_parallel, cluster.hosting_manager.max_parallel)

    context = SetupContext()
    context.set(properties.CLUSTER_DEFINITION, cluster.definition)
    context.set(properties.CLUSTER_PROXY, cluster)
    context.set(properties.HOSTING_MANAGER, cluster.hosting_manager)
    context.set(properties.DEBUG_MODE, options.debug)
    context.set(properties.MAX_PARALLEL, max_parallel)
    if cluster.login is not None:
        context.set(properties.CLUSTER_LOGIN, cluster.login)

    return SetupController(
        title,
        cluster.nodes,
        max_parallel=max_parallel,
        bus=bus or cluster.bus,
        context=context,
        cluster=cluster.name,
        run_id=run_id,
    )
