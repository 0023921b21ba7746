# src/kubeprov/k8s/health.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List

log = logging.getLogger("kubeprov")

CONTROL_PLANE_NAMESPACE = "kube-system"


class KubeHealthState(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TRANSITIONING = "transitioning"


@dataclass(frozen=True)
class KubeClusterHealth:
    state: KubeHealthState
    summary: str
    ready_nodes: int = 0
    total_nodes: int = 0
    not_ready: List[str] = field(default_factory=list)


def _node_ready(node) -> bool:
    for cond in (node.status.conditions or []):
        if cond.type == "Ready":
            return cond.status == "True"
    return False


def get_cluster_health(kube) -> KubeClusterHealth:
    """
    Probe node readiness and the kube-system deployments.

    Unready nodes mean UNHEALTHY; all nodes ready but a control-plane
    deployment still rolling out means TRANSITIONING.
    """
    nodes = kube.core.list_node().items
    not_ready = sorted(n.metadata.name for n in nodes if not _node_ready(n))
    ready = len(nodes) - len(not_ready)

    if not nodes:
        return KubeClusterHealth(KubeHealthState.UNHEALTHY, "no nodes registered")
    if not_ready:
        return KubeClusterHealth(
            KubeHealthState.UNHEALTHY,
            f"{len(not_ready)} node(s) not ready: {', '.join(not_ready)}",
            ready,
            len(nodes),
            not_ready,
        )

    rolling = []
    for d in kube.apps.list_namespaced_deployment(namespace=CONTROL_PLANE_NAMESPACE).items:
        desired = d.spec.replicas or 0
        available = d.status.available_replicas or 0
        if available < desired:
            rolling.append(d.metadata.name)

    if rolling:
        return KubeClusterHealth(
            KubeHealthState.TRANSITIONING,
            f"waiting for {', '.join(sorted(rolling))}",
            ready,
            len(nodes),
        )

    return KubeClusterHealth(KubeHealthState.HEALTHY, f"{ready}/{len(nodes)} nodes ready", ready, len(nodes))
