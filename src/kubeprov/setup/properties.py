# src/kubeprov/setup/properties.py
"""
Well-known setup context keys.

Cluster-level objects are declared untyped: their classes depend on the
setup package and would otherwise form an import cycle.
"""

from __future__ import annotations

from ..config.models import ClusterDefinition
from ..node.models import SshCredentials
from .context import ContextKey

CLUSTER_DEFINITION: ContextKey[ClusterDefinition] = ContextKey(
    "cluster-definition", ClusterDefinition, "validated cluster definition"
)
CLUSTER_PROXY = ContextKey("cluster-proxy", None, "ClusterProxy for the cluster being set up")
HOSTING_MANAGER = ContextKey("hosting-manager", None, "HostingManager for the environment")
CLUSTER_LOGIN = ContextKey("cluster-login", None, "persisted ClusterLogin")
K8S_CLIENT = ContextKey("k8s-client", None, "RetryingKubeClient connected to the new cluster")
SSH_CREDENTIALS: ContextKey[SshCredentials] = ContextKey(
    "ssh-credentials", SshCredentials, "credentials the nodes are switched to"
)
JOIN_COMMAND: ContextKey[str] = ContextKey("join-command", str, "kubeadm join command for new nodes")
KUBECONFIG_PATH: ContextKey[str] = ContextKey("kubeconfig-path", str, "admin kubeconfig on the operator host")
DEBUG_MODE: ContextKey[bool] = ContextKey("debug-mode", bool)
MAX_PARALLEL: ContextKey[int] = ContextKey("max-parallel", int)
CONTROL_PLANE_JOIN_COMMAND: ContextKey[str] = ContextKey(
    "control-plane-join-command", str, "kubeadm join command for additional masters"
)
