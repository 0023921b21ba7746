# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/cluster/proxy.py

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from kubernetes.client.rest import ApiException

from ..config.models import ClusterDefinition
from ..config.settings import kubeprov_home
from ..errors import ClusterLockedError, ClusterLockUnknownError, KubeprovError, NotSupportedError
from ..hosting.base import HostingManager, InfraState, StopMode
from ..hosting.registry import get_hosting_manager
from ..k8s.client import RetryingKubeClient
from ..k8s.health import KubeClusterHealth, KubeHealthState, get_cluster_health
from ..node.models import SshCredentials
from ..node.proxy import Connector, NodeProxy
from ..observers.dispatcher import EventBus
from ..observers.events import LifecycleRequested, LockChanged, new_ctx, stamp
from .lock import LOCK_NAMESPACE, ClusterLockStore, ConfigMapLockStore, LockRecord
from .login import ClusterLogin

log = logging.getLogger("kubeprov")

# Infrastructure states in which an unreadable lock does not block lifecycle calls.
LOCK_OPTIONAL_STATES = frozenset({InfraState.STOPPED, InfraState.PAUSED, InfraState.NOT_PROVISIONED})

# Namespaces reset() never deletes.
INTERNAL_NAMESPACES = frozenset(
    {"default", "kube-system", "kube-public", "kube-node-lease", LOCK_NAMESPACE}
)

KubeFactory = Callable[["ClusterProxy"], RetryingKubeClient]


class ReachableMode(str, Enum):
    RETURN_FIRST = "return-first"   # fall back to the first candidate
    THROW = "throw"
    RETURN_NONE = "return-none"


class ClusterState(str, Enum):
    UNKNOWN = "unknown"
    CONFIGURED = "configured"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TRANSITIONING = "transitioning"
    PAUSED = "paused"


@dataclass(frozen=True)
class ClusterStatus:
    cluster: str
    state: ClusterState
    infra: InfraState
    is_locked: Optional[bool]
    summary: str = ""
    health: Optional[KubeClusterHealth] = None


def _default_kube_factory(cluster: "ClusterProxy") -> RetryingKubeClient:
    login = cluster.login
    kubeconfig = (login.kubeconfig_path if login else None) or os.environ.get("KUBECONFIG")
    context = login.kube_context if login else None
    return RetryingKubeClient.from_kubeconfig(kubeconfig, context)


def definition_credentials(definition: ClusterDefinition) -> Optional[SshCredentials]:
    sec = definition.security
    if not (sec.ssh_password or sec.ssh_pkey_path):
        return None
    return SshCredentials(username=sec.ssh_username, password=sec.ssh_password, pkey_path=sec.ssh_pkey_path)


class ClusterProxy:
    """
    Handle on one cluster: its nodes, hosting manager, Kubernetes client and
    lock. Destructive lifecycle operations check the lock before doing
    anything else.
    """

    def __init__(
        self,
        definition: ClusterDefinition,
        hosting_manager: Optional[HostingManager] = None,
        *,
        login: Optional[ClusterLogin] = None,
        credentials: Optional[SshCredentials] = None,
        connector: Optional[Connector] = None,
        kube_factory: Optional[KubeFactory] = None,
        lock_store: Optional[ClusterLockStore] = None,
        bus: Optional[EventBus] = None,
        logins_root: Optional[Path] = None,
    ):
        self.definition = definition
        self.hosting_manager = hosting_manager or get_hosting_manager(definition)
        self.logins_root = logins_root
        self.login = login if login is not None else ClusterLogin.load(definition.name, logins_root)
        self.bus = bus or EventBus()
        self.run_ctx = new_ctx(cluster=definition.name)
        self._kube_factory = kube_factory or _default_kube_factory
        self._kube: Optional[RetryingKubeClient] = None
        self._lock_store = lock_store

        if credentials is None:
            fallback = definition.security.ssh_password
            if self.login is not None and self.login.ssh_private_key:
                credentials = self.login.credentials(fallback)
            else:
                credentials = definition_credentials(definition)

        self.nodes: List[NodeProxy] = [
            NodeProxy(
                node,
                credentials,
                endpoint=lambda name=node.name: self.hosting_manager.get_ssh_endpoint(name),
                connector=connector,
            )
            for node in sorted(definition.nodes, key=lambda n: n.name)
        ]

    @property
    def name(self) -> str:
        return self.definition.name

    def __repr__(self) -> str:
        return f"ClusterProxy({self.name!r}, nodes={len(self.nodes)})"

    # ------------------ nodes ------------------

    @property
    def masters(self) -> List[NodeProxy]:
        return [n for n in self.nodes if n.is_master]

    @property
    def workers(self) -> List[NodeProxy]:
        return [n for n in self.nodes if n.is_worker]

    @property
    def first_master(self) -> NodeProxy:
        return self.masters[0]

    def find_node(self, name: str) -> Optional[NodeProxy]:
        return next((n for n in self.nodes if n.name == name), None)

    def get_node(self, name: str) -> NodeProxy:
        node = self.find_node(name)
        if node is None:
            raise KeyError(f"cluster '{self.name}' has no node '{name}'")
        return node

    def get_reachable_node(
        self,
        predicate: Optional[Callable[[NodeProxy], bool]] = None,
        mode: ReachableMode = ReachableMode.RETURN_FIRST,
    ) -> Optional[NodeProxy]:
        candidates = [n for n in self.nodes if predicate is None or predicate(n)]
        for node in candidates:
            if node.try_connect():
                return node

        if mode is ReachableMode.RETURN_NONE:
            return None
        if mode is ReachableMode.RETURN_FIRST and candidates:
            log.warning("[%s] no node reachable, using %s", self.name, candidates[0].name)
            return candidates[0]
        raise KubeprovError(f"cluster '{self.name}': no reachable node matches")

    def get_reachable_master(self, mode: ReachableMode = ReachableMode.RETURN_FIRST) -> Optional[NodeProxy]:
        return self.get_reachable_node(lambda n: n.is_master, mode)

    def clear_status(self) -> None:
        for node in self.nodes:
            node.reset_state()

    def update_credentials(self, credentials: SshCredentials) -> None:
        for node in self.nodes:
            node.update_credentials(credentials)

    def dispose(self) -> None:
        for node in self.nodes:
            node.disconnect()
        if self._kube is not None:
            self._kube.close()
            self._kube = None

    # ------------------ kubernetes ------------------

    @property
    def k8s(self) -> RetryingKubeClient:
        if self._kube is None:
            self._kube = self._kube_factory(self)
        return self._kube

    def set_k8s(self, kube: RetryingKubeClient) -> None:
        self._kube = kube

    @property
    def lock_store(self) -> ClusterLockStore:
        if self._lock_store is None:
            self._lock_store = ConfigMapLockStore(self.k8s)
        return self._lock_store

    # ------------------ lock ------------------

    def is_locked(self) -> Optional[bool]:
        """None when the lock record cannot be read (cluster down, no API)."""
        try:
            return self.lock_store.read().is_locked
        except Exception as exc:
            log.debug("[%s] unable to read lock: %s", self.name, exc)
            return None

    def _set_lock(self, locked: bool) -> None:
        current = self.lock_store.read()
        if current.is_locked == locked:
            return
        self.lock_store.write(LockRecord(is_locked=locked, version=current.version))
        log.info("[%s] cluster %s", self.name, "locked" if locked else "unlocked")
        self.bus.emit(LockChanged(locked=locked, **stamp(self.run_ctx)))

    def lock(self) -> None:
        self._set_lock(True)

    def unlock(self) -> None:
        self._set_lock(False)

    def _infra_state(self) -> InfraState:
        try:
            return self.hosting_manager.get_cluster_status()
        except NotSupportedError:
            return InfraState.UNKNOWN

    def _refuse(self, operation: str, reason: str, error: type) -> None:
        self.bus.emit(LifecycleRequested(operation=operation, allowed=False, reason=reason,
                                         **stamp(self.run_ctx)))
        raise error(reason)

    def ensure_unlocked(self, operation: str) -> None:
        """
        Fail fast unless the cluster is known to be unlocked.

        An unreadable lock lets the operation through only when the
        infrastructure is stopped, paused or not provisioned.
        """
        locked = self.is_locked()
        if locked:
            self._refuse(operation, f"cluster '{self.name}' is locked; unlock it before {operation}",
                         ClusterLockedError)
        if locked is None:
            infra = self._infra_state()
            if infra not in LOCK_OPTIONAL_STATES:
                self._refuse(
                    operation,
                    f"lock status of cluster '{self.name}' is unknown (infrastructure {infra.value}); "
                    f"refusing to {operation}",
                    ClusterLockUnknownError,
                )
            log.warning("[%s] lock unreadable, infrastructure %s; proceeding with %s",
                        self.name, infra.value, operation)
        self.bus.emit(LifecycleRequested(operation=operation, allowed=True, **stamp(self.run_ctx)))

    # ------------------ status ------------------

    def get_status(self) -> ClusterStatus:
        infra = self._infra_state()

        def status(state: ClusterState, summary: str, locked=None, health=None) -> ClusterStatus:
            return ClusterStatus(self.name, state, infra, locked, summary, health)

        if infra is InfraState.NOT_PROVISIONED:
            return status(ClusterState.UNKNOWN, "not provisioned")
        if infra in (InfraState.STOPPED, InfraState.PAUSED):
            return status(ClusterState.PAUSED, infra.value)
        if infra is InfraState.TRANSITIONING:
            return status(ClusterState.TRANSITIONING, "infrastructure changing state")
        if self.login is None:
            return status(ClusterState.UNKNOWN, "no login for this cluster")
        if self.login.setup_pending:
            return status(ClusterState.CONFIGURED, "provisioned, setup pending")

        locked = self.is_locked()
        try:
            health = get_cluster_health(self.k8s)
        except Exception as exc:
            return status(ClusterState.UNHEALTHY, f"health probe failed: {exc}", locked)

        state = {
            KubeHealthState.HEALTHY: ClusterState.HEALTHY,
            KubeHealthState.UNHEALTHY: ClusterState.UNHEALTHY,
            KubeHealthState.TRANSITIONING: ClusterState.TRANSITIONING,
        }[health.state]
        return status(state, health.summary, locked, health)

    # ------------------ lifecycle ------------------

    def start(self) -> None:
        log.info("[%s] starting", self.name)
        self.hosting_manager.start_cluster()

    def stop(self, mode: StopMode = StopMode.GRACEFUL) -> None:
        self.ensure_unlocked("stop")
        log.info("[%s] stopping (%s)", self.name, mode.value)
        self.hosting_manager.stop_cluster(mode)

    def pause(self) -> None:
        self.ensure_unlocked("pause")
        self.hosting_manager.stop_cluster(StopMode.PAUSE)

    def resume(self) -> None:
        self.ensure_unlocked("resume")
        self.hosting_manager.start_cluster()

    def reset(self, keep_namespaces: Iterable[str] = ()) -> List[str]:
        """
        Delete every non-internal namespace except ``keep_namespaces``.
        Returns the namespaces deleted.
        """
        self.ensure_unlocked("reset")
        keep = INTERNAL_NAMESPACES | set(keep_namespaces)
        deleted = []
        for ns in self.k8s.core.list_namespace().items:
            name = ns.metadata.name
            if name in keep:
                continue
            log.info("[%s] reset: deleting namespace %s", self.name, name)
            try:
                self.k8s.core.delete_namespace(name)
            except ApiException as exc:
                if exc.status != 404:
                    raise
            deleted.append(name)
        return deleted

    def remove(self) -> None:
        """Tear down infrastructure, then forget the kube context and login."""
        self.ensure_unlocked("remove")
        from ..setup.remove import build_remove_controller

        build_remove_controller(self).run().raise_on_failure()

    def forget(self) -> None:
        login = self.login
        if login is not None and login.kubeconfig_path:
            path = Path(login.kubeconfig_path)
            if path.exists() and kubeprov_home().resolve() in path.resolve().parents:
                path.unlink()
                log.info("[%s] removed kube context %s", self.name, path)
        ClusterLogin.delete(self.name, self.logins_root)
        self.login = None
        self.dispose()
