# src/kubeprov/cluster/lock.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..errors import ClusterLockConflict

log = logging.getLogger("kubeprov")

LOCK_NAMESPACE = "kubeprov-status"
LOCK_CONFIGMAP = "cluster-lock"


@dataclass(frozen=True)
class LockRecord:
    is_locked: bool = False
    # Opaque version of the stored record; None when nothing is stored yet.
    version: Optional[str] = None


class ClusterLockStore(Protocol):
    def read(self) -> LockRecord:
        ...

    def write(self, record: LockRecord) -> LockRecord:
        """
        Persist ``record`` if the stored version still equals
        ``record.version``; raise ClusterLockConflict otherwise.
        """
        ...


class ConfigMapLockStore:
    """Lock record kept in a ConfigMap; resourceVersion provides compare-and-set."""

    def __init__(self, kube, namespace: str = LOCK_NAMESPACE, name: str = LOCK_CONFIGMAP):
        self.kube = kube
        self.namespace = namespace
        self.name = name

    def read(self) -> LockRecord:
        try:
            cm = self.kube.core.read_namespaced_config_map(self.name, self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return LockRecord(is_locked=False, version=None)
            raise
        data = cm.data or {}
        return LockRecord(
            is_locked=str(data.get("isLocked", "false")).lower() == "true",
            version=cm.metadata.resource_version,
        )

    def _ensure_namespace(self) -> None:
        try:
            self.kube.core.create_namespace(client.V1Namespace(metadata=client.V1ObjectMeta(name=self.namespace)))
        except ApiException as exc:
            if exc.status != 409:
                raise

    def write(self, record: LockRecord) -> LockRecord:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                resource_version=record.version,
            ),
            data={"isLocked": "true" if record.is_locked else "false"},
        )
        try:
            if record.version is None:
                self._ensure_namespace()
                cm = self.kube.core.create_namespaced_config_map(self.namespace, body)
            else:
                cm = self.kube.core.replace_namespaced_config_map(self.name, self.namespace, body)
        except ApiException as exc:
            if exc.status == 409:
                raise ClusterLockConflict(
                    f"lock record {self.namespace}/{self.name} changed concurrently; retry"
                ) from exc
            raise
        return LockRecord(is_locked=record.is_locked, version=cm.metadata.resource_version)
