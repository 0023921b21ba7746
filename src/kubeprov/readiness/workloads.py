# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/readiness/workloads.py

from __future__ import annotations

from typing import Callable, Optional

from .poller import ReadinessPoller, wait_for

CLUSTER_OP_TIMEOUT = 15 * 60
CLUSTER_OP_INTERVAL = 5.0


def _selector(name: Optional[str], label_selector: Optional[str]) -> dict:
    if bool(name) == bool(label_selector):
        raise ValueError("pass exactly one of name or label_selector")
    if name:
        return {"field_selector": f"metadata.name={name}"}
    return {"label_selector": label_selector}


def _wait_for_items(
    lister: Callable[..., object],
    ready: Callable[[object], bool],
    kind: str,
    namespace: str,
    name: Optional[str],
    label_selector: Optional[str],
    timeout: float,
    interval: float,
    **kwargs,
) -> ReadinessPoller:
    query = _selector(name, label_selector)

    def _check() -> bool:
        items = lister(namespace=namespace, **query).items
        # Nothing created yet is not ready.
        return bool(items) and all(ready(i) for i in items)

    target = name or label_selector
    return wait_for(_check, timeout, interval, description=f"{kind} {namespace}/{target}", **kwargs)


def _deployment_ready(d) -> bool:
    desired = d.spec.replicas or 0
    return (d.status.available_replicas or 0) >= desired


def _statefulset_ready(s) -> bool:
    desired = s.spec.replicas or 0
    return (s.status.ready_replicas or 0) >= desired


def _daemonset_ready(ds) -> bool:
    desired = ds.status.desired_number_scheduled or 0
    return (ds.status.number_ready or 0) >= desired and (ds.status.number_available or 0) >= desired


def wait_for_deployment(kube, namespace: str, name: Optional[str] = None, *,
                        label_selector: Optional[str] = None,
                        timeout: float = CLUSTER_OP_TIMEOUT,
                        interval: float = CLUSTER_OP_INTERVAL, **kwargs) -> ReadinessPoller:
    """Wait until matching Deployments report availableReplicas == replicas."""
    return _wait_for_items(kube.apps.list_namespaced_deployment, _deployment_ready, "deployment",
                           namespace, name, label_selector, timeout, interval, **kwargs)


def wait_for_statefulset(kube, namespace: str, name: Optional[str] = None, *,
                         label_selector: Optional[str] = None,
                         timeout: float = CLUSTER_OP_TIMEOUT,
                         interval: float = CLUSTER_OP_INTERVAL, **kwargs) -> ReadinessPoller:
    return _wait_for_items(kube.apps.list_namespaced_stateful_set, _statefulset_ready, "statefulset",
                           namespace, name, label_selector, timeout, interval, **kwargs)


def wait_for_daemonset(kube, namespace: str, name: Optional[str] = None, *,
                       label_selector: Optional[str] = None,
                       timeout: float = CLUSTER_OP_TIMEOUT,
                       interval: float = CLUSTER_OP_INTERVAL, **kwargs) -> ReadinessPoller:
    return _wait_for_items(kube.apps.list_namespaced_daemon_set, _daemonset_ready, "daemonset",
                           namespace, name, label_selector, timeout, interval, **kwargs)
