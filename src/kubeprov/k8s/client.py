# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/k8s/client.py

from __future__ import annotations

import functools
import logging
import ssl
from typing import Any, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..utils.retry import ExponentialRetryPolicy

log = logging.getLogger("kubeprov")

# 403 shows up while RBAC is still being bootstrapped on a fresh API server.
TRANSIENT_STATUS = frozenset({403, 502, 503, 504})

_TRANSIENT_ERRORS = (
    ConnectionRefusedError,
    ConnectionResetError,
    ssl.SSLError,
    urllib3.exceptions.NewConnectionError,
    urllib3.exceptions.MaxRetryError,
    urllib3.exceptions.ProtocolError,
    urllib3.exceptions.SSLError,
)


def is_transient(exc: BaseException) -> bool:
    """True for errors a freshly started control plane is expected to return."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, ApiException):
            return exc.status in TRANSIENT_STATUS
        if isinstance(exc, _TRANSIENT_ERRORS):
            return True
        exc = exc.__cause__ or exc.__context__
    return False


def default_policy() -> ExponentialRetryPolicy:
    return ExponentialRetryPolicy(
        transient_detector=is_transient,
        initial_interval=1.0,
        max_interval=5.0,
        timeout=120.0,
    )


class RetryingApi:
    """Proxy that routes every public API call through a retry policy."""

    def __init__(self, api: Any, policy: ExponentialRetryPolicy):
        self._api = api
        self._policy = policy

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._api, name)
        if name.startswith("_") or not callable(attr):
            return attr

        @functools.wraps(attr)
        def call(*args, **kwargs):
            return self._policy.invoke(attr, *args, **kwargs)

        return call


class RetryingKubeClient:
    """
    Kubernetes API access for one session. ``core`` and ``apps`` wrap the
    generated API groups so transient failures are retried transparently.
    """

    def __init__(
        self,
        api_client: Any,
        *,
        policy: Optional[ExponentialRetryPolicy] = None,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
    ):
        self.api_client = api_client
        self.policy = policy or default_policy()
        self.kubeconfig = kubeconfig
        self.context = context
        self.core = RetryingApi(client.CoreV1Api(api_client), self.policy)
        self.apps = RetryingApi(client.AppsV1Api(api_client), self.policy)

    @classmethod
    def from_kubeconfig(
        cls,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        *,
        policy: Optional[ExponentialRetryPolicy] = None,
    ) -> "RetryingKubeClient":
        log.debug("loading kubeconfig %s (context=%s)", kubeconfig or "<default>", context or "<current>")
        api_client = config.new_client_from_config(config_file=kubeconfig, context=context)
        return cls(api_client, policy=policy, kubeconfig=kubeconfig, context=context)

    def close(self) -> None:
        close = getattr(self.api_client, "close", None)
        if callable(close):
            close()
