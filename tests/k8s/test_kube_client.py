from types import SimpleNamespace

import pytest
import urllib3
from kubernetes.client.rest import ApiException

from kubeprov.errors import RetryError
from kubeprov.k8s.client import RetryingApi, default_policy, is_transient
from kubeprov.k8s.health import KubeHealthState, get_cluster_health
from kubeprov.utils.retry import ExponentialRetryPolicy


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


# ----------------- Transient detection -----------------

@pytest.mark.parametrize("status", [403, 502, 503, 504])
def test_transient_statuses(status):
    assert is_transient(ApiException(status=status, reason="x"))


@pytest.mark.parametrize("status", [400, 404, 409, 500])
def test_permanent_statuses(status):
    assert not is_transient(ApiException(status=status, reason="x"))


def test_connection_errors_found_through_cause_chain():
    try:
        try:
            raise ConnectionRefusedError("connect refused")
        except ConnectionRefusedError as inner:
            raise RuntimeError("request failed") from inner
    except RuntimeError as outer:
        assert is_transient(outer)

    assert is_transient(urllib3.exceptions.MaxRetryError(pool=None, url="/api"))
    assert not is_transient(ValueError("bad body"))


def test_default_policy_bounds():
    policy = default_policy()
    assert policy.initial_interval == 1.0
    assert policy.max_interval == 5.0
    assert policy.timeout == 120.0


# ----------------- Retrying proxy -----------------

class FlakyCoreApi:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.api_client = "client"

    def list_node(self, **kwargs):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise ApiException(status=503, reason="Service Unavailable")
        return SimpleNamespace(items=[], kwargs=kwargs)

    def delete_namespace(self, name):
        self.calls += 1
        raise ApiException(status=404, reason="Not Found")


def _policy(clock, timeout=120.0):
    return ExponentialRetryPolicy(transient_detector=is_transient, timeout=timeout, sleep=clock.sleep, clock=clock)


def test_retrying_api_retries_transient_errors():
    clock = FakeClock()
    api = FlakyCoreApi(failures=3)
    core = RetryingApi(api, _policy(clock))

    result = core.list_node(label_selector="role=master")

    assert result.kwargs == {"label_selector": "role=master"}
    assert api.calls == 4
    assert clock.sleeps == [1.0, 2.0, 4.0]


def test_retrying_api_passes_permanent_errors_through():
    clock = FakeClock()
    api = FlakyCoreApi(failures=0)
    core = RetryingApi(api, _policy(clock))

    with pytest.raises(ApiException) as exc_info:
        core.delete_namespace("gone")
    assert exc_info.value.status == 404
    assert api.calls == 1


def test_retrying_api_gives_up_at_timeout():
    clock = FakeClock()
    core = RetryingApi(FlakyCoreApi(failures=1000), _policy(clock, timeout=10.0))

    with pytest.raises(RetryError):
        core.list_node()
    assert clock.now <= 10.0


def test_retrying_api_exposes_plain_attributes():
    core = RetryingApi(FlakyCoreApi(failures=0), default_policy())
    assert core.api_client == "client"


# ----------------- Cluster health -----------------

def _node(name, ready):
    cond = SimpleNamespace(type="Ready", status="True" if ready else "False")
    return SimpleNamespace(metadata=SimpleNamespace(name=name), status=SimpleNamespace(conditions=[cond]))


def _deployment(name, desired, available):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(replicas=desired),
        status=SimpleNamespace(available_replicas=available),
    )


def _kube(nodes, deployments=()):
    return SimpleNamespace(
        core=SimpleNamespace(list_node=lambda: SimpleNamespace(items=list(nodes))),
        apps=SimpleNamespace(list_namespaced_deployment=lambda namespace: SimpleNamespace(items=list(deployments))),
    )


def test_health_all_ready():
    health = get_cluster_health(_kube([_node("m1", True), _node("w1", True)], [_deployment("coredns", 2, 2)]))
    assert health.state is KubeHealthState.HEALTHY
    assert (health.ready_nodes, health.total_nodes) == (2, 2)


def test_health_unready_node():
    health = get_cluster_health(_kube([_node("m1", True), _node("w1", False)]))
    assert health.state is KubeHealthState.UNHEALTHY
    assert health.not_ready == ["w1"]
    assert "w1" in health.summary


def test_health_no_nodes():
    assert get_cluster_health(_kube([])).state is KubeHealthState.UNHEALTHY


def test_health_rolling_control_plane():
    health = get_cluster_health(_kube([_node("m1", True)], [_deployment("coredns", 2, None)]))
    assert health.state is KubeHealthState.TRANSITIONING
    assert "coredns" in health.summary


def test_health_node_without_conditions():
    node = SimpleNamespace(metadata=SimpleNamespace(name="m1"), status=SimpleNamespace(conditions=None))
    assert get_cluster_health(_kube([node])).state is KubeHealthState.UNHEALTHY
