import threading
import time

import pytest

from kubeprov.errors import GlobalStepError, SetupFailedError, StepRegistrationError
from kubeprov.observers.dispatcher import EventBus
from kubeprov.observers.events import NodeFaulted, NodeStepSkipped, ProgressEvent, RunSummary
from kubeprov.setup.context import ContextKey, SetupContext
from kubeprov.setup.controller import SetupController
from kubeprov.setup.steps import Step, StepMode, StepState

TOKEN = ContextKey("token", str)


class Recorder:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def of(self, kind):
        return [e for e in self.events if isinstance(e, kind)]


class Calls:
    """Thread-safe record of (step, node) executions."""

    def __init__(self):
        self.items = []
        self._lock = threading.Lock()

    def add(self, step, node):
        with self._lock:
            self.items.append((step, node))

    def nodes_for(self, step):
        return sorted(n for s, n in self.items if s == step)


def _step(calls, name, fail_on=(), delay=0.0):
    def action(node, ctx):
        if delay:
            time.sleep(delay)
        calls.add(name, node.name)
        if node.name in fail_on:
            raise RuntimeError(f"{name} exploded on {node.name}")
    return action


# ----------------- Idempotency -----------------

def test_rerun_after_success_executes_no_node_bodies(make_nodes, fleet):
    nodes = make_nodes(3)
    calls = Calls()

    def build():
        c = SetupController("demo", nodes)
        c.add_node_step("demo/packages", _step(calls, "packages"))
        c.add_node_step("demo/kernel", _step(calls, "kernel"))
        return c

    assert build().run().success
    assert len(calls.items) == 6

    calls.items.clear()
    result = build().run()

    assert result.success
    assert calls.items == []
    for node in nodes:
        files = fleet.host(node.address).files
        assert "/var/lib/kubeprov/state/demo/packages" in files
        assert "/var/lib/kubeprov/state/demo/kernel" in files


def test_non_idempotent_steps_run_every_time(make_nodes, fleet):
    nodes = make_nodes(2)
    calls = Calls()

    for _ in range(2):
        c = SetupController("demo", nodes)
        c.add_node_step("demo/check", _step(calls, "check"), idempotent=False)
        assert c.run().success

    assert len(calls.items) == 4
    assert "/var/lib/kubeprov/state/demo/check" not in fleet.host(nodes[0].address).files


# ----------------- Fault isolation -----------------

def test_fault_on_one_node_does_not_stop_siblings(make_nodes, fleet):
    nodes = make_nodes(5)
    calls = Calls()
    recorder = Recorder()

    c = SetupController("demo", nodes, bus=EventBus([recorder]))
    c.add_node_step("demo/a", _step(calls, "a", fail_on={"node-2"}))
    c.add_node_step("demo/b", _step(calls, "b"))
    result = c.run()

    assert not result.success
    assert calls.nodes_for("a") == [f"node-{i}" for i in range(5)]
    assert calls.nodes_for("b") == []

    assert [(f.step, f.node) for f in result.failures] == [("demo/a", "node-2")]
    assert result.faulted_nodes == ["node-2"]
    assert result.step_states == {"demo/a": StepState.FAILED, "demo/b": StepState.PENDING}

    assert nodes[2].is_faulted
    assert not any(n.is_faulted for i, n in enumerate(nodes) if i != 2)
    assert not nodes[2].has_marker("demo/a")
    assert nodes[0].has_marker("demo/a")

    assert [e.node for e in recorder.of(NodeFaulted)] == ["node-2"]
    assert recorder.of(RunSummary)[-1].status == "FAILED"


def test_raise_on_failure(make_nodes):
    c = SetupController("demo", make_nodes(2))
    c.add_node_step("demo/a", _step(Calls(), "a", fail_on={"node-1"}))
    result = c.run()

    with pytest.raises(SetupFailedError) as exc_info:
        result.raise_on_failure()
    assert not isinstance(exc_info.value, GlobalStepError)
    assert exc_info.value.failures[0].node == "node-1"
    assert "demo/a on node-1" in str(exc_info.value)


# ----------------- Ordering -----------------

def test_node_step_is_a_barrier(make_nodes):
    nodes = make_nodes(6)
    order = Calls()

    def slow(node, ctx):
        time.sleep(0.01 * (int(node.name.split("-")[1]) % 3))
        order.add("a", node.name)

    c = SetupController("demo", nodes, max_parallel=3)
    c.add_node_step("demo/a", slow)
    c.add_node_step("demo/b", lambda node, ctx: order.add("b", node.name))
    assert c.run().success

    steps = [s for s, _ in order.items]
    assert steps.count("a") == 6
    assert steps.count("b") == 6
    assert max(i for i, s in enumerate(steps) if s == "a") < min(i for i, s in enumerate(steps) if s == "b")


def test_global_and_node_steps_run_in_registration_order(make_nodes):
    nodes = make_nodes(2)
    seen = Calls()

    c = SetupController("demo", nodes)
    c.add_global_step("demo/first", lambda ctx: seen.add("first", "-"))
    c.add_node_step("demo/middle", lambda node, ctx: seen.add("middle", node.name))
    c.add_global_step("demo/last", lambda ctx: seen.add("last", "-"))
    assert c.run().success

    assert [s for s, _ in seen.items] == ["first", "middle", "middle", "last"]


def test_global_failure_aborts_the_run(make_nodes):
    calls = Calls()

    def explode(ctx):
        raise RuntimeError("no quorum")

    c = SetupController("demo", make_nodes(3))
    c.add_global_step("demo/init", explode)
    c.add_node_step("demo/after", _step(calls, "after"))
    result = c.run()

    assert not result.success
    assert calls.items == []
    assert result.failures[0].node is None
    assert "no quorum" in result.failures[0].error
    assert result.step_states["demo/init"] is StepState.FAILED
    assert result.step_states["demo/after"] is StepState.PENDING

    with pytest.raises(GlobalStepError) as exc_info:
        result.raise_on_failure()
    assert "demo/init on <global>" in str(exc_info.value)


# ----------------- Resumability -----------------

def test_resume_reexecutes_only_unfinished_work(make_nodes):
    nodes = make_nodes(3)
    calls = Calls()
    failing = {"node-1"}

    def flaky(node, ctx):
        calls.add("b", node.name)
        if node.name in failing:
            raise RuntimeError("mirror unreachable")

    def build():
        c = SetupController("demo", nodes)
        c.add_node_step("demo/a", _step(calls, "a"))
        c.add_node_step("demo/b", flaky)
        c.add_node_step("demo/c", _step(calls, "c"))
        return c

    assert not build().run().success
    assert calls.nodes_for("a") == ["node-0", "node-1", "node-2"]
    assert calls.nodes_for("b") == ["node-0", "node-1", "node-2"]
    assert calls.nodes_for("c") == []

    failing.clear()
    calls.items.clear()
    assert build().run().success

    assert calls.nodes_for("a") == []
    assert calls.nodes_for("b") == ["node-1"]
    assert calls.nodes_for("c") == ["node-0", "node-1", "node-2"]


def test_marker_skips_are_reported(make_nodes):
    nodes = make_nodes(2)
    nodes[0].set_marker("demo/a")
    recorder = Recorder()

    c = SetupController("demo", nodes, bus=EventBus([recorder]))
    c.add_node_step("demo/a", lambda node, ctx: None)
    assert c.run().success

    skipped = recorder.of(NodeStepSkipped)
    assert [(e.node, e.reason) for e in skipped] == [("node-0", "marker")]


# ----------------- Parallelism -----------------

class Concurrency:
    def __init__(self):
        self.current = 0
        self.peak = 0
        self._lock = threading.Lock()

    def action(self, node, ctx):
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        time.sleep(0.05)
        with self._lock:
            self.current -= 1


def test_parallelism_is_bounded(make_nodes):
    tracker = Concurrency()
    c = SetupController("demo", make_nodes(6), max_parallel=2)
    c.add_node_step("demo/slow", tracker.action, idempotent=False)
    assert c.run().success

    assert 1 <= tracker.peak <= 2


def test_default_parallelism_is_ten(make_nodes):
    tracker = Concurrency()
    c = SetupController("demo", make_nodes(12))
    c.add_node_step("demo/slow", tracker.action, idempotent=False)

    assert c.max_parallel == 10
    assert c.run().success
    assert tracker.peak <= 10


def test_invalid_parallelism():
    with pytest.raises(ValueError):
        SetupController("demo", [], max_parallel=0)


# ----------------- Registration -----------------

def test_duplicate_step_key_rejected(make_nodes):
    c = SetupController("demo", make_nodes(1))
    c.add_global_step("demo/a", lambda ctx: None)
    with pytest.raises(StepRegistrationError):
        c.add_node_step("demo/a", lambda node, ctx: None)


def test_invalid_step_key_rejected(make_nodes):
    c = SetupController("demo", make_nodes(1))
    with pytest.raises(ValueError):
        c.add_global_step("../escape", lambda ctx: None)


def test_requirement_must_be_produced_earlier(make_nodes):
    c = SetupController("demo", make_nodes(1))
    with pytest.raises(StepRegistrationError) as exc_info:
        c.add_node_step("demo/use", lambda node, ctx: ctx.get(TOKEN), requires=(TOKEN,))
    assert "token" in str(exc_info.value)

    c.add_global_step("demo/make", lambda ctx: ctx.set(TOKEN, "abc"), produces=(TOKEN,))
    c.add_node_step("demo/use", lambda node, ctx: ctx.get(TOKEN), requires=(TOKEN,))
    assert c.run().success


def test_requirement_satisfied_by_seeded_context(make_nodes):
    c = SetupController("demo", make_nodes(1), context=SetupContext({TOKEN: "seeded"}))
    c.add_node_step("demo/use", lambda node, ctx: ctx.get(TOKEN), requires=(TOKEN,))
    assert c.run().success


def test_missing_produced_key_is_a_fault(make_nodes):
    c = SetupController("demo", make_nodes(1))
    c.add_global_step("demo/make", lambda ctx: None, produces=(TOKEN,))
    result = c.run()

    assert not result.success
    assert "did not produce token" in result.failures[0].error


def test_node_step_cannot_produce_keys(make_nodes):
    c = SetupController("demo", make_nodes(2))
    step = Step(key="demo/per-node", label="per node", mode=StepMode.NODE,
                action=lambda node, ctx: None, produces=("token",))

    with pytest.raises(StepRegistrationError) as exc_info:
        c.register(step)
    assert "cannot produce" in str(exc_info.value)
    assert c.steps == []

    # Nothing was made available, so a dependent step is still rejected.
    with pytest.raises(StepRegistrationError):
        c.add_global_step("demo/use", lambda ctx: ctx.get(TOKEN), requires=(TOKEN,))


def test_predicate_limits_targets(make_nodes):
    calls = Calls()
    c = SetupController("demo", make_nodes(4, masters=1))
    c.add_node_step("demo/masters", _step(calls, "m"), predicate=lambda n: n.is_master)
    assert c.run().success

    assert calls.nodes_for("m") == ["node-0"]


# ----------------- Progress -----------------

def test_log_progress_updates_status_and_emits(make_nodes):
    nodes = make_nodes(2)
    recorder = Recorder()
    c = SetupController("demo", nodes, bus=EventBus([recorder]))
    snapshots = []

    def work(node, ctx):
        c.log_progress(node, "install", "kubelet")
        snapshots.append(node.status)

    c.add_node_step("demo/work", work)
    c.log_progress(None, "configure", "hosting")
    assert c.run().success

    assert snapshots == ["install kubelet", "install kubelet"]
    progress = recorder.of(ProgressEvent)
    assert progress[0].node is None
    assert sorted(e.node for e in progress[1:]) == ["node-0", "node-1"]
    assert all(n.status == "" for n in nodes)


def test_status_text_lists_nodes(make_nodes):
    nodes = make_nodes(2)
    nodes[1].fault("unreachable")
    c = SetupController("demo", nodes)

    text = c.status_text()
    assert text.splitlines()[0] == "demo"
    assert "node-1" in text
    assert "faulted" in text
    assert "[x] unreachable" in text
