import json
import logging

from kubeprov.observers.console import ConsoleObserver
from kubeprov.observers.dispatcher import EventBus
from kubeprov.observers.events import LockChanged, NodeFaulted, ProgressEvent, StepCompleted, new_ctx, stamp
from kubeprov.observers.jsonfile import JsonFileObserver
from kubeprov.observers.logger import LoggerObserver

CTX = new_ctx(cluster="alpha", run_id="run-1")


class Recorder:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class Broken:
    def notify(self, event):
        raise RuntimeError("observer bug")


def test_failing_observer_does_not_stop_delivery():
    recorder = Recorder()
    bus = EventBus([Broken(), recorder])

    event = LockChanged(locked=True, **stamp(CTX))
    bus.emit(event)

    assert recorder.events == [event]


def test_subscribe_after_construction():
    bus = EventBus()
    recorder = Recorder()
    bus.subscribe(recorder)
    bus.emit(StepCompleted(step="demo/a", duration_ms=5, **CTX))
    assert len(recorder.events) == 1


def test_stamp_keeps_run_identity():
    stamped = stamp(CTX)
    assert stamped["run_id"] == "run-1"
    assert stamped["cluster"] == "alpha"
    assert stamped["ts"].endswith("Z")


def test_json_file_observer_appends_typed_lines(tmp_path):
    path = tmp_path / "events" / "run.jsonl"
    bus = EventBus([JsonFileObserver(path)])

    bus.emit(StepCompleted(step="demo/a", duration_ms=12, **CTX))
    bus.emit(ProgressEvent(node="m1", verb="install", message="kubelet", **CTX))

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["type"] for line in lines] == ["StepCompleted", "ProgressEvent"]
    assert lines[0]["step"] == "demo/a"
    assert lines[1]["node"] == "m1"
    assert lines[1]["run_id"] == "run-1"


def test_logger_observer(caplog):
    observer = LoggerObserver(logging.getLogger("observer-test"))
    with caplog.at_level(logging.INFO, logger="observer-test"):
        observer.notify(LockChanged(locked=False, **CTX))
    assert "[EVENT] LockChanged" in caplog.text
    assert "locked=False" in caplog.text


def test_console_observer_prints_progress(capsys):
    ConsoleObserver().notify(ProgressEvent(node=None, verb="configure", message="hosting", **CTX))
    out = capsys.readouterr().out
    assert "cluster: configure hosting" in out


def test_logger_observer_warns_on_node_fault(caplog):
    observer = LoggerObserver(logging.getLogger("observer-test"))
    with caplog.at_level(logging.INFO, logger="observer-test"):
        observer.notify(NodeFaulted(step="prepare/verify-os", node="w1", error="unsupported", **CTX))
    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "node=w1" in record.getMessage()
    assert "run_id" not in record.getMessage()
