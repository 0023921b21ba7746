# src/kubeprov/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single orchestration run
    cluster: str      # cluster name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_iso(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a run context with a fresh timestamp."""
    return {**ctx, "ts": now_iso()}


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    title: str
    steps: List[str]
    nodes: List[str]

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    title: str
    status: str          # "OK" | "FAILED"
    completed_steps: int
    failures: List[str]


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    step: str
    label: str
    mode: str            # "global" | "node"

@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    step: str
    reason: str          # "no targets" | "predicate"

@dataclass(frozen=True)
class StepCompleted(BaseEvent):
    step: str
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    step: str
    error: str
    faulted_nodes: List[str]

@dataclass(frozen=True)
class NodeStepStarted(BaseEvent):
    step: str
    node: str

@dataclass(frozen=True)
class NodeStepSkipped(BaseEvent):
    step: str
    node: str
    reason: str          # "marker" | "faulted" | "predicate"

@dataclass(frozen=True)
class NodeStepSucceeded(BaseEvent):
    step: str
    node: str
    duration_ms: int

@dataclass(frozen=True)
class NodeFaulted(BaseEvent):
    step: str
    node: str
    error: str


# ---------------------------------------------------------------------
# Progress (node, verb, message) sink
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ProgressEvent(BaseEvent):
    node: Optional[str]
    verb: str
    message: str


# ---------------------------------------------------------------------
# Waiter lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class WaiterStarted(BaseEvent):
    name: str
    timeout_s: float

@dataclass(frozen=True)
class WaiterSucceeded(BaseEvent):
    name: str
    polls: int

@dataclass(frozen=True)
class WaiterTimedOut(BaseEvent):
    name: str
    timeout_s: float


# ---------------------------------------------------------------------
# Cluster lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class LockChanged(BaseEvent):
    locked: bool

@dataclass(frozen=True)
class LifecycleRequested(BaseEvent):
    operation: str       # start | stop | reset | remove | pause | resume
    allowed: bool
    reason: Optional[str] = None
