# src/kubeprov/setup/steps.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Tuple

from ..node.proxy import validate_key

if TYPE_CHECKING:
    from ..node.proxy import NodeProxy
    from .context import ReadOnlyContext, SetupContext


GlobalAction = Callable[["SetupContext"], Any]
NodeAction = Callable[["NodeProxy", "ReadOnlyContext"], Any]
NodePredicate = Callable[["NodeProxy"], bool]


class StepMode(str, Enum):
    GLOBAL = "global"
    NODE = "node"


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    """
    One unit of work in a setup run.

    Global steps run once against the shared context. Node steps run once per
    targeted node; when ``idempotent`` is set the step key doubles as the
    node's marker key so completed work is skipped on re-runs.
    """

    key: str
    label: str
    mode: StepMode
    action: Callable[..., Any]
    predicate: Optional[NodePredicate] = None
    idempotent: bool = True
    requires: Tuple[str, ...] = field(default_factory=tuple)
    produces: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        validate_key(self.key)
        if self.mode is StepMode.GLOBAL and self.predicate is not None:
            raise ValueError(f"global step '{self.key}' cannot take a node predicate")

    def targets(self, node: "NodeProxy") -> bool:
        return self.predicate is None or bool(self.predicate(node))
