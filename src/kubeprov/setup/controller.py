# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/setup/controller.py

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Union

from ..errors import GlobalStepError, SetupFailedError, StepFailure, StepRegistrationError
from ..node.models import NodeState
from ..node.proxy import NodeProxy
from ..observers.dispatcher import EventBus
from ..observers.events import (
    NodeFaulted,
    NodeStepSkipped,
    NodeStepStarted,
    NodeStepSucceeded,
    ProgressEvent,
    RunStarted,
    RunSummary,
    StepCompleted,
    StepFailed,
    StepSkipped,
    StepStarted,
    new_ctx,
    stamp,
)
from .context import ContextKey, SetupContext
from .steps import GlobalAction, NodeAction, NodePredicate, Step, StepMode, StepState

log = logging.getLogger("kubeprov")

DEFAULT_MAX_PARALLEL = 10

KeyRef = Union[ContextKey, str]


def _key_names(keys: Iterable[KeyRef]) -> tuple:
    return tuple(k.name if isinstance(k, ContextKey) else k for k in keys)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclass
class SetupResult:
    title: str
    success: bool
    failures: List[StepFailure] = field(default_factory=list)
    step_states: Dict[str, StepState] = field(default_factory=dict)

    @property
    def faulted_nodes(self) -> List[str]:
        return sorted({f.node for f in self.failures if f.node})

    def raise_on_failure(self) -> None:
        if self.success:
            return
        if any(f.node is None for f in self.failures):
            raise GlobalStepError(self.title, self.failures)
        raise SetupFailedError(self.title, self.failures)


class SetupController:
    """
    Runs an ordered list of global and per-node steps.

    Node steps fan out over a thread pool bounded by ``max_parallel`` and act
    as a barrier: the next step starts only once every targeted node has
    finished or faulted. A fault on one node never interrupts its siblings,
    but the run stops after the barrier of the step that produced it.
    """

    def __init__(
        self,
        title: str,
        nodes: Sequence[NodeProxy],
        *,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        bus: Optional[EventBus] = None,
        context: Optional[SetupContext] = None,
        cluster: Optional[str] = None,
        run_id: Optional[str] = None,
    ):
        names = [n.name for n in nodes]
        if len(set(names)) != len(names):
            raise StepRegistrationError(f"{title}: duplicate node names in {names}")

        self.title = title
        self.nodes: List[NodeProxy] = list(nodes)
        self.max_parallel = max_parallel
        self.bus = bus or EventBus()
        self.context = context or SetupContext()
        self.run_ctx = new_ctx(cluster=cluster or title, run_id=run_id)

        self._steps: List[Step] = []
        self._available: set = set()
        self._current: Optional[Step] = None
        self._lock = threading.Lock()

    # ------------------ registration ------------------

    @property
    def max_parallel(self) -> int:
        return self._max_parallel

    @max_parallel.setter
    def max_parallel(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_parallel must be >= 1")
        self._max_parallel = value

    @property
    def steps(self) -> List[Step]:
        return list(self._steps)

    def register(self, step: Step) -> Step:
        if any(s.key == step.key for s in self._steps):
            raise StepRegistrationError(f"{self.title}: step '{step.key}' is already registered")
        if step.mode is StepMode.NODE and step.produces:
            # Node actions only see a read-only view of the context.
            raise StepRegistrationError(f"{self.title}: node step '{step.key}' cannot produce context keys")

        for name in step.requires:
            if name not in self._available and name not in self.context:
                raise StepRegistrationError(
                    f"{self.title}: step '{step.key}' requires '{name}' but no earlier step produces it"
                )

        self._steps.append(step)
        self._available.update(step.produces)
        return step

    def add_global_step(
        self,
        key: str,
        action: GlobalAction,
        label: Optional[str] = None,
        *,
        requires: Iterable[KeyRef] = (),
        produces: Iterable[KeyRef] = (),
    ) -> Step:
        return self.register(
            Step(
                key=key,
                label=label or key,
                mode=StepMode.GLOBAL,
                action=action,
                idempotent=False,
                requires=_key_names(requires),
                produces=_key_names(produces),
            )
        )

    def add_node_step(
        self,
        key: str,
        action: NodeAction,
        label: Optional[str] = None,
        *,
        predicate: Optional[NodePredicate] = None,
        idempotent: bool = True,
        requires: Iterable[KeyRef] = (),
    ) -> Step:
        return self.register(
            Step(
                key=key,
                label=label or key,
                mode=StepMode.NODE,
                action=action,
                predicate=predicate,
                idempotent=idempotent,
                requires=_key_names(requires),
            )
        )

    def add_wait_until_online_step(
        self,
        timeout: float = 15 * 60,
        interval: float = 5.0,
        *,
        key: str = "wait-until-online",
        predicate: Optional[NodePredicate] = None,
    ) -> Step:
        def _wait(node: NodeProxy, _ctx) -> None:
            self.log_progress(node, "wait", "for boot/connect")
            node.wait_for_boot(timeout=timeout, interval=interval)

        return self.add_node_step(key, _wait, "wait until nodes are online",
                                  predicate=predicate, idempotent=False)

    # ------------------ progress ------------------

    def log_progress(self, node: Union[NodeProxy, str, None], verb: str, message: str = "") -> None:
        proxy = self._resolve(node)
        name = proxy.name if proxy else (node if isinstance(node, str) else None)
        text = f"{verb} {message}".strip()
        if proxy:
            proxy.status = text
        log.info("[%s] %s", name or self.title, text)
        self.bus.emit(ProgressEvent(node=name, verb=verb, message=message, **stamp(self.run_ctx)))

    def log_error(self, node: Union[NodeProxy, str, None], message: str) -> None:
        proxy = self._resolve(node)
        if proxy:
            proxy.status = f"[x] {message}"
        log.error("[%s] %s", proxy.name if proxy else (node or self.title), message)

    def _resolve(self, node: Union[NodeProxy, str, None]) -> Optional[NodeProxy]:
        if isinstance(node, NodeProxy):
            return node
        if isinstance(node, str):
            return next((n for n in self.nodes if n.name == node), None)
        return None

    def status_text(self) -> str:
        with self._lock:
            current = self._current
        lines = [self.title]
        if current:
            index = self._steps.index(current) + 1
            lines.append(f"  step {index}/{len(self._steps)}: {current.label}")
        width = max((len(n.name) for n in self.nodes), default=0)
        for node in self.nodes:
            status = node.status
            lines.append(f"    {node.name:<{width}}  {node.state.value:<8} {status}".rstrip())
        return "\n".join(lines)

    # ------------------ execution ------------------

    def run(self) -> SetupResult:
        states: Dict[str, StepState] = {s.key: StepState.PENDING for s in self._steps}
        failures: List[StepFailure] = []
        completed = 0

        for node in self.nodes:
            node.reset_state()

        log.info("%s: %d steps on %d nodes", self.title, len(self._steps), len(self.nodes))
        self.bus.emit(
            RunStarted(
                title=self.title,
                steps=[s.key for s in self._steps],
                nodes=[n.name for n in self.nodes],
                **stamp(self.run_ctx),
            )
        )

        for step in self._steps:
            with self._lock:
                self._current = step
            states[step.key] = StepState.RUNNING
            started = time.monotonic()
            self.bus.emit(StepStarted(step=step.key, label=step.label, mode=step.mode.value,
                                      **stamp(self.run_ctx)))

            if step.mode is StepMode.GLOBAL:
                step_failures = self._run_global(step)
            else:
                step_failures = self._run_node_step(step)

            if not step_failures:
                step_failures = self._check_produced(step)

            if step_failures:
                states[step.key] = StepState.FAILED
                failures.extend(step_failures)
                self.bus.emit(
                    StepFailed(
                        step=step.key,
                        error="; ".join(f.error for f in step_failures),
                        faulted_nodes=[f.node for f in step_failures if f.node],
                        **stamp(self.run_ctx),
                    )
                )
                break

            states[step.key] = StepState.DONE
            completed += 1
            self.bus.emit(StepCompleted(step=step.key, duration_ms=_elapsed_ms(started),
                                        **stamp(self.run_ctx)))

        with self._lock:
            self._current = None

        success = not failures
        if success:
            for node in self.nodes:
                node.set_state(NodeState.DONE, "")
            log.info("%s: completed", self.title)
        else:
            log.error("%s: failed", self.title)
            for f in failures:
                log.error("  %s", f.describe())

        self.bus.emit(
            RunSummary(
                title=self.title,
                status="OK" if success else "FAILED",
                completed_steps=completed,
                failures=[f.describe() for f in failures],
                **stamp(self.run_ctx),
            )
        )
        return SetupResult(title=self.title, success=success, failures=failures, step_states=states)

    def _run_global(self, step: Step) -> List[StepFailure]:
        log.info("[%s] %s", self.title, step.label)
        try:
            step.action(self.context)
        except Exception as exc:
            log.debug("global step %s raised", step.key, exc_info=True)
            return [StepFailure(step=step.key, node=None, error=f"{type(exc).__name__}: {exc}", exception=exc)]
        return []

    def _run_node_step(self, step: Step) -> List[StepFailure]:
        targets = [n for n in self.nodes if step.targets(n)]
        if not targets:
            self.bus.emit(StepSkipped(step=step.key, reason="no targets", **stamp(self.run_ctx)))
            return []

        view = self.context.read_only()
        workers = min(self.max_parallel, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"step-{step.key}") as pool:
            futures = [pool.submit(self._run_on_node, step, node, view) for node in targets]
            results = [f.result() for f in futures]

        return [r for r in results if r is not None]

    def _run_on_node(self, step: Step, node: NodeProxy, view) -> Optional[StepFailure]:
        if node.is_faulted:
            self.bus.emit(NodeStepSkipped(step=step.key, node=node.name, reason="faulted",
                                          **stamp(self.run_ctx)))
            return None

        started = time.monotonic()
        try:
            if step.idempotent and node.has_marker(step.key):
                log.debug("[%s] %s: marker present, skipping", node.name, step.key)
                self.bus.emit(NodeStepSkipped(step=step.key, node=node.name, reason="marker",
                                              **stamp(self.run_ctx)))
                return None

            node.set_state(NodeState.RUNNING, step.label)
            self.bus.emit(NodeStepStarted(step=step.key, node=node.name, **stamp(self.run_ctx)))

            step.action(node, view)

            if step.idempotent:
                node.set_marker(step.key)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            node.fault(error)
            log.error("[%s] %s failed: %s", node.name, step.key, error)
            log.debug("[%s] %s traceback", node.name, step.key, exc_info=True)
            self.bus.emit(NodeFaulted(step=step.key, node=node.name, error=error, **stamp(self.run_ctx)))
            return StepFailure(step=step.key, node=node.name, error=error, exception=exc)

        node.status = ""
        self.bus.emit(NodeStepSucceeded(step=step.key, node=node.name, duration_ms=_elapsed_ms(started),
                                        **stamp(self.run_ctx)))
        return None

    def _check_produced(self, step: Step) -> List[StepFailure]:
        missing = [name for name in step.produces if name not in self.context]
        if not missing:
            return []
        error = f"step did not produce {', '.join(missing)}"
        log.error("[%s] %s: %s", self.title, step.key, error)
        return [StepFailure(step=step.key, node=None, error=error)]
