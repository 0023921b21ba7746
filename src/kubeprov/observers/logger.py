# src/kubeprov/observers/logger.py
from __future__ import annotations
import logging
from .events import BaseEvent, NodeFaulted, StepFailed, WaiterTimedOut

_WARN = (StepFailed, NodeFaulted, WaiterTimedOut)


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        fields = ", ".join(
            f"{k}={v}" for k, v in event.dict().items() if k not in ("ts", "run_id", "cluster")
        )
        level = logging.WARNING if isinstance(event, _WARN) else logging.INFO
        self.logger.log(level, "[EVENT] %s: %s", type(event).__name__, fields)
