# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/observers/dispatcher.py
from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .events import BaseEvent

log = logging.getLogger("kubeprov")


class EventBus:
    """
    Fan-out of progress events. Node steps emit from worker threads, so
    delivery is serialized; observers must not break provisioning.
    """

    def __init__(self, observers: Optional[List] = None):
        self._observers = list(observers or [])
        self._lock = threading.Lock()

    def subscribe(self, observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception:
                    log.debug("observer %r failed on %s", ob, type(event).__name__, exc_info=True)
