# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/logging/log.py

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from ..config.settings import kubeprov_home

LOGGER_NAME = "kubeprov"

# Transport libraries log every packet and request at DEBUG.
QUIET_LOGGERS = ("paramiko", "urllib3", "kubernetes")


def init_logging(
    *,
    base_dir: Path | None = None,
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Set up the ``kubeprov`` logger for one CLI run.

    The run log under ``<KUBEPROV_HOME>/logs`` gets everything, tagged with
    the worker thread so parallel node steps can be told apart. The console
    gets INFO, or DEBUG with ``--debug``. Returns the logger, the run id the
    event observers share, and the log path.
    """
    run_id = str(uuid.uuid4())

    base_dir = base_dir or kubeprov_home() / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{LOGGER_NAME}-{ts}-{run_id}.log"

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(logging.Formatter("%(levelname)-7s %(message)s"))

    logger.addHandler(fh)
    logger.addHandler(ch)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("run_id=%s log_file=%s", run_id, log_path)
    return logger, run_id, log_path
