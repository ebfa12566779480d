# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/orchestrator/worker.py
from __future__ import annotations

import logging
import threading
from typing import Optional

from ..core.checkpoint import BuildCheckpoint
from ..core.logger import WORKER_THREAD
from ..messaging.models import BuildState
from ..messaging.reporter import Reporter
from .orchestrator import BuildOrchestrator


class BuildWorker:
    """
    Runs one BuildOrchestrator on a background thread. The supervising side
    only talks to it through the messaging context.
    """

    def __init__(
        self,
        logger: logging.Logger,
        orchestrator: BuildOrchestrator,
        *,
        checkpoint: Optional[BuildCheckpoint] = None,
    ):
        self.logger = logger
        self.orchestrator = orchestrator
        self.checkpoint = checkpoint
        self.result: Optional[BuildState] = None
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.thread is not None:
            raise RuntimeError("build worker already started")
        self.thread = threading.Thread(target=self._run, name=WORKER_THREAD, daemon=True)
        self.thread.start()
        self.logger.debug("🧵 Build worker started")

    def _run(self) -> None:
        try:
            self.result = self.orchestrator.run(checkpoint=self.checkpoint, resolved=True)
        except Exception as e:
            # run() funnels failures itself; this only fires if that funnel breaks
            self.logger.debug("Worker traceback", exc_info=True)
            ctx = self.orchestrator.ctx
            ctx.set_last_error(e)
            ctx.set_state(BuildState.FAILED)
            Reporter(self.logger, ctx, source="worker").critical(
                f"Build worker crashed: {type(e).__name__}: {e}",
                terminal=True,
                state=BuildState.FAILED.value,
            )
            self.result = BuildState.FAILED

    def join(self, timeout: Optional[float] = None) -> bool:
        """True once the worker has finished."""
        if self.thread is None:
            return True
        self.thread.join(timeout)
        return not self.thread.is_alive()

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()
