# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/cli/supervisor.py
"""
Supervising side of a build (main thread).

Owns the resume decision, starts the worker, pumps the message channel on a
timer tick and turns Ctrl+C into a cancellation request. Never touches the
orchestrator's state directly once the worker is running.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, List, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn, TimeRemainingColumn
from rich.prompt import Confirm

from ..core.cancellation import request_cancellation
from ..core.checkpoint import BuildCheckpoint
from ..core.exceptions import FfuBuildError
from ..messaging.context import MessagingContext
from ..messaging.models import BuildState, Message, ProgressMessage, Severity
from ..orchestrator.orchestrator import BuildOrchestrator
from ..orchestrator.worker import BuildWorker

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_BAD_CONFIG = 2
EXIT_CANCELLED = 130

DEFAULT_TICK_S = 0.25


def exit_code_for(ctx: MessagingContext) -> int:
    state = ctx.state
    if state == BuildState.COMPLETED:
        return EXIT_COMPLETED
    if state == BuildState.CANCELLED:
        return EXIT_CANCELLED
    err = ctx.last_error
    if isinstance(err, FfuBuildError) and err.code:
        return int(err.code)
    return EXIT_FAILED


class BuildSupervisor:
    def __init__(
        self,
        logger: logging.Logger,
        ctx: MessagingContext,
        orchestrator: BuildOrchestrator,
        *,
        resume: Optional[bool] = None,
        interactive: Optional[bool] = None,
        tick_s: float = DEFAULT_TICK_S,
        console: Optional[Console] = None,
    ):
        self.logger = logger
        self.ctx = ctx
        self.orchestrator = orchestrator
        self.resume = resume
        self.interactive = sys.stdin.isatty() and sys.stderr.isatty() if interactive is None else bool(interactive)
        self.tick_s = tick_s
        self.console = console or Console(stderr=True)
        self.terminal: Optional[Message] = None
        self.seen: List[Message] = []
        self._last_logged_pct = -1

    # ------------------------------------------------------------------

    def choose_resume(self, cp: BuildCheckpoint) -> bool:
        if self.resume is not None:
            return self.resume
        if not self.interactive:
            return True
        return Confirm.ask(
            f"Found a checkpoint for build [bold]{cp.build_id}[/bold] after "
            f"[cyan]{cp.last_completed_phase.label}[/cyan] ({cp.percent_complete:.0f}%). Resume?",
            default=True,
            console=self.console,
        )

    def run(self) -> int:
        cp = self.orchestrator.resolve_checkpoint(choose=self.choose_resume)
        worker = BuildWorker(self.logger, self.orchestrator, checkpoint=cp)
        worker.start()
        try:
            self._pump(worker)
        except KeyboardInterrupt:
            request_cancellation(self.ctx, logger=self.logger, reason="Ctrl+C")
            # second Ctrl+C propagates; rollback keeps running on the worker
            self._pump(worker)
        self._dispatch(self.ctx.drain(sys.maxsize))
        self._log_summary()
        return exit_code_for(self.ctx)

    # ------------------------------------------------------------------

    def _pump(self, worker: BuildWorker) -> None:
        if not self.interactive:
            while not worker.join(self.tick_s):
                self._dispatch(self.ctx.drain())
            return

        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.console,
            transient=False,
        ) as progress:
            task = progress.add_task("Starting build", total=100.0)
            while True:
                done = worker.join(self.tick_s)
                self._dispatch(self.ctx.drain(), progress=progress, task=task)
                if done:
                    break

    def _dispatch(self, messages: List[Message], *, progress: Any = None, task: Any = None) -> None:
        # the Reporter already logged every message; here we only render
        for m in messages:
            self.seen.append(m)
            if m.payload.get("terminal"):
                self.terminal = m
            if isinstance(m, ProgressMessage):
                if progress is not None:
                    label = f"[{m.phase}] {m.current_operation}" if m.phase else m.current_operation
                    progress.update(task, completed=m.percent, description=label)
                else:
                    self._log_progress(m)

    def _log_progress(self, m: ProgressMessage) -> None:
        pct = int(m.percent)
        if pct == self._last_logged_pct:
            return
        self._last_logged_pct = pct
        eta = f", ETA {m.eta_seconds:.0f}s" if m.eta_seconds is not None else ""
        self.logger.info("📈 %3d%% %s%s", pct, m.current_operation, eta)

    def _log_summary(self) -> None:
        counts = self.ctx.counters()
        self.logger.debug(
            "Channel: %d enqueued, %d drained, %d warning(s), %d error(s)",
            counts["enqueued"],
            counts["drained"],
            counts[Severity.WARNING.value],
            counts[Severity.ERROR.value],
        )
        state = self.ctx.state
        if state == BuildState.COMPLETED:
            self.logger.info("🎉 Build %s in %.0fs", state.value.lower(), self.ctx.elapsed_seconds())
        elif state == BuildState.CANCELLED:
            self.logger.warning("🛑 Build cancelled after %.0fs", self.ctx.elapsed_seconds())
        else:
            self.logger.error("❌ Build %s (exit %d)", state.value.lower(), exit_code_for(self.ctx))
