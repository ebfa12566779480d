# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/orchestrator/orchestrator.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..core.cancellation import CancellationCoordinator
from ..core.checkpoint import BuildCheckpoint, BuildPhase, CheckpointStore
from ..core.cleanup import CleanupRegistry
from ..core.exceptions import PhaseFailed, format_exception_for_cli
from ..core.host_resources import HostResources, restore_cleanup_entries
from ..core.logger import Log
from ..messaging.context import MessagingContext
from ..messaging.models import BuildState
from ..messaging.reporter import Reporter
from ..providers.base import HypervisorProvider, VMHandle


@dataclass
class PhaseOutcome:
    """
    What a phase hands back. Expected failures come back here (ok=False)
    instead of as exceptions.
    """
    ok: bool = True
    artifacts: Dict[str, Any] = field(default_factory=dict)
    paths: Dict[str, str] = field(default_factory=dict)
    message: str = ""
    cancelled: bool = False
    skipped: bool = False

    @classmethod
    def failed(cls, message: str) -> "PhaseOutcome":
        return cls(ok=False, message=message)

    @classmethod
    def interrupted(cls, message: str = "cancelled while waiting") -> "PhaseOutcome":
        return cls(ok=False, cancelled=True, message=message)

    @classmethod
    def skip(cls, message: str) -> "PhaseOutcome":
        return cls(ok=True, skipped=True, message=message)


@dataclass
class PipelineState:
    """Mutable per-run state the phases share (worker thread only)."""
    artifacts: Dict[str, Any] = field(default_factory=dict)
    paths: Dict[str, str] = field(default_factory=dict)
    handle: Optional[VMHandle] = None
    resumed_from: Optional[BuildPhase] = None


PhaseFn = Callable[[PipelineState], PhaseOutcome]


@dataclass(frozen=True)
class PhaseSpec:
    phase: BuildPhase
    description: str
    run: PhaseFn
    weight: float = 1.0


class BuildOrchestrator:
    """
    Drives the phase list on the worker thread.

    Before each phase: cancellation check, then checkpoint skip check.
    After each phase: checkpoint save, then a progress message.
    Any exception is caught once here and funneled through rollback.
    """

    def __init__(
        self,
        logger: logging.Logger,
        ctx: MessagingContext,
        *,
        phases: List[PhaseSpec],
        store: CheckpointStore,
        registry: CleanupRegistry,
        coordinator: CancellationCoordinator,
        provider: Optional[HypervisorProvider] = None,
        host: Optional[HostResources] = None,
        config_echo: Optional[Dict[str, Any]] = None,
        force_fresh: bool = False,
        unattended: bool = False,
    ):
        self.logger = logger
        self.ctx = ctx
        self.phases = sorted(phases, key=lambda s: int(s.phase))
        self.store = store
        self.registry = registry
        self.coordinator = coordinator
        self.provider = provider
        self.host = host
        self.config_echo = dict(config_echo or {})
        self.force_fresh = force_fresh
        self.unattended = unattended
        self.reporter = Reporter(logger, ctx, source="orchestrator")
        self.pipeline = PipelineState()

        Log.trace(self.logger, "🧠 Orchestrator init: %d phase(s), checkpoint=%s", len(self.phases), self.store.path)

    # ------------------------------------------------------------------
    # resume decision (supervising side, before the worker starts)
    # ------------------------------------------------------------------

    def resolve_checkpoint(self, choose: Optional[Callable[[BuildCheckpoint], bool]] = None) -> Optional[BuildCheckpoint]:
        """
        Returns the checkpoint to resume from, or None for a fresh run.

        `choose` asks the user (True = resume). It is not consulted when
        unattended; unattended runs resume unless force_fresh is set.
        """
        cp = self.store.load()
        if cp is None:
            self.logger.debug("No checkpoint at %s; fresh build", self.store.path)
            return None

        if self.force_fresh:
            self.reporter.info(f"Discarding checkpoint after {cp.last_completed_phase.label} (fresh build requested)")
            self.store.clear()
            return None

        vm_exists = self.provider.vm_exists if self.provider is not None else None
        if not self.store.validate(cp, vm_exists=vm_exists):
            self.reporter.warning(f"Checkpoint after {cp.last_completed_phase.label} is no longer valid; starting fresh")
            self.store.clear()
            return None

        resume = True
        if choose is not None and not self.unattended:
            resume = bool(choose(cp))
        if not resume:
            self.reporter.info("Starting fresh; previous checkpoint deleted")
            self.store.clear()
            return None

        self.store.adopt(cp)
        self.reporter.info(
            f"Resuming build {cp.build_id} after {cp.last_completed_phase.label} ({cp.percent_complete:.0f}%)",
            build_id=cp.build_id,
        )
        return cp

    # ------------------------------------------------------------------
    # main loop (worker thread)
    # ------------------------------------------------------------------

    def run(self, *, checkpoint: Optional[BuildCheckpoint] = None, resolved: bool = False) -> BuildState:
        self.ctx.set_state(BuildState.INITIALIZING)
        try:
            if not resolved:
                checkpoint = self.resolve_checkpoint()
            if checkpoint is None:
                self.store.clear()
            if self.coordinator.test_cancellation_requested(invoke_cleanup=True, where="startup"):
                return self.ctx.state

            if checkpoint is not None:
                self._restore(checkpoint)
            self.ctx.set_state(BuildState.RUNNING)

            total = sum(s.weight for s in self.phases) or 1.0
            done = 0.0
            ran_weight = 0.0
            started = time.monotonic()

            for spec in self.phases:
                label = spec.phase.label
                if self.coordinator.test_cancellation_requested(invoke_cleanup=True, where=f"before {label}"):
                    return self.ctx.state

                if CheckpointStore.is_phase_complete(spec.phase, checkpoint):
                    done += spec.weight
                    self.reporter.info(f"Skipping {label} (completed in a previous run)", phase=label)
                    continue

                pct = 100.0 * done / total
                eta = self._eta(started, ran_weight, total - done)
                self.reporter.progress(pct, spec.description, phase=label, eta_seconds=eta)

                t0 = time.monotonic()
                outcome = spec.run(self.pipeline)
                if outcome.cancelled:
                    if self.coordinator.test_cancellation_requested(invoke_cleanup=True, where=f"during {label}"):
                        return self.ctx.state
                    raise PhaseFailed(code=1, msg=f"{label} reported cancellation but none was requested")
                if not outcome.ok:
                    raise PhaseFailed(code=1, msg=f"{label} failed: {outcome.message or 'no details'}").with_context(phase=label)

                self.pipeline.artifacts.update(outcome.artifacts)
                self.pipeline.paths.update({k: str(v) for k, v in outcome.paths.items()})
                done += spec.weight
                ran_weight += spec.weight
                pct = 100.0 * done / total

                self.store.save(
                    spec.phase,
                    self.config_echo,
                    self.pipeline.artifacts,
                    self.pipeline.paths,
                    percent_complete=pct,
                    cleanup_entries=self.registry.summaries(),
                )
                note = f" ({outcome.message})" if outcome.message else ""
                self.reporter.progress(
                    pct,
                    f"{label} {'skipped' if outcome.skipped else 'done'} in {time.monotonic() - t0:.1f}s{note}",
                    phase=label,
                    eta_seconds=self._eta(started, ran_weight, total - done),
                )

            if self.coordinator.test_cancellation_requested(invoke_cleanup=True, where="before completion"):
                return self.ctx.state

            self.ctx.set_state(BuildState.COMPLETING)
            self.registry.clear()
            self.store.clear()
            self.ctx.set_state(BuildState.COMPLETED)
            self.reporter.success(
                f"Build completed in {time.monotonic() - started:.0f}s",
                terminal=True,
                state=BuildState.COMPLETED.value,
                paths=dict(self.pipeline.paths),
            )
            return BuildState.COMPLETED

        except Exception as e:
            self._fail(e)
            return BuildState.FAILED

    # ------------------------------------------------------------------

    def _restore(self, cp: BuildCheckpoint) -> None:
        self.pipeline.artifacts = dict(cp.artifacts)
        self.pipeline.paths = dict(cp.paths)
        self.pipeline.resumed_from = cp.last_completed_phase

        ref = cp.artifacts.get("vm_ref")
        if ref and self.provider is not None and not cp.artifacts.get("vm_removed"):
            self.pipeline.handle = self.provider.handle_for_ref(str(ref))

        restore_cleanup_entries(
            self.logger,
            self.registry,
            cp.cleanup_entries,
            host=self.host,
            provider=self.provider,
        )
        self.logger.info("🛟 Restored %d path(s) from checkpoint", len(self.pipeline.paths))

    @staticmethod
    def _eta(started: float, ran_weight: float, remaining_weight: float) -> Optional[float]:
        if ran_weight <= 0:
            return None
        rate = (time.monotonic() - started) / ran_weight
        return max(0.0, rate * remaining_weight)

    def _fail(self, e: BaseException) -> None:
        self.logger.debug("💥 Build failed with %s", type(e).__name__, exc_info=True)
        self.ctx.set_last_error(e)
        self.registry.execute_all(f"build failed: {format_exception_for_cli(e)}")
        self.ctx.set_state(BuildState.FAILED)
        self.reporter.error(
            f"Build failed: {format_exception_for_cli(e, verbose=1)}",
            terminal=True,
            state=BuildState.FAILED.value,
            error=type(e).__name__,
        )
