# SPDX-License-Identifier: LGPL-3.0-or-later
import time
from unittest.mock import patch

import pytest

from fakes.fake_logger import FakeLogger
from ffubuild.cli.supervisor import EXIT_CANCELLED, BuildSupervisor, exit_code_for
from ffubuild.core.cancellation import CancellationCoordinator
from ffubuild.core.checkpoint import BuildCheckpoint, BuildPhase, CheckpointStore
from ffubuild.core.cleanup import CleanupRegistry
from ffubuild.core.exceptions import ResourceCreationError
from ffubuild.messaging import BuildState, new_messaging_context
from ffubuild.orchestrator import BuildOrchestrator, PhaseOutcome, PhaseSpec

P = BuildPhase


def _orch(logger, ctx, tmp_path, *bodies, **kw):
    registry = CleanupRegistry(logger)
    phases = [PhaseSpec(p, p.label, body) for p, body in zip((P.PREFLIGHT_VALIDATION, P.DRIVER_DOWNLOAD, P.UPDATES_DOWNLOAD), bodies)]
    return BuildOrchestrator(
        logger,
        ctx,
        phases=phases,
        store=CheckpointStore(logger, tmp_path, build_id="sup"),
        registry=registry,
        coordinator=CancellationCoordinator(logger, ctx, registry),
        **kw,
    )


def ok(state):
    return PhaseOutcome()


@pytest.fixture
def flog():
    return FakeLogger()


@pytest.fixture
def fctx(flog):
    return new_messaging_context(logger=flog)


@pytest.mark.unit
class TestExitCodes:
    def test_completed(self, flog, fctx, tmp_path):
        sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path, ok, ok, ok), interactive=False, tick_s=0.01)
        assert sup.run() == 0
        assert sup.terminal is not None
        assert any("Build completed" in m for m in flog.messages("info"))

    def test_failure_uses_error_code(self, flog, fctx, tmp_path):
        def explode(state):
            raise ResourceCreationError(code=30, msg="New-VHD failed")

        sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path, ok, explode), interactive=False, tick_s=0.01)
        assert sup.run() == 30
        assert sup.terminal.payload["state"] == "Failed"

    def test_plain_failure(self, flog, fctx, tmp_path):
        sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path, lambda s: PhaseOutcome.failed("nope")), interactive=False, tick_s=0.01)
        assert sup.run() == 1

    def test_exit_code_without_error(self, fctx):
        fctx.set_state(BuildState.FAILED)
        assert exit_code_for(fctx) == 1

    def test_ctrl_c_cancels(self, flog, fctx, tmp_path):
        def slow(state):
            deadline = time.monotonic() + 5
            while not fctx.cancellation_requested and time.monotonic() < deadline:
                time.sleep(0.01)
            return PhaseOutcome()

        ran = []
        sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path, slow, lambda s: ran.append(1) or PhaseOutcome()), interactive=False, tick_s=0.01)
        real_pump = BuildSupervisor._pump
        pumps = []

        def pump(self, worker):
            pumps.append(worker)
            if len(pumps) == 1:
                raise KeyboardInterrupt
            real_pump(self, worker)

        with patch.object(BuildSupervisor, "_pump", pump):
            assert sup.run() == EXIT_CANCELLED
        assert ran == []
        assert fctx.state == BuildState.CANCELLED


@pytest.mark.unit
class TestResumeChoice:
    def _cp(self):
        return BuildCheckpoint(build_id="b", last_completed_phase=P.VM_SETUP, percent_complete=40.0)

    def test_explicit_flag_wins(self, flog, fctx, tmp_path):
        sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path), resume=False, interactive=True)
        assert sup.choose_resume(self._cp()) is False

    def test_non_interactive_resumes(self, flog, fctx, tmp_path):
        sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path), interactive=False)
        assert sup.choose_resume(self._cp()) is True

    def test_interactive_asks(self, flog, fctx, tmp_path):
        sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path), interactive=True)
        with patch("ffubuild.cli.supervisor.Confirm.ask", return_value=False) as ask:
            assert sup.choose_resume(self._cp()) is False
        assert "VMSetup" in ask.call_args.args[0]


@pytest.mark.unit
def test_progress_logged_once_per_percent(flog, fctx, tmp_path):
    sup = BuildSupervisor(flog, fctx, _orch(flog, fctx, tmp_path), interactive=False)
    for pct in (10.0, 10.2, 10.9, 11.0, 50.0):
        fctx.write_progress(pct, "Downloading drivers", phase="DriverDownload")
    sup._dispatch(fctx.drain())
    lines = [m for m in flog.messages("info") if m.startswith("📈")]
    assert len(lines) == 3
    assert len(sup.seen) == 5
