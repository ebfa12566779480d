# SPDX-License-Identifier: LGPL-3.0-or-later
import json
import threading
from unittest.mock import Mock

import pytest

from ffubuild.messaging import (
    DEFAULT_DRAIN_COUNT,
    BuildState,
    Message,
    ProgressMessage,
    Severity,
    new_messaging_context,
)


@pytest.fixture
def ctx():
    return new_messaging_context(logger=Mock())


@pytest.mark.unit
class TestQueue:
    def test_drain_is_fifo(self, ctx):
        for i in range(5):
            ctx.write_message(Severity.INFO, f"m{i}")
        assert [m.text for m in ctx.drain()] == ["m0", "m1", "m2", "m3", "m4"]
        assert ctx.drain() == []

    def test_drain_respects_max_count(self, ctx):
        for i in range(DEFAULT_DRAIN_COUNT + 20):
            ctx.write_message(Severity.INFO, str(i))
        first = ctx.drain()
        assert len(first) == DEFAULT_DRAIN_COUNT
        assert first[0].text == "0"
        assert [m.text for m in ctx.drain(5)] == ["100", "101", "102", "103", "104"]
        assert ctx.pending() == 15
        assert ctx.drain(0) == []

    def test_peek_does_not_consume(self, ctx):
        assert ctx.peek() is None
        ctx.write_message(Severity.WARNING, "careful")
        assert ctx.peek().text == "careful"
        assert ctx.pending() == 1

    def test_concurrent_producers_lose_nothing(self, ctx):
        def produce(tag):
            for i in range(500):
                ctx.write_message(Severity.DEBUG, f"{tag}-{i}")

        threads = [threading.Thread(target=produce, args=(t,)) for t in "abcd"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        got = []
        while ctx.pending():
            got.extend(ctx.drain())
        assert len(got) == 2000
        for tag in "abcd":
            mine = [int(m.text.split("-")[1]) for m in got if m.text.startswith(tag)]
            assert mine == list(range(500))

    def test_counters(self, ctx):
        ctx.write_message(Severity.WARNING, "w")
        ctx.write_message(Severity.ERROR, "e")
        ctx.write_progress(10, "x")
        ctx.drain(1)
        c = ctx.counters()
        assert c["Warning"] == 1
        assert c["Error"] == 1
        assert c["Progress"] == 1
        assert c["enqueued"] == 3
        assert c["drained"] == 1


@pytest.mark.unit
class TestProgressState:
    def test_progress_updates_current_fields(self, ctx):
        ctx.write_progress(42.5, "Creating VHDX", phase="VHDXCreation", eta_seconds=120)

        assert ctx.current_percent == 42.5
        assert ctx.current_operation == "Creating VHDX"
        assert ctx.current_phase == "VHDXCreation"
        snap = ctx.snapshot()
        assert snap.eta_seconds == 120
        assert snap.state == BuildState.NOT_STARTED

    def test_percent_is_clamped(self, ctx):
        ctx.write_progress(150, "over")
        assert ctx.current_percent == 100.0
        ctx.write_progress(-3, "under")
        assert ctx.current_percent == 0.0

    def test_plain_messages_do_not_touch_progress(self, ctx):
        ctx.write_progress(20, "phase two", phase="DriverDownload")
        ctx.write_message(Severity.INFO, "hello")
        assert ctx.current_operation == "phase two"

    def test_phase_kept_when_omitted(self, ctx):
        ctx.write_progress(20, "a", phase="VMStart")
        ctx.write_progress(25, "b")
        assert ctx.current_phase == "VMStart"


@pytest.mark.unit
class TestMessages:
    def test_message_is_immutable(self):
        m = Message(text="x", payload={"a": 1})
        with pytest.raises(Exception):
            m.text = "y"
        with pytest.raises(TypeError):
            m.payload["a"] = 2

    def test_to_dict(self):
        m = ProgressMessage(text="op", percent=5.0, current_operation="op", phase="VMSetup")
        d = m.to_dict()
        assert d["kind"] == "ProgressMessage"
        assert d["severity"] == "Progress"
        assert d["phase"] == "VMSetup"
        json.dumps(d)


@pytest.mark.unit
class TestStateMachine:
    def test_happy_path(self, ctx):
        for s in (BuildState.INITIALIZING, BuildState.RUNNING, BuildState.COMPLETING, BuildState.COMPLETED):
            assert ctx.set_state(s)
        assert ctx.state.is_terminal

    def test_terminal_states_are_sticky(self, ctx):
        ctx.set_state(BuildState.RUNNING)
        ctx.set_state(BuildState.FAILED)
        assert ctx.set_state(BuildState.RUNNING) is False
        assert ctx.set_state(BuildState.CANCELLED) is False
        assert ctx.state == BuildState.FAILED

    def test_completing_cannot_be_cancelled(self, ctx):
        ctx.set_state(BuildState.RUNNING)
        ctx.set_state(BuildState.COMPLETING)
        assert ctx.set_state(BuildState.CANCELLING) is False

    def test_last_error(self, ctx):
        err = RuntimeError("x")
        ctx.set_last_error(err)
        assert ctx.last_error is err


@pytest.mark.unit
class TestLogMirror:
    def test_every_message_is_one_json_line(self, tmp_path):
        log = tmp_path / "logs" / "messages.ndjson"
        ctx = new_messaging_context(log_file=log, logger=Mock())

        def produce(tag):
            for i in range(100):
                ctx.write_message(Severity.INFO, f"{tag}-{i}", payload={"blob": "x" * 200})

        threads = [threading.Thread(target=produce, args=(t,)) for t in "ab"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        ctx.write_progress(50, "half", phase="VMStart")

        lines = log.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 201
        decoded = [json.loads(line) for line in lines]
        assert decoded[-1]["kind"] == "ProgressMessage"
        assert decoded[-1]["percent"] == 50.0

    def test_mirror_failure_keeps_queue(self, tmp_path):
        ctx = new_messaging_context(log_file=tmp_path / "m.ndjson", logger=Mock())
        ctx._mirror.write = Mock(side_effect=OSError("disk full"))
        ctx.write_message(Severity.INFO, "still queued")
        assert ctx.pending() == 1
