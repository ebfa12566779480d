# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/messaging/context.py
"""
Shared state between the supervising thread and the build worker.

The event queue is a collections.deque: append() and popleft() are atomic,
so producers never take a lock and never wait on the consumer. Everything
else (state, counters, current progress) sits behind one small lock that is
only held for field assignments.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from .models import BuildState, Message, ProgressMessage, Severity

try:
    import fcntl  # POSIX only
except ImportError:  # pragma: no cover
    fcntl = None  # type: ignore

DEFAULT_DRAIN_COUNT = 100

# Allowed transitions; terminal states have no way out.
_TRANSITIONS: Dict[BuildState, frozenset] = {
    BuildState.NOT_STARTED: frozenset({BuildState.INITIALIZING, BuildState.RUNNING, BuildState.CANCELLING, BuildState.FAILED, BuildState.CANCELLED}),
    BuildState.INITIALIZING: frozenset({BuildState.RUNNING, BuildState.CANCELLING, BuildState.FAILED, BuildState.CANCELLED}),
    BuildState.RUNNING: frozenset({BuildState.COMPLETING, BuildState.CANCELLING, BuildState.FAILED, BuildState.CANCELLED}),
    BuildState.CANCELLING: frozenset({BuildState.CANCELLED, BuildState.FAILED}),
    BuildState.COMPLETING: frozenset({BuildState.COMPLETED, BuildState.FAILED}),
    BuildState.COMPLETED: frozenset(),
    BuildState.FAILED: frozenset(),
    BuildState.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class ProgressSnapshot:
    percent: float
    operation: str
    phase: Optional[str]
    eta_seconds: Optional[float]
    state: BuildState


class _LogMirror:
    """
    Append-only NDJSON mirror of the channel.

    One writer at a time: a thread lock inside the process and, where the OS
    has it, an exclusive flock on the file so other processes tailing or
    writing the same log never see half a line.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, msg: Message) -> None:
        line = json.dumps(msg.to_dict(), sort_keys=True, default=str) + "\n"
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                if fcntl is not None:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.write(line)
                    f.flush()
                finally:
                    if fcntl is not None:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class MessagingContext:
    """
    One instance per build run. Created by the supervising side and handed to
    the worker by reference.
    """

    def __init__(self, *, log_file: Optional[Path] = None, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("ffubuild.messaging")
        self._queue: Deque[Message] = deque()
        self._cancel = threading.Event()
        self._lock = threading.Lock()

        self._state = BuildState.NOT_STARTED
        self._last_error: Optional[BaseException] = None
        self._counts: Counter = Counter()
        self._enqueued = 0
        self._drained = 0

        self._percent = 0.0
        self._operation = ""
        self._phase: Optional[str] = None
        self._eta: Optional[float] = None
        self._started = time.monotonic()

        self.log_file = Path(log_file) if log_file else None
        self._mirror = _LogMirror(self.log_file) if self.log_file else None

    # ------------------------------------------------------------------
    # queue
    # ------------------------------------------------------------------

    def enqueue(self, msg: Message) -> None:
        """Append a message. Never blocks on the consumer."""
        self._queue.append(msg)
        with self._lock:
            self._enqueued += 1
            self._counts[msg.severity] += 1
            if isinstance(msg, ProgressMessage):
                self._percent = max(0.0, min(100.0, float(msg.percent)))
                self._operation = msg.current_operation
                if msg.phase is not None:
                    self._phase = msg.phase
                self._eta = msg.eta_seconds

        if self._mirror is not None:
            try:
                self._mirror.write(msg)
            except OSError as e:
                # The mirror is optional; the in-memory queue stays authoritative.
                self.logger.debug("Message log mirror write failed (%s): %s", self.log_file, e)

    def drain(self, max_count: int = DEFAULT_DRAIN_COUNT) -> List[Message]:
        """Remove and return up to `max_count` messages in FIFO order."""
        out: List[Message] = []
        if max_count <= 0:
            return out
        while len(out) < max_count:
            try:
                out.append(self._queue.popleft())
            except IndexError:
                break
        if out:
            with self._lock:
                self._drained += len(out)
        return out

    def peek(self) -> Optional[Message]:
        try:
            return self._queue[0]
        except IndexError:
            return None

    def pending(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # convenience producers
    # ------------------------------------------------------------------

    def write_message(
        self,
        severity: Severity,
        text: str,
        *,
        source: str = "build",
        payload: Optional[Dict[str, Any]] = None,
    ) -> Message:
        msg = Message(text=text, severity=severity, source=source, payload=payload or {})
        self.enqueue(msg)
        return msg

    def write_progress(
        self,
        percent: float,
        operation: str,
        *,
        phase: Optional[str] = None,
        eta_seconds: Optional[float] = None,
        source: str = "build",
        payload: Optional[Dict[str, Any]] = None,
    ) -> ProgressMessage:
        msg = ProgressMessage(
            text=operation,
            source=source,
            payload=payload or {},
            percent=float(percent),
            current_operation=operation,
            phase=phase,
            eta_seconds=eta_seconds,
        )
        self.enqueue(msg)
        return msg

    # ------------------------------------------------------------------
    # current-state reads (no draining needed)
    # ------------------------------------------------------------------

    @property
    def current_percent(self) -> float:
        with self._lock:
            return self._percent

    @property
    def current_operation(self) -> str:
        with self._lock:
            return self._operation

    @property
    def current_phase(self) -> Optional[str]:
        with self._lock:
            return self._phase

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(
                percent=self._percent,
                operation=self._operation,
                phase=self._phase,
                eta_seconds=self._eta,
                state=self._state,
            )

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started

    def counters(self) -> Dict[str, int]:
        with self._lock:
            d = {sev.value: int(self._counts.get(sev, 0)) for sev in Severity}
            d["enqueued"] = self._enqueued
            d["drained"] = self._drained
            return d

    # ------------------------------------------------------------------
    # cancellation flag + build state
    # ------------------------------------------------------------------

    @property
    def cancellation_requested(self) -> bool:
        return self._cancel.is_set()

    def mark_cancellation_requested(self) -> None:
        self._cancel.set()

    @property
    def state(self) -> BuildState:
        with self._lock:
            return self._state

    def set_state(self, new_state: BuildState) -> bool:
        """
        Move to `new_state` if the transition is allowed.
        Returns False (and leaves state alone) otherwise.
        """
        with self._lock:
            cur = self._state
            if new_state == cur:
                return True
            if new_state not in _TRANSITIONS[cur]:
                self.logger.debug("Ignoring build state transition %s -> %s", cur.value, new_state.value)
                return False
            self._state = new_state
        self.logger.debug("Build state: %s -> %s (pid=%s)", cur.value, new_state.value, os.getpid())
        return True

    @property
    def last_error(self) -> Optional[BaseException]:
        with self._lock:
            return self._last_error

    def set_last_error(self, err: Optional[BaseException]) -> None:
        with self._lock:
            self._last_error = err
