# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/core/cancellation.py
"""
Cooperative cancellation.

The supervising side flips a flag; the worker only looks at it at phase
boundaries (and inside explicit cancellation-aware waits), so a request
takes effect once the current phase's work is done.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ..messaging.context import MessagingContext
from ..messaging.models import BuildState, Severity
from .cleanup import CleanupRegistry


def request_cancellation(ctx: MessagingContext, *, logger: Optional[logging.Logger] = None, reason: str = "user request") -> bool:
    """
    Supervising side only. Returns False if the build is already finished.
    """
    state = ctx.state
    if state.is_terminal or state == BuildState.COMPLETING:
        if logger:
            logger.debug("Cancellation ignored; build already %s", state.value)
        return False
    first = not ctx.cancellation_requested
    ctx.mark_cancellation_requested()
    ctx.set_state(BuildState.CANCELLING)
    if first:
        if logger:
            logger.warning("⚠️  Cancellation requested (%s); stopping at the next phase boundary", reason)
        ctx.write_message(
            Severity.WARNING,
            f"Cancellation requested ({reason}); the build stops at the next safe point",
            source="supervisor",
        )
    return True


class CancellationCoordinator:
    """
    Worker-side view of the cancellation flag.

    test_cancellation_requested() is cheap and never blocks. When it sees the
    flag it logs, optionally drains the cleanup registry and moves the build
    to the terminal Cancelled state.
    """

    def __init__(self, logger: logging.Logger, ctx: MessagingContext, registry: Optional[CleanupRegistry] = None):
        self.logger = logger
        self.ctx = ctx
        self.registry = registry
        self._handled = False

    def test_cancellation_requested(self, *, invoke_cleanup: bool = False, where: str = "") -> bool:
        if not self.ctx.cancellation_requested:
            return False
        if self._handled:
            return True
        self._handled = True

        at = f" at {where}" if where else ""
        self.logger.warning("⚠️  Build cancelled%s", at)
        self.ctx.set_state(BuildState.CANCELLING)

        if invoke_cleanup and self.registry is not None:
            self.registry.execute_all(f"build cancelled{at}")

        self.ctx.set_state(BuildState.CANCELLED)
        self.ctx.write_message(
            Severity.WARNING,
            f"Build cancelled{at}; resources created so far were removed" if invoke_cleanup else f"Build cancelled{at}",
            source="orchestrator",
            payload={"terminal": True, "state": BuildState.CANCELLED.value},
        )
        return True

    def wait_until(
        self,
        predicate: Callable[[float], bool],
        *,
        timeout_s: float,
        slice_s: float = 5.0,
    ) -> Optional[bool]:
        """
        Cancellation-aware wait loop.

        Calls predicate(slice_timeout) repeatedly (typically a bounded
        WaitForState). Returns True when it succeeds, False when the overall
        timeout runs out, None when cancellation was requested meanwhile.
        """
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        while True:
            if self.ctx.cancellation_requested:
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if predicate(min(slice_s, remaining)):
                return True
