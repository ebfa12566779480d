# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/messaging/reporter.py
from __future__ import annotations

import logging
from typing import Any, Optional

from ..core.logger import Log
from .context import MessagingContext
from .models import Message, ProgressMessage, Severity

_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.PROGRESS: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class Reporter:
    """
    Writes every event twice: to the project logger (for the console/log
    file) and onto the message channel (for the supervising interface).

    Components get a Reporter bound to their own source tag:

        rep = Reporter(logger, ctx, source="hyperv")
        rep.warning("vmms service slow to answer; falling back to polling")
    """

    def __init__(self, logger: logging.Logger, ctx: Optional[MessagingContext], *, source: str = "build"):
        self.logger = logger
        self.ctx = ctx
        self.source = source

    def bind(self, source: str) -> "Reporter":
        return Reporter(self.logger, self.ctx, source=source)

    def emit(self, severity: Severity, text: str, **payload: Any) -> Optional[Message]:
        level = _LEVELS.get(severity, logging.INFO)
        extra = {"ctx": {"src": self.source, **payload}} if payload else {"ctx": {"src": self.source}}
        self.logger.log(level, text, extra=extra)
        if self.ctx is None:
            return None
        return self.ctx.write_message(severity, text, source=self.source, payload=payload)

    def debug(self, text: str, **payload: Any) -> None:
        # debug stays out of the channel unless the logger wants it
        if self.logger.isEnabledFor(logging.DEBUG):
            self.emit(Severity.DEBUG, text, **payload)

    def info(self, text: str, **payload: Any) -> None:
        self.emit(Severity.INFO, text, **payload)

    def success(self, text: str, **payload: Any) -> None:
        self.emit(Severity.SUCCESS, text, **payload)

    def warning(self, text: str, **payload: Any) -> None:
        self.emit(Severity.WARNING, text, **payload)

    def error(self, text: str, **payload: Any) -> None:
        self.emit(Severity.ERROR, text, **payload)

    def critical(self, text: str, **payload: Any) -> None:
        self.emit(Severity.CRITICAL, text, **payload)

    def step(self, text: str, **payload: Any) -> None:
        Log.step(self.logger, text, **payload)
        if self.ctx is not None:
            self.ctx.write_message(Severity.INFO, text, source=self.source, payload=payload)

    def progress(
        self,
        percent: float,
        operation: str,
        *,
        phase: Optional[str] = None,
        eta_seconds: Optional[float] = None,
        **payload: Any,
    ) -> Optional[ProgressMessage]:
        Log.trace(self.logger, "📈 %.1f%% %s", percent, operation)
        if self.ctx is None:
            return None
        return self.ctx.write_progress(
            percent,
            operation,
            phase=phase,
            eta_seconds=eta_seconds,
            source=self.source,
            payload=dict(payload),
        )
