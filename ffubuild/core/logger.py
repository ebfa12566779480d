# SPDX-License-Identifier: LGPL-3.0-or-later
# ffubuild/core/logger.py
"""
Console/file logging for a build.

Two threads write here: the supervisor (main thread, progress rendering)
and the build worker. Console lines carry a short role tag so the two are
easy to tell apart; `ctx` key/values passed via `extra` trail the message,
with `phase` always first.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .optional_imports import colored as _colored

TRACE = 5
if not hasattr(logging, "TRACE"):
    logging.TRACE = TRACE  # type: ignore[attr-defined]
    logging.addLevelName(TRACE, "TRACE")


def _logger_trace(self: logging.Logger, msg: str, *args, **kwargs) -> None:
    if self.isEnabledFor(TRACE):
        self._log(TRACE, msg, args, **kwargs)


if not hasattr(logging.Logger, "trace"):
    logging.Logger.trace = _logger_trace  # type: ignore[attr-defined]

# levelname -> (emoji, termcolor color)
_LEVELS: Dict[str, tuple] = {
    "TRACE": ("🧬", "cyan"),
    "DEBUG": ("🔍", "blue"),
    "INFO": ("✅", "green"),
    "WARNING": ("⚠️", "yellow"),
    "ERROR": ("💥", "red"),
    "CRITICAL": ("🧨", "red"),
}

WORKER_THREAD = "ffu-build-worker"


def c(text: str, color: Optional[str] = None, attrs: Optional[List[str]] = None, *, enable: bool = True) -> str:
    """Colorize text with termcolor when it is installed and `enable` is set."""
    if not (enable and color and _colored is not None):
        return text
    return _colored(text, color=color, attrs=attrs or [])


def _stderr_is_tty() -> bool:
    isatty = getattr(sys.stderr, "isatty", None)
    return bool(isatty and isatty())


def _stderr_takes_emoji() -> bool:
    enc = getattr(sys.stderr, "encoding", None) or "utf-8"
    try:
        "🧬".encode(enc)
    except (UnicodeEncodeError, LookupError):
        return False
    return True


def _clip(v: Any, limit: int = 240) -> str:
    s = str(v).replace("\r", "\\r").replace("\n", "\\n")
    return s if len(s) <= limit else s[: limit - 1] + "…"


def _ctx_suffix(ctx: Optional[Mapping[str, Any]]) -> str:
    if not ctx:
        return ""
    keys = sorted(ctx, key=lambda k: (k != "phase", str(k)))
    return " " + " ".join(f"{_clip(k, 80)}={_clip(ctx[k])}" for k in keys)


def _role(record: logging.LogRecord) -> str:
    if record.threadName == WORKER_THREAD:
        return "worker"
    if record.threadName == "MainThread":
        return "main"
    return record.threadName


@dataclass(frozen=True)
class LogStyle:
    color: bool = True
    unicode: bool = True
    show_ms: bool = False
    show_role: bool = True
    show_src: bool = False
    show_pid: bool = False
    show_logger: bool = False
    utc: bool = False
    level_width: int = 8


class EmojiFormatter(logging.Formatter):
    """`HH:MM:SS 🔍 LEVEL    [tags] message k=v ...` plus an indented traceback."""

    def __init__(self, style: LogStyle):
        super().__init__()
        self.style = style

    def _clock(self, created: float) -> str:
        tz = _dt.timezone.utc if self.style.utc else None
        t = _dt.datetime.fromtimestamp(created, tz=tz)
        return t.strftime("%H:%M:%S.%f")[:-3] if self.style.show_ms else t.strftime("%H:%M:%S")

    def _tags(self, record: logging.LogRecord) -> str:
        s = self.style
        tags = [
            t
            for on, t in (
                (s.show_pid, f"pid={os.getpid()}"),
                (s.show_role, _role(record)),
                (s.show_logger, record.name),
                (s.show_src, f"{record.module}:{record.lineno}"),
            )
            if on
        ]
        return f" [{' '.join(tags)}]" if tags else ""

    def format(self, record: logging.LogRecord) -> str:
        colorize = self.style.color and _stderr_is_tty()
        emoji, color = _LEVELS.get(record.levelname, ("•", None))
        if not self.style.unicode:
            emoji = "·"

        level = c(f"{record.levelname:<{self.style.level_width}}", color, enable=colorize)
        msg = record.getMessage()
        if record.levelno >= logging.WARNING:
            msg = c(msg, color, ["bold"], enable=colorize)

        line = f"{self._clock(record.created)} {emoji} {level}{self._tags(record)} {msg}"
        line += _ctx_suffix(getattr(record, "ctx", None))

        tb = "\n".join(x for x in (self.formatException(record.exc_info) if record.exc_info else "", record.stack_info or "") if x)
        if tb:
            block = "\n".join("  " + ln for ln in tb.splitlines())
            line += "\n" + c(block, "red", enable=colorize and bool(record.exc_info))
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line (for CI and log shippers)."""

    def __init__(self, *, utc: bool = True, include_src: bool = True):
        super().__init__()
        self.utc = utc
        self.include_src = include_src

    def format(self, record: logging.LogRecord) -> str:
        tz = _dt.timezone.utc if self.utc else None
        obj: Dict[str, Any] = {
            "ts": _dt.datetime.fromtimestamp(record.created, tz=tz).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "role": _role(record),
            "msg": record.getMessage(),
        }
        if self.include_src:
            obj["module"] = record.module
            obj["lineno"] = record.lineno
        ctx = getattr(record, "ctx", None)
        if ctx:
            obj["ctx"] = {str(k): _clip(v) for k, v in ctx.items()}
        if record.exc_info:
            obj["exc_type"] = getattr(record.exc_info[0], "__name__", "Exception")
            obj["traceback"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False, default=str)


class Log:
    @staticmethod
    def _level_from_flags(verbose: int, quiet: int) -> int:
        # -q WARNING, -qq ERROR, -vv DEBUG, -vvv TRACE; quiet wins
        if quiet:
            return logging.ERROR if quiet >= 2 else logging.WARNING
        if verbose >= 3:
            return TRACE
        return logging.DEBUG if verbose >= 2 else logging.INFO

    @staticmethod
    def step(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.info("➡️  %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def trace(logger: logging.Logger, msg: str, *args: Any, **ctx: Any) -> None:
        kw = {"extra": {"ctx": ctx}} if ctx else {}
        fn = getattr(logger, "trace", None)
        if callable(fn):
            fn(msg, *args, **kw)
        else:
            logger.log(TRACE, msg, *args, **kw)

    @staticmethod
    def setup(
        verbose: int = 0,
        log_file: Optional[str] = None,
        *,
        quiet: int = 0,
        color: Optional[bool] = None,
        utc: bool = False,
        logger_name: str = "ffubuild",
        json_logs: bool = False,
    ) -> logging.Logger:
        """
        (Re)configure the `ffubuild` logger: one stderr handler, plus a file
        handler when `log_file` is given. The file always gets uncolored lines
        with pid, logger name and source location.
        """
        logger = logging.getLogger(logger_name)
        logger.propagate = False
        level = Log._level_from_flags(verbose, quiet)
        logger.setLevel(level)

        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

        style = LogStyle(
            color=True if color is None else bool(color),
            unicode=_stderr_takes_emoji(),
            show_ms=verbose >= 3,
            show_src=verbose >= 3,
            utc=utc,
        )
        handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
        handlers[0].setFormatter(JsonFormatter(utc=utc) if json_logs else EmojiFormatter(style))

        if log_file:
            fp = Path(log_file).expanduser().resolve()
            fp.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(fp, encoding="utf-8")
            file_style = replace(style, color=False, show_ms=True, show_src=True, show_pid=True, show_logger=True)
            fh.setFormatter(JsonFormatter(utc=utc) if json_logs else EmojiFormatter(file_style))
            handlers.append(fh)

        for h in handlers:
            h.setLevel(level)
            logger.addHandler(h)

        logger.debug("Logging at %s (pid %d)", logging.getLevelName(level), os.getpid())
        return logger
