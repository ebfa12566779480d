# SPDX-License-Identifier: LGPL-3.0-or-later
# ffubuild/core/exceptions.py
"""
Error types for a build.

Every error carries an exit code (0..255), a one-line message, an optional
cause and a context dict. Context values whose key looks like a credential
are never rendered.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

REDACTED = "<redacted>"

# substrings of keys whose values are never printed or persisted
_SECRET_MARKERS = ("pass", "secret", "token", "apikey", "api_key", "auth", "cookie", "bearer", "credential", "private")


def is_secret_key(key: Any) -> bool:
    k = str(key or "").lower()
    return any(m in k for m in _SECRET_MARKERS)


def redact_mapping(d: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow copy of `d` with credential-like values replaced."""
    return {k: REDACTED if is_secret_key(k) else v for k, v in d.items()}


def _exit_code(code: Any) -> int:
    try:
        n = int(code)
    except (TypeError, ValueError):
        return 1
    if n < 0:
        return 1
    return min(n, 255)


def _squash(text: Any, limit: int = 600) -> str:
    s = " ".join(str(text or "").split())
    return s if len(s) <= limit else s[: limit - 3] + "..."


@dataclass(eq=False)
class FfuBuildError(Exception):
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _exit_code(self.code)
        self.msg = _squash(self.msg) or type(self).__name__
        self.context = dict(self.context or {})
        super().__init__(self.msg)

    def with_context(self, **ctx: Any) -> "FfuBuildError":
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        text = self.msg
        if include_context and self.context:
            shown = redact_mapping(self.context)
            text += " [" + _squash(", ".join(f"{k}={shown[k]!r}" for k in sorted(shown))) + "]"
        if include_cause and self.cause is not None:
            text += f" (cause: {type(self.cause).__name__}: {_squash(self.cause)})"
        return text

    def __str__(self) -> str:
        return self.msg

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.msg,
            "context": redact_mapping(self.context),
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _squash(self.cause)}
        return d


class Fatal(FfuBuildError):
    """Stops the CLI; main() exits with `code`."""


class UnsupportedConfiguration(FfuBuildError):
    """VM shape exceeds the backend's capabilities (nothing allocated yet)."""


class ResourceCreationError(FfuBuildError):
    """Backend failed while creating or configuring a VM or disk."""


class ProviderError(FfuBuildError):
    """Backend failed on an existing VM or disk."""


class ProviderUnavailable(FfuBuildError):
    """Unknown backend name, or backend not usable on this host."""


class MountVerificationFailed(FfuBuildError):
    """No verified, accessible mount point after every attempt."""


class CheckpointError(FfuBuildError):
    """Checkpoint write failed, or would move progress backwards."""


class PhaseFailed(FfuBuildError):
    pass


def wrap_fatal(msg: str, exc: Optional[BaseException] = None, code: int = 1, **context: Any) -> Fatal:
    return Fatal(code=code, msg=msg, cause=exc, context=context)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """Message only; -v adds context, -vv adds the cause (or the type, for foreign errors)."""
    if isinstance(e, FfuBuildError):
        return e.user_message(include_context=verbose >= 1, include_cause=verbose >= 2)
    if verbose >= 2:
        return f"{type(e).__name__}: {_squash(e)}"
    return _squash(e) or type(e).__name__
