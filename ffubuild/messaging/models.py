# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/messaging/models.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class Severity(str, Enum):
    DEBUG = "Debug"
    INFO = "Info"
    PROGRESS = "Progress"
    SUCCESS = "Success"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"


class BuildState(str, Enum):
    NOT_STARTED = "NotStarted"
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    CANCELLING = "Cancelling"
    COMPLETING = "Completing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({BuildState.COMPLETED, BuildState.FAILED, BuildState.CANCELLED})


def _freeze(payload: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(payload or {}))


@dataclass(frozen=True)
class Message:
    """One event on the channel. Immutable once constructed."""
    text: str
    severity: Severity = Severity.INFO
    source: str = "build"
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        # frozen: go through object.__setattr__ to swap in the read-only view
        object.__setattr__(self, "payload", _freeze(self.payload))

    def to_dict(self) -> Dict[str, Any]:
        # asdict() would deepcopy the mappingproxy, which isn't picklable
        d = {name: getattr(self, name) for name in self.__dataclass_fields__}
        d["kind"] = type(self).__name__
        d["severity"] = self.severity.value
        d["payload"] = dict(self.payload)
        return d


@dataclass(frozen=True)
class ProgressMessage(Message):
    severity: Severity = Severity.PROGRESS
    percent: float = 0.0
    current_operation: str = ""
    phase: Optional[str] = None
    eta_seconds: Optional[float] = None
