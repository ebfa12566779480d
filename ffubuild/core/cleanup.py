# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/core/cleanup.py
"""
Rollback registry for resources the build creates on the host.

Entries are registered right after a resource exists and are torn down
newest-first. Rollback actions must tolerate an already-absent resource.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..messaging.reporter import Reporter


class ResourceKind(str, Enum):
    VM = "vm"
    VIRTUAL_DISK = "virtual-disk"
    OS_ACCOUNT = "os-account"
    NETWORK_SHARE = "network-share"
    ISO = "iso"
    MOUNT = "mount"
    ARBITRARY = "arbitrary"

    @classmethod
    def parse(cls, v: Any) -> "ResourceKind":
        if isinstance(v, cls):
            return v
        s = str(v or "").strip().lower()
        for k in cls:
            if k.value == s or k.name.lower() == s:
                return k
        return cls.ARBITRARY


RollbackAction = Callable[[], Any]


@dataclass(frozen=True)
class CleanupEntry:
    id: int
    name: str
    kind: ResourceKind
    resource_id: str
    action: RollbackAction

    def summary(self) -> Dict[str, str]:
        """Serializable part of the entry (the action is re-derived on resume)."""
        return {"kind": self.kind.value, "id": self.resource_id, "name": self.name}


@dataclass
class CleanupOutcome:
    entry_id: int
    name: str
    kind: ResourceKind
    resource_id: str
    ok: bool
    error: Optional[str] = None


class CleanupRegistry:
    """
    Ordered rollback list guarded by one lock.

    The lock is held while rollback runs so a registration arriving from the
    other thread lands in the next generation instead of racing the teardown.
    """

    def __init__(self, logger: logging.Logger, reporter: Optional[Reporter] = None):
        self.logger = logger
        self.reporter = reporter
        self._lock = threading.RLock()
        self._entries: List[CleanupEntry] = []
        self._ids = itertools.count(1)
        self._generation = 0
        self._executed_generations: set = set()

    # ------------------------------------------------------------------

    def register(
        self,
        kind: ResourceKind,
        resource_id: str,
        name: str,
        action: RollbackAction,
    ) -> int:
        if not callable(action):
            raise TypeError(f"rollback action for {name!r} is not callable")
        with self._lock:
            entry = CleanupEntry(
                id=next(self._ids),
                name=name,
                kind=ResourceKind.parse(kind),
                resource_id=str(resource_id),
                action=action,
            )
            self._entries.append(entry)
        self.logger.debug("🧹 Registered cleanup #%d: %s (%s %s)", entry.id, name, entry.kind.value, entry.resource_id)
        return entry.id

    def unregister(self, entry_id: int) -> bool:
        with self._lock:
            for i, e in enumerate(self._entries):
                if e.id == entry_id:
                    del self._entries[i]
                    self.logger.debug("🧹 Unregistered cleanup #%d: %s", entry_id, e.name)
                    return True
        self.logger.debug("🧹 Unregister: no cleanup entry #%s", entry_id)
        return False

    def entries(self) -> List[CleanupEntry]:
        with self._lock:
            return list(self._entries)

    def summaries(self) -> List[Dict[str, str]]:
        return [e.summary() for e in self.entries()]

    def find(self, kind: ResourceKind, resource_id: str) -> Optional[CleanupEntry]:
        with self._lock:
            for e in reversed(self._entries):
                if e.kind == kind and e.resource_id == str(resource_id):
                    return e
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def generation(self) -> int:
        return self._generation

    # ------------------------------------------------------------------

    def execute_all(self, reason: str) -> List[CleanupOutcome]:
        """
        Run every remaining rollback action, newest first.

        A failing action is logged and the next one still runs. A generation
        is executed at most once; a second call returns an empty list.
        """
        with self._lock:
            gen = self._generation
            if gen in self._executed_generations:
                self.logger.debug("🧹 Cleanup generation %d already executed; skipping (%s)", gen, reason)
                return []
            self._executed_generations.add(gen)

            pending = list(reversed(self._entries))
            self._entries.clear()
            self._generation += 1

            if not pending:
                self.logger.debug("🧹 Nothing to roll back (%s)", reason)
                return []

            self._say_info(f"Rolling back {len(pending)} resource(s): {reason}")
            outcomes: List[CleanupOutcome] = []
            for e in pending:
                try:
                    e.action()
                except Exception as ex:
                    outcomes.append(CleanupOutcome(e.id, e.name, e.kind, e.resource_id, ok=False, error=str(ex)))
                    # the build's own failure is the one terminal Error
                    self._say_warning(f"Rollback failed: {e.name} ({e.kind.value} {e.resource_id}): {ex}")
                    self.logger.debug("💥 rollback exception for #%d", e.id, exc_info=True)
                    continue
                outcomes.append(CleanupOutcome(e.id, e.name, e.kind, e.resource_id, ok=True))
                self._say_info(f"Rolled back: {e.name} ({e.kind.value} {e.resource_id})")

            failed = sum(1 for o in outcomes if not o.ok)
            self.logger.info("🧹 Rollback finished: %d ok, %d failed", len(outcomes) - failed, failed)
            return outcomes

    def clear(self) -> int:
        """Forget every entry without running it (successful completion)."""
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            self._generation += 1
        self.logger.debug("🧹 Cleanup registry cleared (%d entr%s kept)", n, "y" if n == 1 else "ies")
        return n

    # ------------------------------------------------------------------

    def _say_info(self, text: str) -> None:
        if self.reporter is not None:
            self.reporter.info(text)
        else:
            self.logger.info("🧹 %s", text)

    def _say_warning(self, text: str) -> None:
        if self.reporter is not None:
            self.reporter.warning(text)
        else:
            self.logger.warning("⚠️  %s", text)
