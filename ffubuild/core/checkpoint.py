# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/core/checkpoint.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .exceptions import CheckpointError
from .utils import U

SCHEMA_VERSION = 1
# Older schema versions this build can still resume from.
COMPATIBLE_SCHEMA_VERSIONS = frozenset({1})

CHECKPOINT_DIRNAME = ".buildstate"
CHECKPOINT_FILENAME = "checkpoint.json"


class BuildPhase(IntEnum):
    """Fixed, totally ordered pipeline phases."""
    PREFLIGHT_VALIDATION = 1
    DRIVER_DOWNLOAD = 2
    UPDATES_DOWNLOAD = 3
    APPS_PREPARATION = 4
    VHDX_CREATION = 5
    WINDOWS_UPDATES = 6
    VM_SETUP = 7
    VM_START = 8
    APP_INSTALLATION = 9
    VM_SHUTDOWN = 10
    FFU_CAPTURE = 11
    DEPLOYMENT_MEDIA = 12
    USB_CREATION = 13
    CLEANUP = 14
    COMPLETED = 15

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS: Dict[BuildPhase, str] = {
    BuildPhase.PREFLIGHT_VALIDATION: "PreflightValidation",
    BuildPhase.DRIVER_DOWNLOAD: "DriverDownload",
    BuildPhase.UPDATES_DOWNLOAD: "UpdatesDownload",
    BuildPhase.APPS_PREPARATION: "AppsPreparation",
    BuildPhase.VHDX_CREATION: "VHDXCreation",
    BuildPhase.WINDOWS_UPDATES: "WindowsUpdates",
    BuildPhase.VM_SETUP: "VMSetup",
    BuildPhase.VM_START: "VMStart",
    BuildPhase.APP_INSTALLATION: "AppInstallation",
    BuildPhase.VM_SHUTDOWN: "VMShutdown",
    BuildPhase.FFU_CAPTURE: "FFUCapture",
    BuildPhase.DEPLOYMENT_MEDIA: "DeploymentMedia",
    BuildPhase.USB_CREATION: "USBCreation",
    BuildPhase.CLEANUP: "Cleanup",
    BuildPhase.COMPLETED: "Completed",
}

# Names older checkpoints (or other tooling) used for the same phase.
PHASE_ALIASES: Dict[str, BuildPhase] = {
    "vmcreation": BuildPhase.VM_SETUP,
    "createvm": BuildPhase.VM_SETUP,
    "vhdcreation": BuildPhase.VHDX_CREATION,
    "diskcreation": BuildPhase.VHDX_CREATION,
    "capture": BuildPhase.FFU_CAPTURE,
    "ffucreation": BuildPhase.FFU_CAPTURE,
    "preflight": BuildPhase.PREFLIGHT_VALIDATION,
    "drivers": BuildPhase.DRIVER_DOWNLOAD,
    "done": BuildPhase.COMPLETED,
}

_NAME_NORM_RE = re.compile(r"[^a-z0-9]+")


def _norm(name: str) -> str:
    return _NAME_NORM_RE.sub("", (name or "").lower())


_BY_NAME: Dict[str, BuildPhase] = {}
for _p in BuildPhase:
    _BY_NAME[_norm(_p.label)] = _p
    _BY_NAME[_norm(_p.name)] = _p
for _alias, _p in PHASE_ALIASES.items():
    _BY_NAME[_norm(_alias)] = _p


def parse_phase(value: Union[str, int, BuildPhase]) -> BuildPhase:
    """
    Resolve a phase from its label, enum name, alias or ordinal.
    Raises ValueError for anything unknown.
    """
    if isinstance(value, BuildPhase):
        return value
    if isinstance(value, int):
        return BuildPhase(value)
    s = str(value).strip()
    if s.isdigit():
        return BuildPhase(int(s))
    try:
        return _BY_NAME[_norm(s)]
    except KeyError:
        raise ValueError(f"unknown build phase: {value!r}") from None


def _json_dumps(obj: Any, *, indent: int = 2) -> str:
    return json.dumps(obj, indent=indent, sort_keys=True, default=str)


def _sha256_text(text: str) -> str:
    h = hashlib.sha256()
    h.update(text.encode("utf-8", errors="replace"))
    return h.hexdigest()


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    """
    Crash-safe write:
      - write to unique temp file in same directory
      - fsync file
      - atomic replace over the target
      - best-effort fsync of the directory entry
    Readers see either the previous file or the new one, never a partial one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd: Optional[int] = None
    tmp_name: Optional[str] = None
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent), text=True)
        with os.fdopen(fd, "w", encoding=encoding) as f:
            fd = None
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_name, str(path))
        tmp_name = None

        if hasattr(os, "O_DIRECTORY"):
            try:
                dirfd = os.open(str(path.parent), os.O_DIRECTORY)
                try:
                    os.fsync(dirfd)
                finally:
                    os.close(dirfd)
            except OSError:
                pass
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_name:
            Path(tmp_name).unlink(missing_ok=True)


@dataclass
class BuildCheckpoint:
    """
    Snapshot of pipeline progress. `last_completed_phase` implies every phase
    with a lower or equal ordinal finished without error.
    """
    build_id: str
    last_completed_phase: BuildPhase
    timestamp: str = field(default_factory=U.now_iso)
    percent_complete: float = 0.0
    configuration: Dict[str, Any] = field(default_factory=dict)
    artifacts: Dict[str, Any] = field(default_factory=dict)
    paths: Dict[str, str] = field(default_factory=dict)
    cleanup_entries: List[Dict[str, str]] = field(default_factory=list)
    version: int = SCHEMA_VERSION

    # Integrity (excluded from equality; recomputed on every write)
    sha256: Optional[str] = field(default=None, compare=False)
    bytes_len: Optional[int] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["last_completed_phase"] = self.last_completed_phase.label
        d["last_completed_ordinal"] = int(self.last_completed_phase)
        return d

    def _canonical_json(self) -> str:
        d = self.to_dict()
        d.pop("sha256", None)
        d.pop("bytes_len", None)
        return _json_dumps(d, indent=2)

    def finalize_integrity(self) -> None:
        canon = self._canonical_json()
        self.bytes_len = len(canon.encode("utf-8", errors="replace"))
        self.sha256 = _sha256_text(canon)

    def validate_integrity(self) -> bool:
        if not self.sha256 or not self.bytes_len:
            return True
        canon = self._canonical_json()
        if len(canon.encode("utf-8", errors="replace")) != int(self.bytes_len):
            return False
        return _sha256_text(canon) == self.sha256

    def to_json(self) -> str:
        self.finalize_integrity()
        return _json_dumps(self.to_dict(), indent=2)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "BuildCheckpoint":
        if not isinstance(d, dict):
            raise ValueError("checkpoint root must be a JSON object")
        if not d.get("build_id"):
            raise ValueError("checkpoint has no build_id")
        return BuildCheckpoint(
            build_id=str(d["build_id"]),
            last_completed_phase=parse_phase(d.get("last_completed_phase", d.get("last_completed_ordinal"))),
            timestamp=str(d.get("timestamp", "")),
            percent_complete=float(d.get("percent_complete", 0.0)),
            configuration=dict(d.get("configuration") or {}),
            artifacts=dict(d.get("artifacts") or {}),
            paths={str(k): str(v) for k, v in (d.get("paths") or {}).items()},
            cleanup_entries=[dict(e) for e in (d.get("cleanup_entries") or [])],
            version=int(d.get("version", 0)),
            sha256=(None if d.get("sha256") in (None, "") else str(d.get("sha256"))),
            bytes_len=(None if d.get("bytes_len") in (None, "") else int(d.get("bytes_len"))),
        )

    @staticmethod
    def from_json(text: str) -> "BuildCheckpoint":
        return BuildCheckpoint.from_dict(json.loads(text))


class CheckpointStore:
    """
    Single-file checkpoint at <work_dir>/.buildstate/checkpoint.json.

    - save(): temp file + atomic rename, refuses to move progress backwards
    - load(): None if absent; corrupt files are logged, deleted, reported as None
    - validate(): schema version, artifact paths on disk, VM still on the backend
    - is_phase_complete(): ordinal comparison, alias aware
    - clear(): remove the file
    """

    def __init__(self, logger: logging.Logger, work_dir: Path, *, build_id: Optional[str] = None):
        self.logger = logger
        self.work_dir = Path(work_dir)
        self.path = self.work_dir / CHECKPOINT_DIRNAME / CHECKPOINT_FILENAME
        self.build_id = (build_id or "").strip() or f"ffu-{U.now_ts()}"
        self._last_phase: Optional[BuildPhase] = None

    # ------------------------------------------------------------------

    def adopt(self, checkpoint: BuildCheckpoint) -> None:
        """Continue an existing checkpoint's lineage (resume)."""
        self.build_id = checkpoint.build_id
        self._last_phase = checkpoint.last_completed_phase

    def save(
        self,
        phase: Union[str, BuildPhase],
        config_echo: Dict[str, Any],
        artifacts: Dict[str, Any],
        paths: Dict[str, Any],
        *,
        percent_complete: float = 0.0,
        cleanup_entries: Optional[List[Dict[str, str]]] = None,
    ) -> BuildCheckpoint:
        ph = parse_phase(phase)
        if self._last_phase is not None and ph < self._last_phase:
            raise CheckpointError(
                code=50,
                msg=f"Checkpoint phase order violation: {self._last_phase.label} -> {ph.label}",
            ).with_context(path=str(self.path))

        cp = BuildCheckpoint(
            build_id=self.build_id,
            last_completed_phase=ph,
            percent_complete=round(float(percent_complete), 2),
            configuration=dict(config_echo or {}),
            artifacts=dict(artifacts or {}),
            paths={str(k): str(v) for k, v in (paths or {}).items() if v not in (None, "")},
            cleanup_entries=[dict(e) for e in (cleanup_entries or [])],
        )
        try:
            atomic_write_text(self.path, cp.to_json())
        except OSError as e:
            raise CheckpointError(code=20, msg=f"Failed to write checkpoint: {self.path} ({e})", cause=e)

        self._last_phase = ph
        self.logger.debug("💾 Checkpoint saved: phase=%s (%d) file=%s", ph.label, int(ph), self.path)
        return cp

    def load(self) -> Optional[BuildCheckpoint]:
        if not self.path.exists():
            return None
        try:
            cp = BuildCheckpoint.from_json(self.path.read_text(encoding="utf-8"))
            if not cp.validate_integrity():
                raise ValueError("integrity hash mismatch")
        except (OSError, ValueError, TypeError, KeyError) as e:
            self.logger.warning("⚠️  Checkpoint %s is unreadable (%s); discarding it", self.path, e)
            self._discard()
            return None
        self.logger.debug("💾 Checkpoint loaded: phase=%s build=%s", cp.last_completed_phase.label, cp.build_id)
        return cp

    def validate(
        self,
        checkpoint: Optional[BuildCheckpoint],
        *,
        vm_exists: Optional[Callable[[str], bool]] = None,
    ) -> bool:
        if checkpoint is None:
            return False

        if checkpoint.version not in COMPATIBLE_SCHEMA_VERSIONS:
            self.logger.warning(
                "⚠️  Checkpoint schema v%s is not compatible (supported: %s)",
                checkpoint.version,
                sorted(COMPATIBLE_SCHEMA_VERSIONS),
            )
            return False

        for key, p in sorted(checkpoint.paths.items()):
            if not Path(p).exists():
                self.logger.warning("⚠️  Checkpoint artifact missing: %s=%s", key, p)
                return False

        if checkpoint.artifacts.get("vm_created") and not checkpoint.artifacts.get("vm_removed"):
            vm_name = checkpoint.artifacts.get("vm_name") or checkpoint.configuration.get("vm_name")
            if not vm_name:
                self.logger.warning("⚠️  Checkpoint says a VM was created but does not name it")
                return False
            if vm_exists is None:
                self.logger.warning("⚠️  Cannot confirm VM %r still exists (no backend to ask)", vm_name)
                return False
            try:
                present = bool(vm_exists(str(vm_name)))
            except Exception as e:
                self.logger.warning("⚠️  VM lookup for %r failed: %s", vm_name, e)
                return False
            if not present:
                self.logger.warning("⚠️  Checkpoint VM %r no longer exists", vm_name)
                return False

        return True

    @staticmethod
    def is_phase_complete(phase: Union[str, int, BuildPhase], checkpoint: Optional[BuildCheckpoint]) -> bool:
        if checkpoint is None:
            return False
        return parse_phase(phase) <= checkpoint.last_completed_phase

    def clear(self) -> None:
        self._discard()
        self._last_phase = None
        self.logger.debug("💾 Checkpoint cleared: %s", self.path)

    def exists(self) -> bool:
        return self.path.exists()

    # ------------------------------------------------------------------

    def _discard(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning("⚠️  Could not delete checkpoint %s: %s", self.path, e)
