# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/config/build_config.py
from __future__ import annotations

import argparse
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..core.checkpoint import parse_phase
from ..core.exceptions import redact_mapping
from ..providers.base import GiB, MemoryMode, VMDescriptor

# Never echoed into checkpoints or --dump-config output.
SECRET_FIELDS = frozenset({"vmrest_password", "capture_password"})

CommandSpec = Union[str, List[str]]


def _as_argv(spec: CommandSpec) -> List[str]:
    if isinstance(spec, (list, tuple)):
        return [str(x) for x in spec]
    return shlex.split(str(spec), posix=True)


def _phase_key(name: Any) -> str:
    # aliases ("capture", "vhdcreation", ...) collapse onto the phase label
    try:
        return parse_phase(str(name)).label
    except ValueError:
        return str(name)


@dataclass
class BuildConfig:
    work_dir: Path
    hypervisor: str = "hyperv"
    vm_name: str = "_FFU-Build"
    memory_gb: float = 8.0
    processors: int = 4
    disk_size_gb: int = 50
    disk_format: Optional[str] = None
    generation: int = 2
    tpm: bool = True
    secure_boot: bool = True
    dynamic_memory: bool = False
    iso_path: Optional[Path] = None
    ffu_dir: Optional[Path] = None

    # external collaborators: phase label -> command line
    commands: Dict[str, List[str]] = field(default_factory=dict)
    command_timeout_s: Optional[int] = None

    capture_share: bool = False
    share_name: str = "FFUCaptureShare"
    capture_user: str = "ffu_user"
    capture_password: Optional[str] = None

    vm_start_timeout_s: float = 300.0
    vm_shutdown_timeout_s: float = 4 * 3600.0
    wait_slice_s: float = 5.0
    poll_interval_s: float = 2.0
    use_wmi_events: bool = True

    vmrest_url: Optional[str] = None
    vmrest_user: Optional[str] = None
    vmrest_password: Optional[str] = None
    search_roots: List[Path] = field(default_factory=list)

    min_free_gb: float = 60.0
    keep_vm: bool = False
    force_fresh: bool = False
    resume: Optional[bool] = None
    unattended: bool = False
    build_id: Optional[str] = None
    messages_log: Optional[Path] = None

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir)
        self.ffu_dir = Path(self.ffu_dir) if self.ffu_dir else self.work_dir / "FFU"
        self.iso_path = Path(self.iso_path) if self.iso_path else None
        self.messages_log = Path(self.messages_log) if self.messages_log else None
        self.search_roots = [Path(p) for p in (self.search_roots or [])]
        self.commands = {_phase_key(k): _as_argv(v) for k, v in (self.commands or {}).items() if v}

    # ------------------------------------------------------------------

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "BuildConfig":
        known = {f.name for f in fields(cls)}
        kw: Dict[str, Any] = {k: v for k, v in vars(args).items() if k in known and v is not None}

        commands: Dict[str, Any] = dict(kw.pop("commands", None) or {})
        for item in getattr(args, "phase_command", None) or []:
            phase, sep, cmd = str(item).partition("=")
            if not sep or not phase.strip() or not cmd.strip():
                raise ValueError(f"--phase-command expects PHASE=COMMAND, got {item!r}")
            commands[phase.strip()] = cmd.strip()
        kw["commands"] = commands
        return cls(**kw)

    def validate(self) -> List[str]:
        problems: List[str] = []
        if not self.vm_name.strip():
            problems.append("vm_name must not be empty")
        if self.memory_gb <= 0:
            problems.append("memory_gb must be positive")
        if self.processors < 1:
            problems.append("processors must be >= 1")
        if self.disk_size_gb < 1:
            problems.append("disk_size_gb must be >= 1")
        if self.generation not in (1, 2):
            problems.append("generation must be 1 or 2")
        if self.secure_boot and self.generation == 1:
            problems.append("secure_boot requires generation 2")
        if self.iso_path is not None and not self.iso_path.exists():
            problems.append(f"iso_path does not exist: {self.iso_path}")
        if self.force_fresh and self.resume:
            problems.append("--force-fresh and --resume are mutually exclusive")
        for name in self.commands:
            try:
                parse_phase(name)
            except ValueError:
                problems.append(f"commands: unknown phase {name!r}")
        for t in ("vm_start_timeout_s", "vm_shutdown_timeout_s", "wait_slice_s", "poll_interval_s"):
            if getattr(self, t) <= 0:
                problems.append(f"{t} must be positive")
        return problems

    def echo(self) -> Dict[str, Any]:
        """Non-secret configuration, JSON-friendly (stored in checkpoints)."""
        d: Dict[str, Any] = {}
        for f in fields(self):
            if f.name in SECRET_FIELDS:
                continue
            v = getattr(self, f.name)
            if isinstance(v, Path):
                v = str(v)
            elif isinstance(v, list):
                v = [str(x) if isinstance(x, Path) else x for x in v]
            d[f.name] = v
        return redact_mapping(d)

    # ------------------------------------------------------------------

    @property
    def vm_dir(self) -> Path:
        return self.work_dir / "VM"

    def disk_path(self, disk_format: str) -> Path:
        return self.vm_dir / f"{self.vm_name}.{disk_format.lower()}"

    def descriptor(self, disk_format: str) -> VMDescriptor:
        fmt = (self.disk_format or disk_format).lower()
        return VMDescriptor(
            name=self.vm_name,
            work_dir=self.vm_dir,
            memory_bytes=int(self.memory_gb * GiB),
            processors=int(self.processors),
            disk_path=self.disk_path(fmt),
            disk_format=fmt,
            media_path=self.iso_path,
            generation=int(self.generation),
            tpm=bool(self.tpm),
            secure_boot=bool(self.secure_boot),
            memory_mode=MemoryMode.DYNAMIC if self.dynamic_memory else MemoryMode.STATIC,
        )

    def provider_options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {
            "work_dir": self.vm_dir,
            "search_roots": list(self.search_roots),
            "poll_interval_s": self.poll_interval_s,
        }
        h = self.hypervisor.lower()
        if h in ("hyperv", "hyper-v", "hyper_v"):
            opts["use_events"] = self.use_wmi_events
        elif h in ("vmware", "workstation", "vmware-workstation"):
            if self.vmrest_url:
                opts["vmrest_url"] = self.vmrest_url
            opts["vmrest_user"] = self.vmrest_user
            opts["vmrest_password"] = self.vmrest_password
        return opts
