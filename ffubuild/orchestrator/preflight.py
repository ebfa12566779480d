# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/orchestrator/preflight.py
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Sequence, Tuple

from ..config.build_config import BuildConfig
from ..core.optional_imports import optional_library_status
from ..core.utils import U
from ..providers.base import GiB, HypervisorProvider, validate_descriptor


class ErrorKind:
    CONFIG = "config"
    BACKEND = "backend"
    TOOLS = "tools"
    DISK = "disk"
    PERMISSION = "permission"


@dataclass
class PreflightIssue:
    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass
class PreflightReport:
    errors: List[PreflightIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    notes: Dict[str, str] = field(default_factory=dict)
    checks_ran: List[str] = field(default_factory=list)

    def ok(self) -> bool:
        return not self.errors

    def add_error(self, kind: str, msg: str) -> None:
        self.errors.append(PreflightIssue(kind=kind, message=msg))

    def to_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok(),
            "errors": [{"kind": e.kind, "message": e.message} for e in self.errors],
            "warnings": list(self.warnings),
            "notes": dict(self.notes),
            "checks_ran": list(self.checks_ran),
        }


class PreflightChecker:
    """
    Pre-flight checks run as the first pipeline phase:
      - config sanity
      - backend availability and VM shape vs. capabilities
      - external command binaries
      - free disk space and a writable work dir
      - optional libraries (warnings only: each one has a fallback)
    """

    def __init__(self, logger: logging.Logger, config: BuildConfig, provider: HypervisorProvider):
        self.logger = logger
        self.config = config
        self.provider = provider
        self.report = PreflightReport()
        self.report.notes["hypervisor"] = provider.name
        self.report.notes["work_dir"] = str(config.work_dir)

    def check_config(self) -> None:
        self.report.checks_ran.append("config")
        for p in self.config.validate():
            self.report.add_error(ErrorKind.CONFIG, p)

    def check_backend(self) -> None:
        self.report.checks_ran.append("backend")
        ok, issues = self.provider.is_available()
        if not ok:
            for i in issues or [f"{self.provider.name} is not available"]:
                self.report.add_error(ErrorKind.BACKEND, i)
            return
        for i in issues:
            self.report.warnings.append(i)

        caps = self.provider.get_capabilities()
        d = self.config.descriptor(caps.default_disk_format)
        for p in validate_descriptor(d, caps):
            self.report.add_error(ErrorKind.CONFIG, p)
        self.report.notes["disk_format"] = d.disk_format

    def check_tools(self) -> None:
        self.report.checks_ran.append("tools")
        missing: List[str] = []
        for phase, argv in sorted(self.config.commands.items()):
            exe = argv[0] if argv else ""
            if "{" in exe:
                continue
            if not exe or not (U.which(exe) or Path(exe).exists()):
                missing.append(f"{exe or '<empty>'} ({phase})")
        if missing:
            self.report.add_error(ErrorKind.TOOLS, f"Missing command(s): {', '.join(missing)}")

    def check_disk_space(self) -> None:
        self.report.checks_ran.append("disk")
        need = int(self.config.min_free_gb * GiB)
        free = U.free_bytes(self.config.work_dir)
        if free is None:
            self.report.warnings.append(f"Could not determine free space for {self.config.work_dir}")
            return
        self.report.notes["disk_free"] = U.human_bytes(free)
        if free < need:
            self.report.add_error(
                ErrorKind.DISK,
                f"Insufficient disk space in {self.config.work_dir}: {U.human_bytes(free)} free, need {U.human_bytes(need)}",
            )

    def check_permissions(self) -> None:
        self.report.checks_ran.append("permissions")
        try:
            U.ensure_dir(self.config.work_dir)
            fd, tmp = tempfile.mkstemp(prefix=".permtest_", dir=str(self.config.work_dir))
            try:
                os.write(fd, b"ok\n")
            finally:
                os.close(fd)
            Path(tmp).unlink(missing_ok=True)
            self.report.notes["permissions"] = "OK"
        except OSError as e:
            self.report.add_error(ErrorKind.PERMISSION, f"Work dir {self.config.work_dir} is not writable: {e}")

    def check_optional(self) -> None:
        self.report.checks_ran.append("optional")
        for lib, fallback in sorted(self.provider.optional_enhancements().items()):
            self.report.warnings.append(f"Optional library '{lib}' not installed; {fallback}")
        if not optional_library_status().get("termcolor", True):
            self.report.warnings.append("Optional library 'termcolor' not installed; console logs are uncolored")

    def check_all(self) -> PreflightReport:
        checks: Sequence[Tuple[str, Callable[[], None]]] = [
            ("config", self.check_config),
            ("backend", self.check_backend),
            ("tools", self.check_tools),
            ("disk space", self.check_disk_space),
            ("permissions", self.check_permissions),
            ("optional libraries", self.check_optional),
        ]
        for name, fn in checks:
            self.logger.debug("Pre-flight: %s...", name)
            fn()
        self._log_summary()
        return self.report

    def _log_summary(self) -> None:
        if self.report.ok():
            self.logger.info("✅ Pre-flight: OK (%d warning(s))", len(self.report.warnings))
        else:
            for e in self.report.errors:
                self.logger.error("Pre-flight error[%s]: %s", e.kind, e.message)
        if self.report.notes:
            self.logger.debug("Pre-flight notes: %s", self.report.notes)
