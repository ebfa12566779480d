# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/orchestrator/collaborators.py
"""
External workloads (driver download, image apply, app install, capture,
media creation) run as opaque commands configured per phase:

    commands:
      DriverDownload: ["pwsh", "-File", "C:/ffu/Get-Drivers.ps1", "-Out", "{drivers}"]
      FFUCapture: "dism /Capture-FFU /ImageFile:{ffu} /CaptureDrive:{vhdx} /Name:{vm_name}"

Placeholders are filled from the pipeline's known paths and config.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.utils import U
from ..messaging.reporter import Reporter
from .orchestrator import PhaseOutcome


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        raise KeyError(f"unknown placeholder {{{key}}}")


class CommandCollaborators:
    def __init__(
        self,
        logger: logging.Logger,
        commands: Dict[str, List[str]],
        *,
        reporter: Optional[Reporter] = None,
        timeout_s: Optional[int] = None,
        cwd: Optional[Path] = None,
    ):
        self.logger = logger
        self.commands = {k.lower(): list(v) for k, v in (commands or {}).items()}
        self.reporter = reporter
        self.timeout_s = timeout_s
        self.cwd = cwd

    def configured(self, name: str) -> bool:
        return name.lower() in self.commands

    def argv_for(self, name: str, values: Dict[str, Any]) -> List[str]:
        ph = _Placeholders({k: str(v) for k, v in values.items() if v is not None})
        return [part.format_map(ph) for part in self.commands[name.lower()]]

    def run(
        self,
        name: str,
        values: Dict[str, Any],
        *,
        produces: Optional[Path] = None,
        path_key: Optional[str] = None,
    ) -> PhaseOutcome:
        """
        Blocking call. Success/failure comes back as a PhaseOutcome; a missing
        command is a skip, not an error.
        """
        if not self.configured(name):
            self.logger.info("⏭️  %s: no command configured; skipping", name)
            return PhaseOutcome.skip("no command configured")

        try:
            argv = self.argv_for(name, values)
        except (KeyError, IndexError, ValueError) as e:
            return PhaseOutcome.failed(f"bad command template for {name}: {e}")

        if self.reporter is not None:
            self.reporter.info(f"{name}: running {argv[0]}")
        try:
            U.run_cmd(self.logger, argv, check=True, stream=True, timeout=self.timeout_s, cwd=self.cwd)
        except subprocess.CalledProcessError as e:
            return PhaseOutcome.failed(f"{name} command exited with {e.returncode}")
        except subprocess.TimeoutExpired:
            return PhaseOutcome.failed(f"{name} command timed out after {self.timeout_s}s")
        except OSError as e:
            return PhaseOutcome.failed(f"{name} command could not start: {e}")

        out = PhaseOutcome(artifacts={f"{_snake(name)}_done": True})
        if produces is not None:
            if not Path(produces).exists():
                return PhaseOutcome.failed(f"{name} finished but {produces} was not produced")
            out.paths[path_key or _snake(name)] = str(produces)
        return out


def _snake(name: str) -> str:
    out: List[str] = []
    for i, ch in enumerate(name):
        if ch.isupper() and i and (not name[i - 1].isupper() or (i + 1 < len(name) and name[i + 1].islower())):
            out.append("_")
        out.append(ch.lower())
    return "".join(out)
