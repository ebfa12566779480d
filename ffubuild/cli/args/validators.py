# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/cli/args/validators.py
from __future__ import annotations

import argparse
from typing import Any, Dict

from ...core.checkpoint import parse_phase
from ...core.exceptions import Fatal
from .helpers import _lookup, _present


def _bad(msg: str) -> None:
    raise Fatal(code=2, msg=msg)


def _validate_work_dir(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    if not _present(_lookup(args, conf, "work_dir")):
        _bad("Missing work directory: pass --work-dir or set YAML `work_dir:`.")


def _validate_phase_names(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    names = list((getattr(args, "commands", None) or {}).keys())
    for item in getattr(args, "phase_command", None) or []:
        phase, sep, cmd = str(item).partition("=")
        if not sep or not phase.strip() or not cmd.strip():
            _bad(f"--phase-command expects PHASE=COMMAND, got {item!r}")
        names.append(phase.strip())
    for n in names:
        try:
            parse_phase(n)
        except ValueError:
            _bad(f"Unknown phase in commands: {n!r}")


def _validate_commands_shape(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    cmds = getattr(args, "commands", None)
    if cmds is None:
        return
    if not isinstance(cmds, dict):
        _bad("YAML `commands:` must be a mapping of phase -> command")
    for k, v in cmds.items():
        if not isinstance(v, (str, list)):
            _bad(f"commands.{k}: expected a string or a list, got {type(v).__name__}")


def validate_args(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    """Cheap, side-effect free checks; BuildConfig.validate() covers values."""
    _validate_work_dir(args, conf)
    _validate_commands_shape(args, conf)
    _validate_phase_names(args, conf)
