# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/cli/args/__init__.py
"""
Argument parsing for the ffubuild CLI (two-phase: config files become
argparse defaults, explicit flags override them).
"""
from __future__ import annotations

from .parser import build_parser, parse_args_with_config
from .validators import validate_args

__all__ = ["build_parser", "parse_args_with_config", "validate_args"]
