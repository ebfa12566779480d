# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/orchestrator/__init__.py
"""
Orchestrator package: the phase driver, the default FFU pipeline and the
worker thread that runs it.
"""

from .build import create_orchestrator
from .collaborators import CommandCollaborators
from .orchestrator import BuildOrchestrator, PhaseOutcome, PhaseSpec, PipelineState
from .phases import FfuPipeline
from .preflight import PreflightChecker, PreflightReport
from .worker import BuildWorker

__all__ = [
    "BuildOrchestrator",
    "BuildWorker",
    "CommandCollaborators",
    "FfuPipeline",
    "PhaseOutcome",
    "PhaseSpec",
    "PipelineState",
    "PreflightChecker",
    "PreflightReport",
    "create_orchestrator",
]
