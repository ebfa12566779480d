# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/__init__.py
"""
ffubuild - resumable Windows FFU image builds

Drives a fixed fifteen-phase pipeline against a hypervisor backend (Hyper-V
or VMware Workstation), checkpointing after every phase and rolling back
everything it created when a build fails or is cancelled.

Usage as a library:

    from ffubuild import BuildConfig, create_orchestrator, new_messaging_context
    from ffubuild.core.logger import Log

    logger = Log.setup(verbose=1)
    config = BuildConfig(work_dir="C:/FFUDevelopment", hypervisor="hyperv")
    ctx = new_messaging_context()
    state = create_orchestrator(logger, config, ctx).run()
"""

__version__ = "0.1.0"

from .config import BuildConfig, Config
from .core.checkpoint import BuildCheckpoint, BuildPhase, CheckpointStore
from .core.cleanup import CleanupRegistry, ResourceKind
from .core.exceptions import FfuBuildError, Fatal
from .messaging import BuildState, MessagingContext, Severity, new_messaging_context
from .orchestrator import BuildOrchestrator, BuildWorker, create_orchestrator
from .providers import HypervisorProvider, get_provider

__all__ = [
    "__version__",
    "BuildCheckpoint",
    "BuildConfig",
    "BuildOrchestrator",
    "BuildPhase",
    "BuildState",
    "BuildWorker",
    "CheckpointStore",
    "CleanupRegistry",
    "Config",
    "Fatal",
    "FfuBuildError",
    "HypervisorProvider",
    "MessagingContext",
    "ResourceKind",
    "Severity",
    "create_orchestrator",
    "get_provider",
    "new_messaging_context",
]
