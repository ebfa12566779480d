# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/orchestrator/build.py
from __future__ import annotations

import logging
from typing import List, Optional

from ..config.build_config import BuildConfig
from ..core.cancellation import CancellationCoordinator
from ..core.checkpoint import CheckpointStore
from ..core.cleanup import CleanupRegistry
from ..core.host_resources import HostResources
from ..messaging.context import MessagingContext
from ..messaging.reporter import Reporter
from ..providers import get_provider
from ..providers.base import HypervisorProvider
from .collaborators import CommandCollaborators
from .orchestrator import BuildOrchestrator, PhaseSpec
from .phases import FfuPipeline


def create_orchestrator(
    logger: logging.Logger,
    config: BuildConfig,
    ctx: MessagingContext,
    *,
    provider: Optional[HypervisorProvider] = None,
    registry: Optional[CleanupRegistry] = None,
    phases: Optional[List[PhaseSpec]] = None,
) -> BuildOrchestrator:
    """
    Wire one build: registry, provider, checkpoint store, coordinator and the
    default FFU pipeline. Tests pass their own provider and/or phases.
    """
    reporter = Reporter(logger, ctx, source="build")
    if registry is None:
        registry = CleanupRegistry(logger, reporter.bind("cleanup"))
    if provider is None:
        provider = get_provider(
            config.hypervisor,
            logger,
            registry,
            reporter=reporter.bind(config.hypervisor.lower()),
            **config.provider_options(),
        )

    store = CheckpointStore(logger, config.work_dir, build_id=config.build_id)
    coordinator = CancellationCoordinator(logger, ctx, registry)
    host = HostResources(logger, registry)

    if phases is None:
        collaborators = CommandCollaborators(
            logger,
            config.commands,
            reporter=reporter.bind("command"),
            timeout_s=config.command_timeout_s,
            cwd=config.work_dir,
        )
        phases = FfuPipeline(
            logger,
            config,
            provider=provider,
            registry=registry,
            coordinator=coordinator,
            host=host,
            collaborators=collaborators,
            reporter=reporter,
        ).specs()

    return BuildOrchestrator(
        logger,
        ctx,
        phases=phases,
        store=store,
        registry=registry,
        coordinator=coordinator,
        provider=provider,
        host=host,
        config_echo=config.echo(),
        force_fresh=config.force_fresh,
        unattended=config.unattended,
    )
