# SPDX-License-Identifier: LGPL-3.0-or-later
# ffubuild/providers/__init__.py
"""
Hypervisor backends. Callers construct them through get_provider() and only
ever hold a HypervisorProvider.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

from ..core.cleanup import CleanupRegistry
from ..core.exceptions import ProviderUnavailable
from ..messaging.reporter import Reporter
from .base import (
    CapabilityDescriptor,
    HypervisorProvider,
    MemoryMode,
    StopMode,
    VMDescriptor,
    VMHandle,
    VMState,
    validate_descriptor,
)
from .hyperv import HyperVProvider
from .vmware import VMwareWorkstationProvider

PROVIDERS: Dict[str, Type[HypervisorProvider]] = {
    "hyperv": HyperVProvider,
    "vmware": VMwareWorkstationProvider,
}

_ALIASES = {
    "hyper-v": "hyperv",
    "hyper_v": "hyperv",
    "workstation": "vmware",
    "vmware-workstation": "vmware",
}


def provider_names() -> List[str]:
    return sorted(PROVIDERS)


def get_provider(
    name: str,
    logger: logging.Logger,
    registry: CleanupRegistry,
    *,
    reporter: Optional[Reporter] = None,
    **options: Any,
) -> HypervisorProvider:
    key = (name or "").strip().lower()
    key = _ALIASES.get(key, key)
    cls = PROVIDERS.get(key)
    if cls is None:
        raise ProviderUnavailable(
            code=2,
            msg=f"Unknown hypervisor {name!r} (choose from: {', '.join(provider_names())})",
        )
    return cls(logger, registry, reporter=reporter, **options)


__all__ = [
    "CapabilityDescriptor",
    "HypervisorProvider",
    "MemoryMode",
    "PROVIDERS",
    "StopMode",
    "VMDescriptor",
    "VMHandle",
    "VMState",
    "get_provider",
    "provider_names",
    "validate_descriptor",
]
