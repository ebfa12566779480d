# SPDX-License-Identifier: LGPL-3.0-or-later
# ffubuild/core/__init__.py
from .exceptions import (
    CheckpointError,
    FfuBuildError,
    Fatal,
    MountVerificationFailed,
    PhaseFailed,
    ProviderError,
    ProviderUnavailable,
    ResourceCreationError,
    UnsupportedConfiguration,
)

__all__ = [
    "CheckpointError",
    "FfuBuildError",
    "Fatal",
    "MountVerificationFailed",
    "PhaseFailed",
    "ProviderError",
    "ProviderUnavailable",
    "ResourceCreationError",
    "UnsupportedConfiguration",
]
