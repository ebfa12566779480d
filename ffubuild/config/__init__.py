# SPDX-License-Identifier: LGPL-3.0-or-later
# ffubuild/config/__init__.py
from .build_config import BuildConfig
from .config_loader import Config

__all__ = ["BuildConfig", "Config"]
