# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/cli/args/helpers.py
from __future__ import annotations

import argparse
import os
from typing import Any, Dict, Optional

# secret value key -> key naming the environment variable that holds it
SECRET_ENV_KEYS = {
    "vmrest_password": "vmrest_password_env",
    "capture_password": "capture_password_env",
}


def _present(v: Any) -> bool:
    return v is not None and (not isinstance(v, str) or bool(v.strip()))


def _lookup(args: argparse.Namespace, conf: Dict[str, Any], key: str) -> Any:
    """A non-blank flag value wins over the config file."""
    v = getattr(args, key, None)
    return v if _present(v) else conf.get(key)


def _secret(args: argparse.Namespace, conf: Dict[str, Any], key: str) -> Optional[str]:
    direct = _lookup(args, conf, key)
    if _present(direct):
        return str(direct)
    env_name = _lookup(args, conf, SECRET_ENV_KEYS[key])
    return os.environ.get(str(env_name)) if _present(env_name) else None


def _resolve_secrets(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    for key in SECRET_ENV_KEYS:
        setattr(args, key, _secret(args, conf, key))
