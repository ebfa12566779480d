# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/config/config_loader.py
from __future__ import annotations

import argparse
import glob
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..core.utils import U

_CONFIG_SUFFIXES = (".yaml", ".yml", ".json")


def _norm_key(k: Any) -> str:
    return str(k).strip().replace("-", "_")


def _deep_merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


class Config:
    """
    YAML/JSON config files. Later files override earlier ones; the merged
    mapping becomes argparse defaults so explicit CLI flags still win.
    """

    @staticmethod
    def expand_configs(logger: logging.Logger, items: List[str]) -> List[Path]:
        out: List[Path] = []
        for raw in items:
            s = os.path.expanduser(os.path.expandvars(str(raw)))
            matches = sorted(glob.glob(s)) if any(ch in s for ch in "*?[") else [s]
            if not matches:
                U.die(logger, f"Config pattern matched nothing: {raw}", 2)
            for m in matches:
                p = Path(m)
                if p.is_dir():
                    found = sorted(x for x in p.iterdir() if x.suffix.lower() in _CONFIG_SUFFIXES)
                    logger.debug("Config dir %s -> %d file(s)", p, len(found))
                    out.extend(found)
                elif p.is_file():
                    out.append(p)
                else:
                    U.die(logger, f"Config file not found: {p}", 2)
        return out

    @staticmethod
    def load_one(logger: logging.Logger, path: Path) -> Dict[str, Any]:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            U.die(logger, f"Cannot read config {path}: {e}", 2)
        try:
            data = json.loads(text) if Path(path).suffix.lower() == ".json" else yaml.safe_load(text)
        except (yaml.YAMLError, ValueError) as e:
            U.die(logger, f"Config {path} is not valid YAML/JSON: {e}", 2)
        if data is None:
            return {}
        if not isinstance(data, dict):
            U.die(logger, f"Config {path}: top level must be a mapping", 2)
        return {_norm_key(k): v for k, v in data.items()}

    @staticmethod
    def load_many(logger: logging.Logger, paths: List[Path]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for p in paths:
            conf = Config.load_one(logger, p)
            logger.debug("Loaded config %s (%d keys)", p, len(conf))
            merged = _deep_merge(merged, conf)
        return merged

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Dict[str, Any]) -> None:
        dests = {a.dest for a in parser._actions} | set(parser._defaults)
        known: Dict[str, Any] = {}
        for k, v in conf.items():
            if k in dests:
                known[k] = v
            else:
                logger.warning("⚠️  Unknown config key ignored: %s", k)
        if known:
            parser.set_defaults(**known)
            logger.debug("Config defaults applied: %s", ", ".join(sorted(known)))
