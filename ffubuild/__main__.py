# SPDX-License-Identifier: LGPL-3.0-or-later
#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import sys
import traceback
from typing import Optional, Sequence

from .cli.args.parser import parse_args_with_config
from .cli.supervisor import EXIT_BAD_CONFIG, EXIT_CANCELLED, BuildSupervisor
from .config.build_config import BuildConfig
from .core.exceptions import Fatal, FfuBuildError, format_exception_for_cli
from .messaging import new_messaging_context
from .orchestrator.build import create_orchestrator


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger, level: str, msg: str) -> None:
    """Log if we have a logger, else stderr."""
    if logger is None:
        _print_stderr(msg)
        return

    fn = getattr(logger, level, None)
    if callable(fn):
        fn(msg)
    else:
        _print_stderr(msg)


def main(argv: Optional[Sequence[str]] = None) -> None:
    logger: Optional[object] = None

    # Phase 1: parse (Fatal can happen here; U.die already logged it)
    try:
        args, _conf, logger = parse_args_with_config(argv)
    except Fatal as e:
        if logger is None:
            _print_stderr(f"💥 ERROR    {e}")
        raise SystemExit(getattr(e, "code", 1))
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        raise SystemExit(EXIT_CANCELLED)

    verbose = int(getattr(args, "verbose", 0) or 0)

    # Phase 2: build config
    try:
        config = BuildConfig.from_args(args)
    except (TypeError, ValueError) as e:
        _safe_log(logger, "error", f"Invalid configuration: {e}")
        raise SystemExit(EXIT_BAD_CONFIG)
    problems = config.validate()
    if problems:
        for p in problems:
            _safe_log(logger, "error", f"Invalid configuration: {p}")
        raise SystemExit(EXIT_BAD_CONFIG)
    if config.resume is False:
        config.force_fresh = True

    # Phase 3: run the build
    try:
        ctx = new_messaging_context(config.messages_log, logger)
        orchestrator = create_orchestrator(logger, config, ctx)
        rc = BuildSupervisor(logger, ctx, orchestrator, resume=config.resume).run()
    except FfuBuildError as e:
        # raised before the worker started (unknown provider, unwritable work dir, ...)
        _safe_log(logger, "error", format_exception_for_cli(e, verbose=verbose))
        rc = getattr(e, "code", 1)
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        rc = EXIT_CANCELLED
    except Exception as e:
        _safe_log(logger, "error", f"💥 UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        rc = 1

    raise SystemExit(rc)


if __name__ == "__main__":
    main()
