# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/core/utils.py
from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .exceptions import Fatal

_UNITS = ("KiB", "MiB", "GiB", "TiB", "PiB")


class U:
    @staticmethod
    def die(logger: logging.Logger, msg: str, code: int = 1) -> None:
        logger.error(msg)
        raise Fatal(code, msg)

    @staticmethod
    def ensure_dir(p: Path) -> None:
        Path(p).mkdir(parents=True, exist_ok=True)

    @staticmethod
    def which(prog: str) -> Optional[str]:
        return shutil.which(prog)

    @staticmethod
    def is_windows() -> bool:
        return os.name == "nt"

    @staticmethod
    def now_ts() -> str:
        """Local time, usable in file names and build ids."""
        return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")

    @staticmethod
    def now_iso() -> str:
        return _dt.datetime.now(tz=_dt.timezone.utc).isoformat(timespec="seconds")

    @staticmethod
    def json_dump(obj: Any) -> str:
        return json.dumps(obj, indent=2, sort_keys=True, default=str)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        if n < 1024:
            return f"{int(n)} B"
        x = float(n)
        for unit in _UNITS:
            x /= 1024
            if x < 1024 or unit == _UNITS[-1]:
                break
        return f"{x:.2f} {unit}"

    @staticmethod
    def free_bytes(p: Path) -> Optional[int]:
        """Free space on the volume that holds `p`, or will once it is created."""
        probe = Path(p)
        while not probe.exists() and probe.parent != probe:
            probe = probe.parent
        try:
            return shutil.disk_usage(probe).free
        except OSError:
            return None

    @staticmethod
    def _pretty_cmd(cmd: List[str]) -> str:
        return shlex.join(str(x) for x in cmd)

    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        cwd: Optional[Union[str, Path]] = None,
        input_text: Optional[str] = None,
        stream: bool = False,
        fatal: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run an external tool (PowerShell, vmrun, DISM wrappers, ...).

        capture=True collects stdout/stderr as text. stream=True relays the
        merged output to the logger line by line, for tools that run for
        minutes. Failures re-raise the subprocess exception unless fatal=True,
        which turns them into Fatal (exit code of the tool, 124 on timeout).
        """
        pretty = U._pretty_cmd(cmd)
        workdir = str(cwd) if cwd is not None else None
        logger.debug("Running: %s", pretty)
        try:
            if not stream:
                return subprocess.run(
                    cmd,
                    check=check,
                    capture_output=capture,
                    text=True,
                    env=env,
                    timeout=timeout,
                    cwd=workdir,
                    input=input_text,
                )

            lines: List[str] = []
            with subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, env=env, cwd=workdir
            ) as proc:
                for raw in proc.stdout:
                    line = raw.rstrip("\n")
                    lines.append(line)
                    logger.info(line)
                rc = proc.wait(timeout=timeout)
            out = "\n".join(lines)
            if check and rc != 0:
                raise subprocess.CalledProcessError(rc, cmd, output=out, stderr="")
            return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr="")

        except subprocess.CalledProcessError as e:
            # whether a non-zero exit fails the build is the caller's call
            logger.debug(
                "Command failed (rc=%s): %s\nstdout: %s\nstderr: %s",
                e.returncode,
                pretty,
                (e.stdout or "").strip() or "-",
                (e.stderr or "").strip() or "-",
            )
            if fatal:
                raise Fatal(e.returncode or 1, f"Command failed: {pretty}") from e
            raise
        except subprocess.TimeoutExpired as e:
            logger.debug("Command timed out after %ss: %s", timeout, pretty)
            if fatal:
                raise Fatal(124, f"Command timed out: {pretty}") from e
            raise
        except OSError as e:
            logger.debug("Command could not start: %s (%s)", pretty, e)
            if fatal:
                raise Fatal(1, f"Command error: {pretty}: {e}") from e
            raise
