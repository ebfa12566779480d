# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/cli/args/groups.py
from __future__ import annotations

import argparse

from ...providers import provider_names


def _add_global_config_logging(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Global config/logging (two-phase parse relies on these)
    # ------------------------------------------------------------------
    from ... import __version__

    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML/JSON config file (repeatable; later overrides earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print merged normalized config and exit.")
    p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv, -vvv")
    p.add_argument("--log-file", dest="log_file", default=None, help="Write logs to file.")
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit NDJSON logs on stderr.")
    p.add_argument(
        "--messages-log",
        dest="messages_log",
        default=None,
        help="Mirror every build message to this NDJSON file.",
    )


def _add_build_target(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Where and with what backend
    # ------------------------------------------------------------------
    p.add_argument("--work-dir", dest="work_dir", default=None, help="Build working directory (checkpoint lives here).")
    p.add_argument(
        "--provider",
        "--hypervisor",
        dest="hypervisor",
        default="hyperv",
        choices=provider_names() + ["hyper-v", "workstation"],
        help="Hypervisor backend.",
    )
    p.add_argument("--iso", dest="iso_path", default=None, help="Windows installation ISO attached to the VM.")
    p.add_argument("--ffu-dir", dest="ffu_dir", default=None, help="Where the captured FFU lands (default: <work-dir>/FFU).")
    p.add_argument("--build-id", dest="build_id", default=None, help="Build identifier (default: generated).")
    p.add_argument(
        "--search-root",
        dest="search_roots",
        action="append",
        default=[],
        help="Extra VM storage root for discovery fallback (repeatable).",
    )


def _add_vm_shape(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # VM shape
    # ------------------------------------------------------------------
    p.add_argument("--vm-name", dest="vm_name", default="_FFU-Build", help="Build VM name.")
    p.add_argument("--memory-gb", dest="memory_gb", type=float, default=8.0, help="VM memory in GiB.")
    p.add_argument("--processors", type=int, default=4, help="Virtual processors.")
    p.add_argument("--disk-size-gb", dest="disk_size_gb", type=int, default=50, help="Virtual disk size in GiB.")
    p.add_argument("--disk-format", dest="disk_format", default=None, help="vhdx | vhd | vmdk (default: backend's own).")
    p.add_argument("--generation", type=int, default=2, choices=[1, 2], help="Hyper-V VM generation.")
    p.add_argument("--no-tpm", dest="tpm", action="store_false", help="Do not add a virtual TPM.")
    p.add_argument("--no-secure-boot", dest="secure_boot", action="store_false", help="Disable Secure Boot.")
    p.add_argument("--dynamic-memory", dest="dynamic_memory", action="store_true", help="Use dynamic memory where supported.")
    p.add_argument("--keep-vm", dest="keep_vm", action="store_true", help="Leave the build VM in place after a successful build.")


def _add_capture_share(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Capture share + local account
    # ------------------------------------------------------------------
    p.add_argument("--capture-share", dest="capture_share", action="store_true", help="Create an SMB share + local user for capture.")
    p.add_argument("--share-name", dest="share_name", default="FFUCaptureShare", help="SMB share name.")
    p.add_argument("--capture-user", dest="capture_user", default="ffu_user", help="Local account granted access to the share.")
    p.add_argument(
        "--capture-password",
        dest="capture_password",
        default=None,
        help="Password for the capture account (default: generated; never written to disk).",
    )


def _add_commands(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Phase commands (usually from YAML `commands:`)
    # ------------------------------------------------------------------
    p.set_defaults(commands={})
    p.add_argument(
        "--phase-command",
        dest="phase_command",
        action="append",
        default=[],
        metavar="PHASE=COMMAND",
        help="Command run for a phase, e.g. FFUCapture='dism /Capture-FFU ...' (repeatable).",
    )
    p.add_argument("--command-timeout", dest="command_timeout_s", type=int, default=None, help="Per-command timeout (s).")


def _add_timeouts(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------
    p.add_argument("--vm-start-timeout", dest="vm_start_timeout_s", type=float, default=300.0, help="Seconds to wait for Running.")
    p.add_argument(
        "--vm-shutdown-timeout",
        "--vm-timeout",
        dest="vm_shutdown_timeout_s",
        type=float,
        default=4 * 3600.0,
        help="Seconds to wait for the VM to power off after app installation.",
    )
    p.add_argument("--poll-interval", dest="poll_interval_s", type=float, default=2.0, help="State polling interval (s).")
    p.add_argument("--wait-slice", dest="wait_slice_s", type=float, default=5.0, help="Cancellation check interval while waiting (s).")
    p.add_argument("--no-wmi-events", dest="use_wmi_events", action="store_false", help="Hyper-V: poll instead of WMI events.")
    p.add_argument("--min-free-gb", dest="min_free_gb", type=float, default=60.0, help="Pre-flight free space requirement.")


def _add_vmrest(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # VMware Workstation REST API (optional discovery path)
    # ------------------------------------------------------------------
    p.add_argument("--vmrest-url", dest="vmrest_url", default=None, help="vmrest base URL (default: http://127.0.0.1:8697/api).")
    p.add_argument("--vmrest-user", dest="vmrest_user", default=None, help="vmrest user.")
    p.add_argument("--vmrest-password", dest="vmrest_password", default=None, help="vmrest password.")


def _add_resume_control(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Checkpoint / resume
    # ------------------------------------------------------------------
    p.add_argument("--force-fresh", dest="force_fresh", action="store_true", help="Discard any checkpoint and start over.")
    g = p.add_mutually_exclusive_group()
    g.add_argument("--resume", dest="resume", action="store_const", const=True, default=None, help="Resume without asking.")
    g.add_argument("--no-resume", dest="resume", action="store_const", const=False, help="Start fresh without asking.")
    p.add_argument(
        "--unattended",
        action="store_true",
        help="Never prompt; resume a valid checkpoint unless --force-fresh.",
    )


def _add_secret_env_knobs(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Secrets from the environment instead of argv / YAML
    # ------------------------------------------------------------------
    p.add_argument("--vmrest-password-env", dest="vmrest_password_env", default=None, help="Env var holding the vmrest password.")
    p.add_argument(
        "--capture-password-env",
        dest="capture_password_env",
        default=None,
        help="Env var holding the capture account password.",
    )
