# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/core/host_resources.py
"""
Host-side resources the capture step needs: a local account the VM uses to
reach the host, and an SMB share the FFU is written to.

Each helper registers its own rollback right after the resource exists.
`restore_cleanup_entries()` rebuilds those rollback actions from checkpoint
summaries when a build resumes in a new process.
"""

from __future__ import annotations

import logging
import secrets
import string
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cleanup import CleanupRegistry, ResourceKind, RollbackAction
from .exceptions import ResourceCreationError
from .utils import U

# `net` exit status for "name not found" style failures
_NET_NOT_FOUND_RCS = frozenset({2})


def generate_password(length: int = 20) -> str:
    alphabet = string.ascii_letters + string.digits + "!#%+-_"
    while True:
        pw = "".join(secrets.choice(alphabet) for _ in range(length))
        if any(c.isdigit() for c in pw) and any(c.isupper() for c in pw) and any(c.islower() for c in pw):
            return pw


class HostResources:
    def __init__(self, logger: logging.Logger, registry: CleanupRegistry):
        self.logger = logger
        self.registry = registry

    # ------------------------------------------------------------------
    # local account
    # ------------------------------------------------------------------

    def create_user(self, username: str, password: Optional[str] = None) -> str:
        """Create a local account. Returns the password it was created with."""
        pw = password or generate_password()
        try:
            U.run_cmd(self.logger, ["net", "user", username, pw, "/add"], check=True, capture=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise ResourceCreationError(code=30, msg=f"Failed to create local account {username!r}", cause=e)
        self.registry.register(
            ResourceKind.OS_ACCOUNT,
            username,
            f"local account {username}",
            lambda: self.remove_user(username),
        )
        self.logger.info("👤 Created local account %s", username)
        return pw

    def reset_password(self, username: str, password: Optional[str] = None) -> str:
        """Set a new password on an existing account. Returns it."""
        pw = password or generate_password()
        try:
            U.run_cmd(self.logger, ["net", "user", username, pw], check=True, capture=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise ResourceCreationError(code=30, msg=f"Failed to reset the password of {username!r}", cause=e)
        self.logger.info("👤 Reset password of local account %s", username)
        return pw

    def remove_user(self, username: str) -> None:
        cp = U.run_cmd(self.logger, ["net", "user", username, "/delete"], check=False, capture=True)
        if cp.returncode != 0 and cp.returncode not in _NET_NOT_FOUND_RCS:
            raise RuntimeError(f"net user /delete failed for {username!r} (rc={cp.returncode}): {(cp.stderr or '').strip()}")
        self.logger.debug("👤 Local account %s removed (rc=%s)", username, cp.returncode)

    # ------------------------------------------------------------------
    # network share
    # ------------------------------------------------------------------

    def create_share(self, share_name: str, path: Path, username: str) -> str:
        U.ensure_dir(Path(path))
        cmd = ["net", "share", f"{share_name}={path}", f"/GRANT:{username},FULL"]
        try:
            U.run_cmd(self.logger, cmd, check=True, capture=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise ResourceCreationError(code=30, msg=f"Failed to create network share {share_name!r}", cause=e).with_context(
                path=str(path)
            )
        self.registry.register(
            ResourceKind.NETWORK_SHARE,
            share_name,
            f"network share {share_name}",
            lambda: self.remove_share(share_name),
        )
        self.logger.info("📂 Shared %s as \\\\%s", path, share_name)
        return share_name

    def remove_share(self, share_name: str) -> None:
        cp = U.run_cmd(self.logger, ["net", "share", share_name, "/delete", "/y"], check=False, capture=True)
        if cp.returncode != 0 and cp.returncode not in _NET_NOT_FOUND_RCS:
            raise RuntimeError(f"net share /delete failed for {share_name!r} (rc={cp.returncode})")
        self.logger.debug("📂 Share %s removed (rc=%s)", share_name, cp.returncode)

    # ------------------------------------------------------------------
    # files (ISOs, scratch media)
    # ------------------------------------------------------------------

    def track_file(self, kind: ResourceKind, path: Path, name: Optional[str] = None) -> int:
        p = Path(path)
        return self.registry.register(kind, str(p), name or p.name, lambda: remove_file(p))


def remove_file(path: Path) -> None:
    Path(path).unlink(missing_ok=True)


def restore_cleanup_entries(
    logger: logging.Logger,
    registry: CleanupRegistry,
    summaries: List[Dict[str, str]],
    *,
    host: Optional[HostResources] = None,
    provider: Any = None,
) -> int:
    """
    Re-register rollback actions for resources a previous process created.

    Checkpoints only carry {kind, id, name}; the action is rebuilt here from
    the kind. Entries nobody knows how to remove are logged and skipped.
    Returns the number of entries restored.
    """
    restored = 0
    for s in summaries or []:
        kind = ResourceKind.parse(s.get("kind"))
        rid = str(s.get("id") or "")
        name = str(s.get("name") or rid)
        if not rid:
            continue

        action: Optional[RollbackAction] = None
        if kind == ResourceKind.OS_ACCOUNT and host is not None:
            action = (lambda u: (lambda: host.remove_user(u)))(rid)
        elif kind == ResourceKind.NETWORK_SHARE and host is not None:
            action = (lambda n: (lambda: host.remove_share(n)))(rid)
        elif kind == ResourceKind.ISO:
            action = (lambda p: (lambda: remove_file(Path(p))))(rid)
        elif provider is not None:
            action = provider.rollback_action(kind, rid)

        if action is None:
            logger.warning("⚠️  Cannot restore rollback for %s %s (%s); it will need manual cleanup", kind.value, rid, name)
            continue
        registry.register(kind, rid, name, action)
        restored += 1

    if restored:
        logger.info("🧹 Restored %d rollback entr%s from checkpoint", restored, "y" if restored == 1 else "ies")
    return restored
