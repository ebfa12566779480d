# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/providers/base.py
"""
Backend-neutral VM lifecycle.

Each backend implements the small set of underscore hooks at the bottom of
HypervisorProvider; the public operations (validation, cleanup registration,
idempotence, mount retry/verification, state waiting, discovery fallback)
live here so every backend behaves the same way towards the orchestrator.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..core.cleanup import CleanupRegistry, ResourceKind, RollbackAction
from ..core.exceptions import (
    FfuBuildError,
    MountVerificationFailed,
    ProviderError,
    ResourceCreationError,
    UnsupportedConfiguration,
)
from ..core.retry import retry_operation
from ..core.utils import U
from ..messaging.reporter import Reporter

GiB = 1024 ** 3
MiB = 1024 ** 2

DEFAULT_POLL_INTERVAL_S = 2.0
MOUNT_ATTEMPTS = 3
MOUNT_BACKOFF_S = 0.5


class VMState(str, Enum):
    OFF = "Off"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    PAUSED = "Paused"
    SAVED = "Saved"
    ABSENT = "Absent"
    UNKNOWN = "Unknown"


class StopMode(str, Enum):
    GRACEFUL = "graceful"
    FORCED = "forced"


class MemoryMode(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class VMDescriptor:
    name: str
    work_dir: Path
    memory_bytes: int
    processors: int
    disk_path: Path
    disk_format: str = "vhdx"
    media_path: Optional[Path] = None
    generation: int = 2
    tpm: bool = False
    secure_boot: bool = False
    memory_mode: MemoryMode = MemoryMode.STATIC

    @property
    def memory_mb(self) -> int:
        return int(self.memory_bytes // MiB)


@dataclass(frozen=True)
class CapabilityDescriptor:
    backend: str
    supports_tpm: bool
    supports_secure_boot: bool
    disk_formats: FrozenSet[str]
    max_memory_bytes: int
    max_processors: int
    generations: FrozenSet[int] = frozenset({1, 2})
    supports_dynamic_memory: bool = False
    supports_state_events: bool = False
    default_disk_format: str = "vhdx"


@dataclass(frozen=True)
class VMHandle:
    """
    name: display name
    ref:  what the backend's tools address the VM by (name, .vmx path)
    uid:  stable identity used for de-duplication (GUID, normalized path)
    """
    name: str
    ref: str
    uid: str
    backend: str
    meta: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def validate_descriptor(descriptor: VMDescriptor, caps: CapabilityDescriptor) -> List[str]:
    """Everything in `descriptor` the backend cannot satisfy (empty list: OK)."""
    problems: List[str] = []
    if not descriptor.name or not descriptor.name.strip():
        problems.append("VM name is empty")
    if descriptor.processors < 1:
        problems.append(f"processor count must be >= 1 (got {descriptor.processors})")
    elif descriptor.processors > caps.max_processors:
        problems.append(f"{descriptor.processors} processors requested, {caps.backend} allows {caps.max_processors}")
    if descriptor.memory_bytes <= 0:
        problems.append("memory size must be positive")
    elif descriptor.memory_bytes > caps.max_memory_bytes:
        problems.append(
            f"{U.human_bytes(descriptor.memory_bytes)} memory requested, "
            f"{caps.backend} allows {U.human_bytes(caps.max_memory_bytes)}"
        )
    fmt = (descriptor.disk_format or "").lower()
    if fmt not in caps.disk_formats:
        problems.append(f"disk format {fmt!r} not supported by {caps.backend} ({', '.join(sorted(caps.disk_formats))})")
    if descriptor.generation not in caps.generations:
        problems.append(f"generation {descriptor.generation} not supported by {caps.backend}")
    if descriptor.tpm and not caps.supports_tpm:
        problems.append(f"{caps.backend} cannot provide a virtual TPM")
    if descriptor.secure_boot and not caps.supports_secure_boot:
        problems.append(f"{caps.backend} cannot enable secure boot")
    if descriptor.secure_boot and descriptor.generation < 2:
        problems.append("secure boot needs UEFI firmware (generation 2)")
    if descriptor.memory_mode == MemoryMode.DYNAMIC and not caps.supports_dynamic_memory:
        problems.append(f"{caps.backend} has no dynamic memory")
    return problems


def path_is_accessible(p: Path) -> bool:
    """True if `p` is an existing directory we can actually list."""
    try:
        if not Path(p).is_dir():
            return False
        os.listdir(str(p))
        return True
    except OSError:
        return False


def dedupe_handles(handles: Iterable[VMHandle]) -> List[VMHandle]:
    seen: Dict[str, VMHandle] = {}
    for h in handles:
        key = h.uid.lower()
        if key not in seen:
            seen[key] = h
    return list(seen.values())


class _MountNotReady(Exception):
    pass


StateCallback = Callable[[VMState], None]
Unsubscribe = Callable[[], None]


class HypervisorProvider(ABC):
    """
    One instance per build. Adapters register their own rollback actions on
    the shared CleanupRegistry as soon as a resource exists.
    """

    name: str = "abstract"

    def __init__(
        self,
        logger: logging.Logger,
        registry: CleanupRegistry,
        *,
        reporter: Optional[Reporter] = None,
        work_dir: Optional[Path] = None,
        search_roots: Iterable[Path] = (),
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ):
        self.logger = logger
        self.registry = registry
        self.reporter = reporter.bind(self.name) if reporter is not None else None
        self.work_dir = Path(work_dir) if work_dir else None
        self.search_roots = [Path(p) for p in search_roots]
        self.poll_interval_s = float(poll_interval_s)

    # ------------------------------------------------------------------
    # probes
    # ------------------------------------------------------------------

    @abstractmethod
    def is_available(self) -> Tuple[bool, List[str]]:
        """Non-throwing probe: (usable, issues)."""

    @abstractmethod
    def get_capabilities(self) -> CapabilityDescriptor:
        ...

    def optional_enhancements(self) -> Dict[str, str]:
        """
        Missing optional libraries -> the fallback that covers them.
        Pre-flight reports these as warnings.
        """
        return {}

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def create_vm(self, descriptor: VMDescriptor) -> VMHandle:
        caps = self.get_capabilities()
        problems = validate_descriptor(descriptor, caps)
        if problems:
            raise UnsupportedConfiguration(
                code=2,
                msg=f"VM {descriptor.name!r} cannot be created on {caps.backend}: " + "; ".join(problems),
            ).with_context(backend=caps.backend, vm=descriptor.name)

        try:
            handle = self._define_vm(descriptor)
        except FfuBuildError:
            raise
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError) as e:
            raise ResourceCreationError(
                code=30, msg=f"{self.name}: failed to create VM {descriptor.name!r}: {e}", cause=e
            ).with_context(vm=descriptor.name)

        self.registry.register(ResourceKind.VM, handle.ref, f"VM {handle.name}", self.rollback_action(ResourceKind.VM, handle.ref))
        self._info(f"Created VM {handle.name}")

        try:
            self._configure_vm(handle, descriptor)
        except FfuBuildError:
            raise
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError) as e:
            # VM already registered for rollback; the orchestrator removes it.
            raise ResourceCreationError(
                code=30, msg=f"{self.name}: failed to configure VM {descriptor.name!r}: {e}", cause=e
            ).with_context(vm=descriptor.name)
        return handle

    def start_vm(self, handle: VMHandle) -> None:
        state = self._call("query state", handle, lambda: self.get_state(handle))
        if state == VMState.RUNNING:
            self.logger.debug("%s: VM %s already running", self.name, handle.name)
            return
        if state == VMState.ABSENT:
            raise ProviderError(code=31, msg=f"{self.name}: cannot start VM {handle.name!r}; it does not exist")
        self._call("start VM", handle, lambda: self._start(handle))
        self._info(f"Started VM {handle.name}")

    def stop_vm(self, handle: VMHandle, mode: StopMode = StopMode.GRACEFUL) -> None:
        state = self._call("query state", handle, lambda: self.get_state(handle))
        if state in (VMState.OFF, VMState.ABSENT):
            self.logger.debug("%s: VM %s already stopped (%s)", self.name, handle.name, state.value)
            return
        self._call(f"stop VM ({mode.value})", handle, lambda: self._stop(handle, mode))
        self.logger.info("⏹️  %s: stop requested for %s (%s)", self.name, handle.name, mode.value)

    def remove_vm(self, handle: VMHandle) -> None:
        self._remove_vm_quiet(handle)
        entry = self.registry.find(ResourceKind.VM, handle.ref)
        if entry is not None:
            self.registry.unregister(entry.id)
        self._info(f"Removed VM {handle.name}")

    def _remove_vm_quiet(self, handle: VMHandle) -> None:
        state = self._call("query state", handle, lambda: self.get_state(handle))
        if state == VMState.ABSENT:
            self.logger.debug("%s: VM %s already gone", self.name, handle.name)
            return
        if state not in (VMState.OFF, VMState.SAVED):
            self._call("turn off VM", handle, lambda: self._stop(handle, StopMode.FORCED))
        self._call("remove VM", handle, lambda: self._remove(handle))

    def wait_for_state(self, handle: VMHandle, target: VMState, timeout_s: float) -> bool:
        """
        Block until the VM reports `target` or `timeout_s` elapses.

        Uses the backend's state-change events when it has them and polls
        get_state() every poll interval regardless, plus one last direct check
        when time runs out. Returns False on timeout; never raises.
        """
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        events: "queue.Queue[VMState]" = queue.Queue()
        unsubscribe: Optional[Unsubscribe] = None
        try:
            try:
                unsubscribe = self._subscribe_state_events(handle, events.put)
            except Exception as e:
                self._warn(f"State-change events unavailable for {handle.name} ({e}); polling every {self.poll_interval_s:g}s")
                unsubscribe = None
            if unsubscribe is None:
                self.logger.debug("%s: polling %s for state %s", self.name, handle.name, target.value)

            if self._safe_state(handle) == target:
                return True

            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    seen = events.get(timeout=min(self.poll_interval_s, remaining))
                except queue.Empty:
                    if self._safe_state(handle) == target:
                        return True
                    continue
                self.logger.debug("%s: event %s -> %s", self.name, handle.name, seen.value)
                if seen == target:
                    return True

            # events can be missed; ask one more time
            ok = self._safe_state(handle) == target
            if not ok:
                self.logger.debug("%s: %s did not reach %s within %.1fs", self.name, handle.name, target.value, timeout_s)
            return ok
        finally:
            if unsubscribe is not None:
                try:
                    unsubscribe()
                except Exception as e:
                    self.logger.debug("%s: unsubscribe failed: %s", self.name, e)

    def _safe_state(self, handle: VMHandle) -> VMState:
        try:
            return self.get_state(handle)
        except Exception as e:
            self.logger.debug("%s: state query for %s failed: %s", self.name, handle.name, e)
            return VMState.UNKNOWN

    # ------------------------------------------------------------------
    # disks
    # ------------------------------------------------------------------

    def create_virtual_disk(self, path: Path, size_bytes: int, *, disk_format: Optional[str] = None) -> Path:
        p = Path(path)
        fmt = (disk_format or p.suffix.lstrip(".") or self.get_capabilities().default_disk_format).lower()
        if fmt not in self.get_capabilities().disk_formats:
            raise UnsupportedConfiguration(code=2, msg=f"{self.name} cannot create {fmt!r} disks").with_context(path=str(p))
        if p.exists():
            raise ResourceCreationError(code=30, msg=f"Virtual disk already exists: {p}")
        U.ensure_dir(p.parent)
        try:
            self._create_disk(p, int(size_bytes), fmt)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            p.unlink(missing_ok=True)
            raise ResourceCreationError(code=30, msg=f"{self.name}: failed to create disk {p}: {e}", cause=e)
        self.registry.register(ResourceKind.VIRTUAL_DISK, str(p), f"virtual disk {p.name}", self.rollback_action(ResourceKind.VIRTUAL_DISK, str(p)))
        self._info(f"Created {fmt} disk {p} ({U.human_bytes(size_bytes)})")
        return p

    def mount_virtual_disk(self, path: Path) -> Path:
        """
        Attach the disk on the host and return a verified, listable mount path.
        Raises MountVerificationFailed; never returns an unverified path.
        """
        p = Path(path)
        if not p.exists():
            raise MountVerificationFailed(code=40, msg=f"Virtual disk not found: {p}")

        try:
            token = self._attach_disk(p)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise MountVerificationFailed(code=40, msg=f"{self.name}: failed to attach {p.name}: {e}", cause=e)
        self.registry.register(ResourceKind.MOUNT, str(p), f"mount of {p.name}", self.rollback_action(ResourceKind.MOUNT, str(p)))

        def attempt(n: int) -> Path:
            mp = self._assign_mount_point(p, token, n)
            if mp is None or not str(mp).strip():
                raise _MountNotReady(f"no mount point assigned (attempt {n})")
            if not path_is_accessible(Path(mp)):
                raise _MountNotReady(f"{mp} not accessible yet (attempt {n})")
            return Path(mp)

        try:
            mounted = retry_operation(
                attempt,
                max_attempts=MOUNT_ATTEMPTS,
                base_backoff_s=MOUNT_BACKOFF_S,
                exceptions=(_MountNotReady, subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError),
                operation_name=f"{self.name} mount {p.name}",
                logger=self.logger,
            )
        except (_MountNotReady, subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            self._detach_after_failed_mount(p)
            raise MountVerificationFailed(
                code=40, msg=f"{self.name}: {p.name} has no accessible mount point after {MOUNT_ATTEMPTS} attempts: {e}", cause=e
            ).with_context(path=str(p))

        self.logger.info("💿 %s: mounted %s at %s", self.name, p.name, mounted)
        return mounted

    def dismount_virtual_disk(self, path: Path) -> None:
        p = Path(path)
        self._call_disk("dismount", p, lambda: self._detach_disk(p))
        entry = self.registry.find(ResourceKind.MOUNT, str(p))
        if entry is not None:
            self.registry.unregister(entry.id)
        self.logger.info("💿 %s: dismounted %s", self.name, p.name)

    def _detach_after_failed_mount(self, p: Path) -> None:
        try:
            self.dismount_virtual_disk(p)
        except ProviderError as e:
            # entry stays registered; rollback tries again
            self._warn(f"Could not detach {p.name} after failed mount: {e}")

    # ------------------------------------------------------------------
    # discovery
    # ------------------------------------------------------------------

    def find_vms(self, name: Optional[str] = None) -> List[VMHandle]:
        """
        Fast backend query first; if it is unavailable or returns nothing,
        scan well-known VM storage locations. Results are de-duplicated.
        """
        found: List[VMHandle] = []
        try:
            found = list(self._query_vms())
            if not found:
                self.logger.info("🔎 %s: inventory query returned no VMs; scanning VM storage", self.name)
        except (ImportError, FfuBuildError, subprocess.SubprocessError, OSError, ValueError) as e:
            self._warn(f"VM inventory query unavailable ({e}); scanning VM storage instead")

        if not found:
            try:
                found = list(self._scan_vm_storage())
            except OSError as e:
                self._warn(f"VM storage scan failed ({e}); no VMs discovered")
                found = []

        handles = dedupe_handles(found)
        if name:
            key = name.lower()
            handles = [h for h in handles if h.name.lower() == key or h.uid.lower() == key or h.ref.lower() == key]
        return handles

    def vm_exists(self, name: str) -> bool:
        return bool(self.find_vms(name))

    def scan_roots(self) -> List[Path]:
        roots: List[Path] = []
        if self.work_dir is not None:
            roots.append(self.work_dir)
        roots.extend(self.search_roots)
        roots.extend(self._default_storage_roots())
        out: List[Path] = []
        for r in roots:
            if r not in out:
                out.append(r)
        return out

    # ------------------------------------------------------------------
    # rollback
    # ------------------------------------------------------------------

    def rollback_action(self, kind: ResourceKind, resource_id: str) -> Optional[RollbackAction]:
        """Rollback for a resource this provider created; used at creation and on resume."""
        if kind == ResourceKind.VM:
            handle = self.handle_for_ref(resource_id)
            return lambda: self._remove_vm_quiet(handle)
        if kind == ResourceKind.VIRTUAL_DISK:
            return lambda: self._delete_disk(Path(resource_id))
        if kind == ResourceKind.MOUNT:
            return lambda: self._detach_disk(Path(resource_id))
        return None

    def handle_for_ref(self, ref: str) -> VMHandle:
        return VMHandle(name=ref, ref=ref, uid=ref, backend=self.name)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _call(self, what: str, handle: VMHandle, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except FfuBuildError:
            raise
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError) as e:
            raise ProviderError(code=31, msg=f"{self.name}: {what} failed for {handle.name!r}: {e}", cause=e).with_context(vm=handle.name)

    def _call_disk(self, what: str, p: Path, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except FfuBuildError:
            raise
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise ProviderError(code=31, msg=f"{self.name}: {what} failed for {p.name}: {e}", cause=e).with_context(path=str(p))

    def _info(self, text: str) -> None:
        if self.reporter is not None:
            self.reporter.info(text)
        else:
            self.logger.info("🖥️  %s", text)

    def _warn(self, text: str) -> None:
        if self.reporter is not None:
            self.reporter.warning(text)
        else:
            self.logger.warning("⚠️  %s", text)

    # ------------------------------------------------------------------
    # backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def get_state(self, handle: VMHandle) -> VMState:
        """Direct state query; VMState.ABSENT if the VM does not exist."""

    @abstractmethod
    def _define_vm(self, descriptor: VMDescriptor) -> VMHandle:
        """Allocate the VM. Anything after this point is rolled back by removal."""

    def _configure_vm(self, handle: VMHandle, descriptor: VMDescriptor) -> None:
        return None

    @abstractmethod
    def _start(self, handle: VMHandle) -> None:
        ...

    @abstractmethod
    def _stop(self, handle: VMHandle, mode: StopMode) -> None:
        ...

    @abstractmethod
    def _remove(self, handle: VMHandle) -> None:
        ...

    @abstractmethod
    def _create_disk(self, path: Path, size_bytes: int, disk_format: str) -> None:
        ...

    def _delete_disk(self, path: Path) -> None:
        self._detach_disk(path)
        path.unlink(missing_ok=True)

    @abstractmethod
    def _attach_disk(self, path: Path) -> Any:
        """Attach to the host; returns a backend token passed to _assign_mount_point."""

    @abstractmethod
    def _assign_mount_point(self, path: Path, token: Any, attempt: int) -> Optional[Path]:
        """Give the attached disk a mount point; may pick differently per attempt."""

    @abstractmethod
    def _detach_disk(self, path: Path) -> None:
        """Idempotent."""

    def _subscribe_state_events(self, handle: VMHandle, callback: StateCallback) -> Optional[Unsubscribe]:
        """Start delivering state changes to `callback`; None when unsupported."""
        return None

    @abstractmethod
    def _query_vms(self) -> List[VMHandle]:
        """Fast inventory query."""

    @abstractmethod
    def _scan_vm_storage(self) -> List[VMHandle]:
        """Filesystem scan of scan_roots()."""

    def _default_storage_roots(self) -> List[Path]:
        return []
