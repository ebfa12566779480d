# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/orchestrator/phases.py
"""
The default FFU pipeline: what each phase does with the provider, the host
resources and the configured external commands.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.build_config import BuildConfig
from ..core.cancellation import CancellationCoordinator
from ..core.checkpoint import BuildPhase
from ..core.cleanup import CleanupRegistry, ResourceKind
from ..core.exceptions import MountVerificationFailed, PhaseFailed
from ..core.host_resources import HostResources
from ..core.utils import U
from ..messaging.reporter import Reporter
from ..providers.base import HypervisorProvider, StopMode, VMHandle, VMState
from .collaborators import CommandCollaborators
from .orchestrator import PhaseOutcome, PhaseSpec, PipelineState
from .preflight import PreflightChecker


class FfuPipeline:
    def __init__(
        self,
        logger: logging.Logger,
        config: BuildConfig,
        *,
        provider: HypervisorProvider,
        registry: CleanupRegistry,
        coordinator: CancellationCoordinator,
        host: HostResources,
        collaborators: CommandCollaborators,
        reporter: Reporter,
    ):
        self.logger = logger
        self.config = config
        self.provider = provider
        self.registry = registry
        self.coordinator = coordinator
        self.host = host
        self.collab = collaborators
        self.reporter = reporter.bind("pipeline")
        self._capture_password: Optional[str] = config.capture_password

    def specs(self) -> List[PhaseSpec]:
        P = BuildPhase
        return [
            PhaseSpec(P.PREFLIGHT_VALIDATION, "Running pre-flight checks", self.preflight, 0.5),
            PhaseSpec(P.DRIVER_DOWNLOAD, "Downloading drivers", self.driver_download, 1.0),
            PhaseSpec(P.UPDATES_DOWNLOAD, "Downloading updates", self.updates_download, 1.0),
            PhaseSpec(P.APPS_PREPARATION, "Preparing applications", self.apps_preparation, 1.0),
            PhaseSpec(P.VHDX_CREATION, "Creating and populating the virtual disk", self.vhdx_creation, 3.0),
            PhaseSpec(P.WINDOWS_UPDATES, "Applying Windows updates offline", self.windows_updates, 2.0),
            PhaseSpec(P.VM_SETUP, "Creating the build VM", self.vm_setup, 1.0),
            PhaseSpec(P.VM_START, "Starting the build VM", self.vm_start, 1.0),
            PhaseSpec(P.APP_INSTALLATION, "Installing applications", self.app_installation, 4.0),
            PhaseSpec(P.VM_SHUTDOWN, "Waiting for the VM to shut down", self.vm_shutdown, 1.0),
            PhaseSpec(P.FFU_CAPTURE, "Capturing the FFU image", self.ffu_capture, 3.0),
            PhaseSpec(P.DEPLOYMENT_MEDIA, "Creating deployment media", self.deployment_media, 1.0),
            PhaseSpec(P.USB_CREATION, "Writing USB drives", self.usb_creation, 1.0),
            PhaseSpec(P.CLEANUP, "Removing build resources", self.cleanup, 0.5),
        ]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _disk_format(self, state: PipelineState) -> str:
        return str(
            state.artifacts.get("disk_format")
            or self.config.disk_format
            or self.provider.get_capabilities().default_disk_format
        ).lower()

    def _ffu_path(self) -> Path:
        return Path(self.config.ffu_dir) / f"{self.config.vm_name}.ffu"

    def _deploy_iso_path(self) -> Path:
        return Path(self.config.ffu_dir) / "WinPE-Deploy.iso"

    def _share_password(self, state: PipelineState) -> Optional[str]:
        if self._capture_password is None and state.artifacts.get("share_created"):
            # account was created by an earlier process; its generated password is gone
            self._capture_password = self.host.reset_password(self.config.capture_user)
        return self._capture_password

    def _values(self, state: PipelineState, **extra: Any) -> Dict[str, Any]:
        wd = self.config.work_dir
        v: Dict[str, Any] = {
            "work_dir": wd,
            "vm_name": self.config.vm_name,
            "vhdx": state.paths.get("vhdx") or self.config.disk_path(self._disk_format(state)),
            "iso": self.config.iso_path,
            "drivers": wd / "Drivers",
            "updates": wd / "Updates",
            "apps": wd / "Apps",
            "media": wd / "Media",
            "ffu_dir": self.config.ffu_dir,
            "ffu": self._ffu_path(),
            "deploy_iso": self._deploy_iso_path(),
            "share": self.config.share_name,
            "share_user": self.config.capture_user,
            "share_password": self._share_password(state),
        }
        v.update(state.paths)
        v.update(extra)
        return v

    def _handle(self, state: PipelineState) -> VMHandle:
        if state.handle is None:
            raise PhaseFailed(code=1, msg="No build VM known (VM setup has not run)")
        return state.handle

    def _download(self, name: str, key: str, state: PipelineState) -> PhaseOutcome:
        target = Path(self._values(state)[key])
        U.ensure_dir(target)
        out = self.collab.run(name, self._values(state))
        if out.ok and not out.skipped:
            out.paths[key] = str(target)
        return out

    def _on_mounted_disk(self, name: str, state: PipelineState) -> PhaseOutcome:
        if not self.collab.configured(name):
            return self.collab.run(name, {})
        vhdx = Path(state.paths["vhdx"])
        try:
            mount = self.provider.mount_virtual_disk(vhdx)
        except MountVerificationFailed as e:
            return PhaseOutcome.failed(str(e))
        try:
            return self.collab.run(name, self._values(state, mount=mount))
        finally:
            self.provider.dismount_virtual_disk(vhdx)

    def _wait(self, handle: VMHandle, target: VMState, timeout_s: float) -> Optional[bool]:
        return self.coordinator.wait_until(
            lambda slice_s: self.provider.wait_for_state(handle, target, slice_s),
            timeout_s=timeout_s,
            slice_s=self.config.wait_slice_s,
        )

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def preflight(self, state: PipelineState) -> PhaseOutcome:
        report = PreflightChecker(self.logger, self.config, self.provider).check_all()
        for w in report.warnings:
            self.reporter.warning(w)
        if not report.ok():
            return PhaseOutcome.failed("; ".join(str(e) for e in report.errors))
        return PhaseOutcome(artifacts={"preflight_ok": True})

    def driver_download(self, state: PipelineState) -> PhaseOutcome:
        return self._download("DriverDownload", "drivers", state)

    def updates_download(self, state: PipelineState) -> PhaseOutcome:
        return self._download("UpdatesDownload", "updates", state)

    def apps_preparation(self, state: PipelineState) -> PhaseOutcome:
        return self._download("AppsPreparation", "apps", state)

    def vhdx_creation(self, state: PipelineState) -> PhaseOutcome:
        fmt = self._disk_format(state)
        path = self.provider.create_virtual_disk(
            self.config.disk_path(fmt),
            int(self.config.disk_size_gb) * 1024 ** 3,
            disk_format=fmt,
        )
        state.paths["vhdx"] = str(path)
        out = self._on_mounted_disk("VHDXCreation", state)
        if out.ok:
            out.paths["vhdx"] = str(path)
            out.artifacts.update({"vhdx_created": True, "disk_format": fmt})
        return out

    def windows_updates(self, state: PipelineState) -> PhaseOutcome:
        return self._on_mounted_disk("WindowsUpdates", state)

    def vm_setup(self, state: PipelineState) -> PhaseOutcome:
        descriptor = self.config.descriptor(self._disk_format(state))
        handle = self.provider.create_vm(descriptor)
        state.handle = handle
        artifacts: Dict[str, Any] = {"vm_created": True, "vm_name": handle.name, "vm_ref": handle.ref}

        if self.config.capture_share:
            U.ensure_dir(Path(self.config.ffu_dir))
            self._capture_password = self.host.create_user(self.config.capture_user, self._capture_password)
            self.host.create_share(self.config.share_name, Path(self.config.ffu_dir), self.config.capture_user)
            artifacts["share_created"] = True
        return PhaseOutcome(artifacts=artifacts)

    def vm_start(self, state: PipelineState) -> PhaseOutcome:
        handle = self._handle(state)
        self.provider.start_vm(handle)
        ok = self._wait(handle, VMState.RUNNING, self.config.vm_start_timeout_s)
        if ok is None:
            return PhaseOutcome.interrupted("cancelled while waiting for the VM to start")
        if not ok:
            return PhaseOutcome.failed(f"VM {handle.name} did not reach Running within {self.config.vm_start_timeout_s:g}s")
        return PhaseOutcome(artifacts={"vm_started": True})

    def app_installation(self, state: PipelineState) -> PhaseOutcome:
        return self.collab.run("AppInstallation", self._values(state))

    def vm_shutdown(self, state: PipelineState) -> PhaseOutcome:
        handle = self._handle(state)
        if not self.collab.configured("AppInstallation"):
            # nothing inside the guest will power it off
            self.provider.stop_vm(handle, StopMode.GRACEFUL)
        ok = self._wait(handle, VMState.OFF, self.config.vm_shutdown_timeout_s)
        if ok is None:
            return PhaseOutcome.interrupted("cancelled while waiting for the VM to shut down")
        if not ok:
            return PhaseOutcome.failed(f"VM {handle.name} did not shut down within {self.config.vm_shutdown_timeout_s:g}s")
        return PhaseOutcome(artifacts={"vm_stopped": True})

    def ffu_capture(self, state: PipelineState) -> PhaseOutcome:
        U.ensure_dir(Path(self.config.ffu_dir))
        return self.collab.run("FFUCapture", self._values(state), produces=self._ffu_path(), path_key="ffu")

    def deployment_media(self, state: PipelineState) -> PhaseOutcome:
        iso = self._deploy_iso_path()
        out = self.collab.run("DeploymentMedia", self._values(state))
        if out.ok and not out.skipped and iso.exists():
            self.host.track_file(ResourceKind.ISO, iso, f"deployment media {iso.name}")
            out.paths["deploy_iso"] = str(iso)
        return out

    def usb_creation(self, state: PipelineState) -> PhaseOutcome:
        return self.collab.run("USBCreation", self._values(state))

    def cleanup(self, state: PipelineState) -> PhaseOutcome:
        artifacts: Dict[str, Any] = {}
        for entry in reversed(self.registry.entries()):
            if entry.kind in (ResourceKind.NETWORK_SHARE, ResourceKind.OS_ACCOUNT, ResourceKind.MOUNT):
                entry.action()
                self.registry.unregister(entry.id)
                self.reporter.info(f"Removed {entry.name}")

        if state.handle is not None and not self.config.keep_vm:
            self.provider.remove_vm(state.handle)
            artifacts["vm_removed"] = True
        elif state.handle is not None:
            entry = self.registry.find(ResourceKind.VM, state.handle.ref)
            if entry is not None:
                self.registry.unregister(entry.id)
            self.reporter.info(f"Keeping VM {state.handle.name}")
        return PhaseOutcome(artifacts=artifacts)
