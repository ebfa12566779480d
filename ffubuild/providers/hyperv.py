# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/providers/hyperv.py
"""
Hyper-V backend driven through the Hyper-V PowerShell module.

State waits subscribe to Msvm_ComputerSystem modification events over WMI
when the `wmi` package is installed; without it they poll Get-VM.
"""

from __future__ import annotations

import json
import os
import string
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core import optional_imports as oi
from ..core.utils import U
from .base import (
    GiB,
    CapabilityDescriptor,
    HypervisorProvider,
    MemoryMode,
    StateCallback,
    StopMode,
    Unsubscribe,
    VMDescriptor,
    VMHandle,
    VMState,
)

POWERSHELL = "powershell.exe"
WMI_NAMESPACE = r"root\virtualization\v2"
DEFAULT_VM_STORE = Path(r"C:\ProgramData\Microsoft\Windows\Hyper-V\Virtual Machines")

# Get-VM .State names
_PS_STATES: Dict[str, VMState] = {
    "off": VMState.OFF,
    "running": VMState.RUNNING,
    "starting": VMState.STARTING,
    "stopping": VMState.STOPPING,
    "paused": VMState.PAUSED,
    "pausing": VMState.PAUSED,
    "saved": VMState.SAVED,
    "saving": VMState.STOPPING,
}

# Msvm_ComputerSystem.EnabledState
_WMI_STATES: Dict[int, VMState] = {
    2: VMState.RUNNING,
    3: VMState.OFF,
    4: VMState.STOPPING,
    6: VMState.SAVED,
    9: VMState.PAUSED,
    32768: VMState.PAUSED,
    32769: VMState.SAVED,
    32770: VMState.STARTING,
    32773: VMState.STOPPING,
    32774: VMState.STOPPING,
}


def ps_quote(s: Any) -> str:
    return "'" + str(s).replace("'", "''") + "'"


def _as_list(obj: Any) -> List[Dict[str, Any]]:
    # ConvertTo-Json emits a bare object for a single result
    if obj is None:
        return []
    if isinstance(obj, list):
        return [o for o in obj if isinstance(o, dict)]
    if isinstance(obj, dict):
        return [obj]
    return []


class HyperVProvider(HypervisorProvider):
    name = "hyperv"

    def __init__(self, logger, registry, *, use_events: bool = True, **kw: Any):
        super().__init__(logger, registry, **kw)
        self.use_events = bool(use_events)

    # ------------------------------------------------------------------
    # PowerShell plumbing
    # ------------------------------------------------------------------

    def _ps(self, script: str, *, check: bool = True, timeout: Optional[int] = None) -> str:
        cmd = [POWERSHELL, "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", script]
        cp = U.run_cmd(self.logger, cmd, check=check, capture=True, timeout=timeout)
        return (cp.stdout or "").strip()

    def _ps_json(self, script: str, **kw: Any) -> Any:
        out = self._ps(f"{script} | ConvertTo-Json -Compress -Depth 3", **kw)
        if not out:
            return None
        return json.loads(out)

    # ------------------------------------------------------------------
    # probes
    # ------------------------------------------------------------------

    def is_available(self) -> Tuple[bool, List[str]]:
        issues: List[str] = []
        if not U.is_windows():
            return False, ["Hyper-V is only available on Windows hosts"]
        if not U.which(POWERSHELL):
            return False, [f"{POWERSHELL} not found in PATH"]
        try:
            status = self._ps("(Get-Service -Name vmms -ErrorAction Stop).Status.ToString()", timeout=60)
            if status.lower() != "running":
                issues.append(f"Hyper-V management service (vmms) is {status or 'not running'}")
            if not self._ps("if (Get-Command New-VM -ErrorAction SilentlyContinue) { 'yes' }", timeout=60):
                issues.append("Hyper-V PowerShell module is not installed")
            admin = self._ps(
                "([Security.Principal.WindowsPrincipal][Security.Principal.WindowsIdentity]::GetCurrent())"
                ".IsInRole([Security.Principal.WindowsBuiltInRole]::Administrator)",
                timeout=60,
            )
            if admin.lower() != "true":
                issues.append("Hyper-V operations need an elevated (Administrator) session")
        except Exception as e:
            issues.append(f"Hyper-V probe failed: {e}")
        return (not issues), issues

    def get_capabilities(self) -> CapabilityDescriptor:
        return CapabilityDescriptor(
            backend=self.name,
            supports_tpm=True,
            supports_secure_boot=True,
            disk_formats=frozenset({"vhdx", "vhd"}),
            max_memory_bytes=12 * 1024 * GiB,
            max_processors=240,
            generations=frozenset({1, 2}),
            supports_dynamic_memory=True,
            supports_state_events=oi.WMI_AVAILABLE,
            default_disk_format="vhdx",
        )

    def optional_enhancements(self) -> Dict[str, str]:
        if oi.WMI_AVAILABLE:
            return {}
        return {"wmi": f"VM state waits poll Get-VM every {self.poll_interval_s:g}s instead of using WMI events"}

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def get_state(self, handle: VMHandle) -> VMState:
        out = self._ps(
            f"Get-VM -Name {ps_quote(handle.ref)} -ErrorAction SilentlyContinue | ForEach-Object {{ $_.State.ToString() }}"
        )
        if not out:
            return VMState.ABSENT
        return _PS_STATES.get(out.splitlines()[0].strip().lower(), VMState.UNKNOWN)

    def _define_vm(self, d: VMDescriptor) -> VMHandle:
        script = (
            f"New-VM -Name {ps_quote(d.name)} -Path {ps_quote(d.work_dir)} "
            f"-MemoryStartupBytes {int(d.memory_bytes)} -VHDPath {ps_quote(d.disk_path)} "
            f"-Generation {int(d.generation)} -ErrorAction Stop "
            "| Select-Object Name, @{n='Id';e={$_.Id.ToString()}}, Path"
        )
        rows = _as_list(self._ps_json(script))
        if not rows:
            raise ValueError("New-VM returned no VM")
        row = rows[0]
        return VMHandle(
            name=str(row.get("Name") or d.name),
            ref=d.name,
            uid=str(row.get("Id") or d.name).lower(),
            backend=self.name,
            meta={"path": str(row.get("Path") or d.work_dir)},
        )

    def _configure_vm(self, handle: VMHandle, d: VMDescriptor) -> None:
        vm = ps_quote(handle.ref)
        dynamic = "$true" if d.memory_mode == MemoryMode.DYNAMIC else "$false"
        lines = [
            f"Set-VMProcessor -VMName {vm} -Count {int(d.processors)} -ErrorAction Stop",
            f"Set-VMMemory -VMName {vm} -DynamicMemoryEnabled {dynamic} -ErrorAction Stop",
            f"Set-VM -Name {vm} -AutomaticCheckpointsEnabled $false -ErrorAction Stop",
        ]
        if d.media_path:
            lines.append(f"Add-VMDvdDrive -VMName {vm} -Path {ps_quote(d.media_path)} -ErrorAction Stop")
        if d.generation >= 2:
            sb = "On" if d.secure_boot else "Off"
            if d.media_path:
                lines.append(
                    f"Set-VMFirmware -VMName {vm} -EnableSecureBoot {sb} "
                    f"-FirstBootDevice (Get-VMDvdDrive -VMName {vm}) -ErrorAction Stop"
                )
            else:
                lines.append(f"Set-VMFirmware -VMName {vm} -EnableSecureBoot {sb} -ErrorAction Stop")
        if d.tpm:
            lines.append(f"Set-VMKeyProtector -VMName {vm} -NewLocalKeyProtector -ErrorAction Stop")
            lines.append(f"Enable-VMTPM -VMName {vm} -ErrorAction Stop")
        self._ps("; ".join(lines))
        self.logger.debug("hyperv: configured %s (%d vCPU, %s)", handle.name, d.processors, U.human_bytes(d.memory_bytes))

    def _start(self, handle: VMHandle) -> None:
        self._ps(f"Start-VM -Name {ps_quote(handle.ref)} -ErrorAction Stop")

    def _stop(self, handle: VMHandle, mode: StopMode) -> None:
        flag = "-TurnOff" if mode == StopMode.FORCED else "-Force"
        self._ps(f"Stop-VM -Name {ps_quote(handle.ref)} {flag} -ErrorAction Stop")

    def _remove(self, handle: VMHandle) -> None:
        self._ps(f"Remove-VM -Name {ps_quote(handle.ref)} -Force -ErrorAction Stop")

    # ------------------------------------------------------------------
    # disks
    # ------------------------------------------------------------------

    def _create_disk(self, path: Path, size_bytes: int, disk_format: str) -> None:
        self._ps(f"New-VHD -Path {ps_quote(path)} -SizeBytes {int(size_bytes)} -Dynamic -ErrorAction Stop | Out-Null")

    def _attach_disk(self, path: Path) -> int:
        p = ps_quote(path)
        out = self._ps(
            f"$v = Get-VHD -Path {p} -ErrorAction Stop; "
            f"if (-not $v.Attached) {{ Mount-VHD -Path {p} -NoDriveLetter -ErrorAction Stop; $v = Get-VHD -Path {p} }}; "
            "$v.DiskNumber"
        )
        try:
            return int(out.splitlines()[-1].strip())
        except (IndexError, ValueError):
            raise OSError(f"could not determine disk number for {path} (got {out!r})")

    def _assign_mount_point(self, path: Path, disk_number: Any, attempt: int) -> Optional[Path]:
        # Largest basic partition is the Windows volume.
        select = (
            f"$p = Get-Partition -DiskNumber {int(disk_number)} -ErrorAction Stop "
            "| Where-Object { $_.Type -eq 'Basic' } | Sort-Object Size -Descending | Select-Object -First 1; "
            "if (-not $p) { throw 'no basic partition on disk' }; "
        )
        if attempt == 1:
            assign = (
                "if (-not $p.DriveLetter -or $p.DriveLetter -eq [char]0) { "
                "$p | Add-PartitionAccessPath -AssignDriveLetter -ErrorAction Stop; "
                "$p = Get-Partition -DiskNumber $p.DiskNumber -PartitionNumber $p.PartitionNumber }; "
            )
        else:
            letter = self._pick_free_letter(attempt)
            if letter is None:
                return None
            assign = f"$p | Set-Partition -NewDriveLetter {letter} -ErrorAction Stop; $p = Get-Partition -DriveLetter {letter}; "
        out = self._ps(select + assign + "\"$($p.DriveLetter)\"")
        letter = out.strip()[:1]
        if not letter or letter not in string.ascii_letters:
            return None
        return Path(f"{letter.upper()}:\\")

    @staticmethod
    def _pick_free_letter(attempt: int) -> Optional[str]:
        # retries walk down from Z: so a letter that just failed is not reused
        free = [L for L in reversed(string.ascii_uppercase[3:]) if not os.path.exists(f"{L}:\\")]
        idx = attempt - 2
        return free[idx] if 0 <= idx < len(free) else None

    def _detach_disk(self, path: Path) -> None:
        p = ps_quote(path)
        self._ps(
            f"if (Test-Path -LiteralPath {p}) {{ "
            f"$v = Get-VHD -Path {p} -ErrorAction SilentlyContinue; "
            f"if ($v -and $v.Attached) {{ Dismount-VHD -Path {p} -ErrorAction Stop }} }}"
        )

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    def _subscribe_state_events(self, handle: VMHandle, callback: StateCallback) -> Optional[Unsubscribe]:
        if not (self.use_events and oi.WMI_AVAILABLE):
            return None

        stop = threading.Event()
        ready = threading.Event()
        errors: List[BaseException] = []

        def pump() -> None:
            oi.pythoncom.CoInitialize()
            try:
                conn = oi.wmi.WMI(namespace=WMI_NAMESPACE)
                watcher = conn.Msvm_ComputerSystem.watch_for(
                    notification_type="Modification",
                    delay_secs=1,
                    ElementName=handle.ref,
                )
                ready.set()
                while not stop.is_set():
                    try:
                        ev = watcher(timeout_ms=500)
                    except oi.wmi.x_wmi_timed_out:
                        continue
                    callback(_WMI_STATES.get(int(ev.EnabledState), VMState.UNKNOWN))
            except Exception as e:
                errors.append(e)
                ready.set()
            finally:
                oi.pythoncom.CoUninitialize()

        t = threading.Thread(target=pump, name=f"wmi-events-{handle.name}", daemon=True)
        t.start()
        ready.wait(timeout=10)
        if errors:
            stop.set()
            raise errors[0]
        if not ready.is_set():
            stop.set()
            raise TimeoutError("WMI event subscription did not become ready")

        def unsubscribe() -> None:
            stop.set()
            t.join(timeout=2)

        return unsubscribe

    # ------------------------------------------------------------------
    # discovery
    # ------------------------------------------------------------------

    def _query_vms(self) -> List[VMHandle]:
        if not U.which(POWERSHELL):
            raise FileNotFoundError(f"{POWERSHELL} not found")
        rows = _as_list(self._ps_json("Get-VM | Select-Object Name, @{n='Id';e={$_.Id.ToString()}}, Path"))
        return [
            VMHandle(name=str(r.get("Name")), ref=str(r.get("Name")), uid=str(r.get("Id") or r.get("Name")).lower(),
                     backend=self.name, meta={"path": str(r.get("Path") or "")})
            for r in rows
            if r.get("Name")
        ]

    def _default_storage_roots(self) -> List[Path]:
        return [DEFAULT_VM_STORE]

    def _scan_vm_storage(self) -> List[VMHandle]:
        out: List[VMHandle] = []
        for root in self.scan_roots():
            if not root.is_dir():
                continue
            # <root>\<GUID>.vmcx  or  <root>\<name>\Virtual Machines\<GUID>.vmcx
            for cfg in list(root.glob("*.vmcx")) + list(root.glob("*/Virtual Machines/*.vmcx")):
                guid = cfg.stem.lower()
                parent = cfg.parent
                name = guid if parent == root else parent.parent.name
                out.append(VMHandle(name=name, ref=name, uid=guid, backend=self.name, meta={"config": str(cfg)}))
        self.logger.debug("hyperv: storage scan found %d VM config(s)", len(out))
        return out
