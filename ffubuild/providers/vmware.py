# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# ffubuild/providers/vmware.py
"""
VMware Workstation backend.

Lifecycle goes through `vmrun`, disks through `vmware-vdiskmanager` and
`vmware-mount`. Inventory uses the vmrest REST service when `requests` is
installed and the service answers; otherwise it scans for .vmx files.
"""

from __future__ import annotations

import os
import re
import string
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core import optional_imports as oi
from ..core.retry import retry_with_backoff
from ..core.utils import U
from .base import (
    GiB,
    MiB,
    CapabilityDescriptor,
    HypervisorProvider,
    StopMode,
    VMDescriptor,
    VMHandle,
    VMState,
)

DEFAULT_INSTALL_DIRS = [
    Path(r"C:\Program Files (x86)\VMware\VMware Workstation"),
    Path(r"C:\Program Files\VMware\VMware Workstation"),
]
DEFAULT_VMREST_URL = "http://127.0.0.1:8697/api"
VMREST_MEDIA_TYPE = "application/vnd.vmware.vmw.rest-v1+json"
DEFAULT_GUEST_OS = "windows11-64"

_VMX_LINE_RE = re.compile(r'^\s*([A-Za-z0-9_.:]+)\s*=\s*"(.*)"\s*$')


def norm_path(p: Any) -> str:
    return os.path.normcase(os.path.normpath(str(p)))


def read_vmx(path: Path) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in Path(path).read_text(encoding="utf-8", errors="replace").splitlines():
        m = _VMX_LINE_RE.match(line)
        if m:
            out[m.group(1).lower()] = m.group(2)
    return out


def render_vmx(d: VMDescriptor, *, guest_os: str = DEFAULT_GUEST_OS) -> str:
    kv: List[Tuple[str, str]] = [
        (".encoding", "UTF-8"),
        ("config.version", "8"),
        ("virtualHW.version", "19"),
        ("displayName", d.name),
        ("guestOS", guest_os),
        ("memsize", str(d.memory_mb)),
        ("numvcpus", str(int(d.processors))),
        ("firmware", "efi" if d.generation >= 2 else "bios"),
        ("nvme0.present", "TRUE"),
        ("nvme0:0.present", "TRUE"),
        ("nvme0:0.fileName", str(d.disk_path)),
        ("ethernet0.present", "TRUE"),
        ("ethernet0.connectionType", "nat"),
        ("ethernet0.virtualDev", "e1000e"),
        ("tools.syncTime", "FALSE"),
    ]
    if d.generation >= 2 and d.secure_boot:
        kv.append(("uefi.secureBoot.enabled", "TRUE"))
    if d.tpm:
        kv.append(("vtpm.present", "TRUE"))
    if d.media_path:
        kv.extend(
            [
                ("sata0.present", "TRUE"),
                ("sata0:1.present", "TRUE"),
                ("sata0:1.deviceType", "cdrom-image"),
                ("sata0:1.fileName", str(d.media_path)),
                ("sata0:1.startConnected", "TRUE"),
            ]
        )
    return "".join(f'{k} = "{v}"\n' for k, v in kv)


class VMwareWorkstationProvider(HypervisorProvider):
    name = "vmware"

    def __init__(
        self,
        logger,
        registry,
        *,
        vmrest_url: str = DEFAULT_VMREST_URL,
        vmrest_user: Optional[str] = None,
        vmrest_password: Optional[str] = None,
        install_dir: Optional[Path] = None,
        guest_os: str = DEFAULT_GUEST_OS,
        **kw: Any,
    ):
        super().__init__(logger, registry, **kw)
        self.vmrest_url = (vmrest_url or DEFAULT_VMREST_URL).rstrip("/")
        self.vmrest_user = vmrest_user
        self.vmrest_password = vmrest_password
        self.install_dir = Path(install_dir) if install_dir else None
        self.guest_os = guest_os
        self._mounted: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # tools
    # ------------------------------------------------------------------

    def _tool(self, exe: str) -> Optional[str]:
        found = U.which(exe)
        if found:
            return found
        dirs = ([self.install_dir] if self.install_dir else []) + DEFAULT_INSTALL_DIRS
        for d in dirs:
            for cand in (d / exe, d / f"{exe}.exe"):
                if cand.exists():
                    return str(cand)
        return None

    def _run(self, exe: str, *args: str, check: bool = True) -> str:
        tool = self._tool(exe)
        if not tool:
            raise FileNotFoundError(f"{exe} not found (is VMware Workstation installed?)")
        cp = U.run_cmd(self.logger, [tool, *args], check=check, capture=True)
        return (cp.stdout or "").strip()

    def _vmrun(self, *args: str, check: bool = True) -> str:
        return self._run("vmrun", "-T", "ws", *args, check=check)

    # ------------------------------------------------------------------
    # probes
    # ------------------------------------------------------------------

    def is_available(self) -> Tuple[bool, List[str]]:
        issues: List[str] = []
        for exe in ("vmrun", "vmware-vdiskmanager", "vmware-mount"):
            if not self._tool(exe):
                issues.append(f"{exe} not found")
        return (not issues), issues

    def get_capabilities(self) -> CapabilityDescriptor:
        return CapabilityDescriptor(
            backend=self.name,
            supports_tpm=True,
            supports_secure_boot=True,
            disk_formats=frozenset({"vmdk"}),
            max_memory_bytes=128 * GiB,
            max_processors=32,
            generations=frozenset({1, 2}),
            supports_dynamic_memory=False,
            supports_state_events=False,
            default_disk_format="vmdk",
        )

    def optional_enhancements(self) -> Dict[str, str]:
        if oi.REQUESTS_AVAILABLE:
            return {}
        return {"requests": "VM inventory comes from scanning .vmx files instead of the vmrest API"}

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def _vmx_path(self, d: VMDescriptor) -> Path:
        return Path(d.work_dir) / d.name / f"{d.name}.vmx"

    def handle_for_ref(self, ref: str) -> VMHandle:
        p = Path(ref)
        name = p.stem
        if p.exists():
            name = read_vmx(p).get("displayname", name)
        return VMHandle(name=name, ref=str(p), uid=norm_path(p), backend=self.name)

    def _running_vmx(self) -> List[str]:
        out = self._vmrun("list")
        # "Total running VMs: N" followed by one path per line
        return [norm_path(line.strip()) for line in out.splitlines()[1:] if line.strip()]

    def get_state(self, handle: VMHandle) -> VMState:
        vmx = Path(handle.ref)
        if not vmx.exists():
            return VMState.ABSENT
        if norm_path(vmx) in self._running_vmx():
            return VMState.RUNNING
        if vmx.with_suffix(".vmss").exists():
            return VMState.SAVED
        return VMState.OFF

    def _define_vm(self, d: VMDescriptor) -> VMHandle:
        vmx = self._vmx_path(d)
        if vmx.exists():
            raise ValueError(f"{vmx} already exists")
        U.ensure_dir(vmx.parent)
        vmx.write_text(render_vmx(d, guest_os=self.guest_os), encoding="utf-8")
        return VMHandle(name=d.name, ref=str(vmx), uid=norm_path(vmx), backend=self.name)

    def _start(self, handle: VMHandle) -> None:
        self._vmrun("start", handle.ref, "nogui")

    def _stop(self, handle: VMHandle, mode: StopMode) -> None:
        self._vmrun("stop", handle.ref, "hard" if mode == StopMode.FORCED else "soft")

    def _remove(self, handle: VMHandle) -> None:
        vmx = Path(handle.ref)
        self._vmrun("deleteVM", str(vmx), check=False)
        # deleteVM leaves the files when the VM was never registered
        if vmx.exists():
            for f in vmx.parent.glob(f"{vmx.stem}.*"):
                f.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # disks
    # ------------------------------------------------------------------

    def _create_disk(self, path: Path, size_bytes: int, disk_format: str) -> None:
        size_mb = max(1, int(size_bytes // MiB))
        # -t 0: single growable file
        self._run("vmware-vdiskmanager", "-c", "-s", f"{size_mb}MB", "-a", "nvme", "-t", "0", str(path))

    def _attach_disk(self, path: Path) -> Path:
        # vmware-mount attaches and assigns in one call
        return path

    def _assign_mount_point(self, path: Path, token: Any, attempt: int) -> Optional[Path]:
        # an earlier attempt may have mounted without becoming accessible
        self._detach_disk(path)
        free = [L for L in reversed(string.ascii_uppercase[3:]) if not os.path.exists(f"{L}:\\")]
        if len(free) < attempt:
            return None
        letter = free[attempt - 1]
        self._run("vmware-mount", f"{letter}:", str(path))
        self._mounted[norm_path(path)] = letter
        return Path(f"{letter}:\\")

    def _detach_disk(self, path: Path) -> None:
        letter = self._mounted.pop(norm_path(path), None)
        if letter is None:
            self.logger.debug("vmware: %s not mounted by this build; nothing to detach", path)
            return
        self._run("vmware-mount", f"{letter}:", "/d", "/f", check=False)

    # ------------------------------------------------------------------
    # discovery
    # ------------------------------------------------------------------

    @retry_with_backoff(max_attempts=2, base_backoff_s=0.5, exceptions=(OSError,))
    def _vmrest_get(self, path: str) -> Any:
        oi.require_requests()
        auth = (self.vmrest_user, self.vmrest_password) if self.vmrest_user else None
        r = oi.requests.get(
            f"{self.vmrest_url}{path}",
            auth=auth,
            headers={"Accept": VMREST_MEDIA_TYPE},
            timeout=5,
        )
        r.raise_for_status()
        return r.json()

    def _query_vms(self) -> List[VMHandle]:
        rows = self._vmrest_get("/vms") or []
        out: List[VMHandle] = []
        for r in rows:
            p = (r or {}).get("path")
            if not p:
                continue
            out.append(VMHandle(name=Path(p).stem, ref=str(p), uid=norm_path(p), backend=self.name, meta={"id": r.get("id")}))
        return out

    def _default_storage_roots(self) -> List[Path]:
        return [Path.home() / "Documents" / "Virtual Machines"]

    def _scan_vm_storage(self) -> List[VMHandle]:
        out: List[VMHandle] = []
        for root in self.scan_roots():
            if not root.is_dir():
                continue
            for vmx in list(root.glob("*.vmx")) + list(root.glob("*/*.vmx")):
                try:
                    name = read_vmx(vmx).get("displayname", vmx.stem)
                except OSError as e:
                    self.logger.debug("vmware: unreadable %s: %s", vmx, e)
                    name = vmx.stem
                out.append(VMHandle(name=name, ref=str(vmx), uid=norm_path(vmx), backend=self.name))
        self.logger.debug("vmware: storage scan found %d .vmx file(s)", len(out))
        return out

    def vm_exists(self, name: str) -> bool:
        if super().vm_exists(name):
            return True
        # vmrest only lists VMs opened in the Workstation library; ours may not be
        key = name.lower()
        return any(h.name.lower() == key or h.uid == norm_path(name) for h in self._scan_vm_storage())
