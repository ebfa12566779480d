# SPDX-License-Identifier: LGPL-3.0-or-later
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from ffubuild.core import optional_imports as oi
from ffubuild.core.cleanup import ResourceKind
from ffubuild.core.exceptions import UnsupportedConfiguration
from ffubuild.core.utils import U
from ffubuild.providers import StopMode, VMDescriptor, VMState
from ffubuild.providers.base import GiB
from ffubuild.providers.vmware import VMwareWorkstationProvider, norm_path, read_vmx, render_vmx


def _cp(stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr="")


def _descriptor(tmp_path, **kw):
    base = dict(
        name="_FFU-Build",
        work_dir=tmp_path / "VM",
        memory_bytes=8 * GiB,
        processors=4,
        disk_path=tmp_path / "VM" / "_FFU-Build.vmdk",
        disk_format="vmdk",
        media_path=tmp_path / "win.iso",
        tpm=True,
        secure_boot=True,
    )
    base.update(kw)
    return VMDescriptor(**base)


@pytest.fixture
def provider(logger, registry, tmp_path):
    p = VMwareWorkstationProvider(logger, registry, work_dir=tmp_path / "VM", poll_interval_s=0.01)
    # every tool resolves to its bare name
    with patch.object(VMwareWorkstationProvider, "_tool", side_effect=lambda exe: exe):
        yield p


@pytest.mark.unit
class TestVmx:
    def test_render_and_read(self, tmp_path):
        vmx = tmp_path / "a.vmx"
        vmx.write_text(render_vmx(_descriptor(tmp_path)), encoding="utf-8")
        kv = read_vmx(vmx)

        assert kv["displayname"] == "_FFU-Build"
        assert kv["memsize"] == "8192"
        assert kv["firmware"] == "efi"
        assert kv["uefi.secureboot.enabled"] == "TRUE"
        assert kv["vtpm.present"] == "TRUE"
        assert kv["sata0:1.devicetype"] == "cdrom-image"

    def test_bios_without_media(self, tmp_path):
        text = render_vmx(_descriptor(tmp_path, generation=1, secure_boot=False, tpm=False, media_path=None))
        assert 'firmware = "bios"' in text
        assert "secureBoot" not in text
        assert "sata0" not in text


@pytest.mark.unit
class TestLifecycle:
    def test_create_writes_vmx_and_registers(self, provider, registry, tmp_path):
        h = provider.create_vm(_descriptor(tmp_path))

        vmx = Path(h.ref)
        assert vmx == tmp_path / "VM" / "_FFU-Build" / "_FFU-Build.vmx"
        assert vmx.exists()
        assert h.uid == norm_path(vmx)
        assert registry.find(ResourceKind.VM, h.ref) is not None

    def test_vhdx_is_rejected(self, provider, tmp_path):
        with pytest.raises(UnsupportedConfiguration):
            provider.create_vm(_descriptor(tmp_path, disk_format="vhdx"))

    def test_state_from_vmrun_list(self, provider, tmp_path):
        h = provider.create_vm(_descriptor(tmp_path))
        with patch.object(U, "run_cmd", return_value=_cp(f"Total running VMs: 1\n{h.ref}\n")):
            assert provider.get_state(h) == VMState.RUNNING
        with patch.object(U, "run_cmd", return_value=_cp("Total running VMs: 0\n")):
            assert provider.get_state(h) == VMState.OFF
            Path(h.ref).with_suffix(".vmss").write_text("")
            assert provider.get_state(h) == VMState.SAVED

    def test_absent_when_vmx_missing(self, provider, tmp_path):
        h = provider.handle_for_ref(str(tmp_path / "gone.vmx"))
        assert h.name == "gone"
        assert provider.get_state(h) == VMState.ABSENT

    def test_stop_modes(self, provider, tmp_path):
        h = provider.create_vm(_descriptor(tmp_path))
        running = _cp(f"Total running VMs: 1\n{h.ref}\n")
        with patch.object(U, "run_cmd", return_value=running) as run:
            provider.stop_vm(h)
            provider.stop_vm(h, StopMode.FORCED)
        stops = [c.args[1] for c in run.call_args_list if "stop" in c.args[1]]
        assert stops[0][-1] == "soft"
        assert stops[1][-1] == "hard"

    def test_rollback_deletes_files(self, provider, registry, tmp_path):
        h = provider.create_vm(_descriptor(tmp_path))
        (Path(h.ref).parent / "_FFU-Build.nvram").write_text("")
        with patch.object(U, "run_cmd", return_value=_cp("Total running VMs: 0\n")):
            registry.execute_all("test")
        assert not Path(h.ref).exists()
        assert not (Path(h.ref).parent / "_FFU-Build.nvram").exists()


@pytest.mark.unit
class TestDisks:
    def test_create_disk_command(self, provider, tmp_path):
        with patch.object(U, "run_cmd", return_value=_cp()) as run:
            provider.create_virtual_disk(tmp_path / "VM" / "d.vmdk", 2 * GiB)
        cmd = run.call_args.args[1]
        assert cmd[:4] == ["vmware-vdiskmanager", "-c", "-s", "2048MB"]
        assert cmd[-1] == str(tmp_path / "VM" / "d.vmdk")

    def test_retry_detaches_previous_letter(self, provider, tmp_path):
        disk = tmp_path / "VM" / "d.vmdk"
        with patch("ffubuild.providers.vmware.os.path.exists", return_value=False), patch.object(
            U, "run_cmd", return_value=_cp()
        ) as run:
            first = provider._assign_mount_point(disk, disk, 1)
            second = provider._assign_mount_point(disk, disk, 2)

        cmds = [c.args[1] for c in run.call_args_list]
        assert cmds == [
            ["vmware-mount", "Z:", str(disk)],
            ["vmware-mount", "Z:", "/d", "/f"],
            ["vmware-mount", "Y:", str(disk)],
        ]
        assert (str(first), str(second)) == (str(Path("Z:\\")), str(Path("Y:\\")))
        assert provider._mounted == {norm_path(disk): "Y"}

    def test_detach_only_what_we_mounted(self, provider, tmp_path):
        with patch.object(U, "run_cmd", return_value=_cp()) as run:
            provider._detach_disk(tmp_path / "never.vmdk")
        run.assert_not_called()


@pytest.mark.unit
class TestDiscovery:
    def test_vmrest_inventory(self, provider):
        resp = MagicMock()
        resp.json.return_value = [{"id": "ABC", "path": "C:/VMs/win/win.vmx"}, {"id": "X"}]
        fake_requests = MagicMock()
        fake_requests.get.return_value = resp
        provider.vmrest_user = "admin"
        provider.vmrest_password = "pw"

        with patch.object(oi, "REQUESTS_AVAILABLE", True), patch.object(oi, "requests", fake_requests):
            found = provider.find_vms()

        assert [h.name for h in found] == ["win"]
        kw = fake_requests.get.call_args.kwargs
        assert kw["auth"] == ("admin", "pw")
        assert kw["headers"]["Accept"].startswith("application/vnd.vmware")

    def test_scan_without_requests(self, provider, tmp_path):
        provider.create_vm(_descriptor(tmp_path))
        with patch.object(oi, "REQUESTS_AVAILABLE", False):
            found = provider.find_vms("_ffu-build")
            assert "requests" in provider.optional_enhancements()
        assert len(found) == 1
        assert found[0].ref.endswith("_FFU-Build.vmx")


@pytest.mark.unit
def test_missing_tools(logger, registry):
    p = VMwareWorkstationProvider(logger, registry, install_dir=Path("/nonexistent"))
    with patch.object(U, "which", return_value=None):
        ok, issues = p.is_available()
    assert ok is False
    assert len(issues) == 3
