# SPDX-License-Identifier: LGPL-3.0-or-later
import json
import subprocess
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from fakes.fake_logger import FakeLogger
from ffubuild.core import optional_imports as oi
from ffubuild.core.cleanup import CleanupRegistry, ResourceKind
from ffubuild.core.utils import U
from ffubuild.providers import StopMode, VMDescriptor, VMHandle, VMState
from ffubuild.providers.base import GiB
from ffubuild.providers.hyperv import HyperVProvider, _as_list, ps_quote


def _cp(stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr="")


class PowerShellStub:
    """Answers run_cmd calls by the first matching script fragment."""

    def __init__(self, answers=None):
        self.answers = list(answers or [])
        self.scripts = []

    def __call__(self, logger, cmd, **kw):
        script = cmd[-1]
        self.scripts.append(script)
        for needle, out in self.answers:
            if needle in script:
                if isinstance(out, BaseException):
                    raise out
                return _cp(out)
        return _cp("")


class TestHelpers(unittest.TestCase):
    def test_ps_quote(self):
        self.assertEqual(ps_quote("O'Neil"), "'O''Neil'")
        self.assertEqual(ps_quote(Path("C:/x")), "'" + str(Path("C:/x")) + "'")

    def test_as_list(self):
        self.assertEqual(_as_list({"Name": "a"}), [{"Name": "a"}])
        self.assertEqual(_as_list([{"Name": "a"}, 3]), [{"Name": "a"}])
        self.assertEqual(_as_list(None), [])


class TestHyperVProvider(unittest.TestCase):
    def setUp(self):
        self.logger = FakeLogger()
        self.registry = CleanupRegistry(self.logger)
        self.p = HyperVProvider(self.logger, self.registry, use_events=False, poll_interval_s=0.01)
        self.handle = VMHandle(name="_FFU-Build", ref="_FFU-Build", uid="guid", backend="hyperv")

    def _stub(self, *answers):
        stub = PowerShellStub(answers)
        patcher = patch.object(U, "run_cmd", side_effect=stub)
        patcher.start()
        self.addCleanup(patcher.stop)
        return stub

    def test_state_mapping(self):
        for out, expected in (("Running", VMState.RUNNING), ("Off\r\n", VMState.OFF), ("", VMState.ABSENT), ("Merging", VMState.UNKNOWN)):
            with self.subTest(out=out):
                self._stub(("Get-VM", out))
                self.assertEqual(self.p.get_state(self.handle), expected)

    def test_create_vm_scripts(self):
        row = {"Name": "_FFU-Build", "Id": "6F1A-GUID", "Path": "C:\\FFU\\VM"}
        stub = self._stub(("New-VM", json.dumps(row)))
        d = VMDescriptor(
            name="_FFU-Build",
            work_dir=Path("C:/FFU/VM"),
            memory_bytes=8 * GiB,
            processors=4,
            disk_path=Path("C:/FFU/VM/_FFU-Build.vhdx"),
            media_path=Path("C:/FFU/win.iso"),
            tpm=True,
            secure_boot=True,
        )

        h = self.p.create_vm(d)

        self.assertEqual(h.uid, "6f1a-guid")
        self.assertIn(f"-MemoryStartupBytes {8 * GiB}", stub.scripts[0])
        self.assertIn("-Generation 2", stub.scripts[0])
        config = stub.scripts[1]
        self.assertIn("Set-VMProcessor -VMName '_FFU-Build' -Count 4", config)
        self.assertIn("Add-VMDvdDrive", config)
        self.assertIn("-EnableSecureBoot On", config)
        self.assertIn("Enable-VMTPM", config)
        self.assertIsNotNone(self.registry.find(ResourceKind.VM, "_FFU-Build"))

    def test_stop_modes(self):
        stub = self._stub(("Get-VM", "Running"))
        self.p.stop_vm(self.handle)
        self.p.stop_vm(self.handle, StopMode.FORCED)
        stops = [s for s in stub.scripts if s.startswith("Stop-VM")]
        self.assertIn("-Force", stops[0])
        self.assertNotIn("-TurnOff", stops[0])
        self.assertIn("-TurnOff", stops[1])

    def test_powershell_failure_becomes_provider_error(self):
        from ffubuild.core.exceptions import ProviderError

        err = subprocess.CalledProcessError(1, ["powershell.exe"], stderr="access denied")
        self._stub(("Get-VM", "Off"), ("Start-VM", err))
        with self.assertRaises(ProviderError):
            self.p.start_vm(self.handle)

    def test_attach_parses_disk_number(self):
        self._stub(("Get-VHD", "WARNING: noise\n3"))
        self.assertEqual(self.p._attach_disk(Path("d.vhdx")), 3)

    def test_attach_without_number(self):
        self._stub(("Get-VHD", ""))
        with self.assertRaises(OSError):
            self.p._attach_disk(Path("d.vhdx"))

    def test_first_mount_attempt_assigns_letter(self):
        stub = self._stub(("Get-Partition", "F"))
        self.assertEqual(self.p._assign_mount_point(Path("d.vhdx"), 3, 1), Path("F:\\"))
        self.assertIn("-AssignDriveLetter", stub.scripts[0])

    def test_mount_point_without_letter(self):
        self._stub(("Get-Partition", ""))
        self.assertIsNone(self.p._assign_mount_point(Path("d.vhdx"), 3, 1))

    def test_not_available_off_windows(self):
        with patch.object(U, "is_windows", return_value=False):
            ok, issues = self.p.is_available()
        self.assertFalse(ok)
        self.assertEqual(len(issues), 1)

    def test_probe_reports_each_issue(self):
        self._stub(("Get-Service", "Stopped"), ("Get-Command", ""), ("IsInRole", "False"))
        with patch.object(U, "is_windows", return_value=True), patch.object(U, "which", return_value="powershell.exe"):
            ok, issues = self.p.is_available()
        self.assertFalse(ok)
        self.assertEqual(len(issues), 3)

    def test_wmi_enhancement(self):
        with patch.object(oi, "WMI_AVAILABLE", False):
            self.assertIn("wmi", self.p.optional_enhancements())
            self.assertIsNone(self.p._subscribe_state_events(self.handle, lambda s: None))
        with patch.object(oi, "WMI_AVAILABLE", True):
            self.assertEqual(self.p.optional_enhancements(), {})

    def test_events_disabled_by_option(self):
        with patch.object(oi, "WMI_AVAILABLE", True):
            self.assertIsNone(self.p._subscribe_state_events(self.handle, lambda s: None))

    def test_event_subscription_delivers_states(self):
        fake_wmi = MagicMock()
        fake_wmi.x_wmi_timed_out = type("x_wmi_timed_out", (Exception,), {})
        calls = []

        def watcher(timeout_ms):
            calls.append(timeout_ms)
            if len(calls) == 1:
                return MagicMock(EnabledState=3)
            time.sleep(0.01)
            raise fake_wmi.x_wmi_timed_out()

        fake_wmi.WMI.return_value.Msvm_ComputerSystem.watch_for.return_value = watcher
        delivered = threading.Event()
        seen = []

        def on_state(state):
            seen.append(state)
            delivered.set()

        p = HyperVProvider(self.logger, self.registry, use_events=True)
        with patch.object(oi, "WMI_AVAILABLE", True), patch.object(oi, "wmi", fake_wmi), patch.object(oi, "pythoncom", MagicMock()):
            unsubscribe = p._subscribe_state_events(self.handle, on_state)
            self.assertIsNotNone(unsubscribe)
            self.assertTrue(delivered.wait(5))
            unsubscribe()

        self.assertEqual(seen[0], VMState.OFF)

    def test_storage_scan(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "AAAA-1111.vmcx").write_text("")
            nested = root / "_FFU-Build" / "Virtual Machines"
            nested.mkdir(parents=True)
            (nested / "BBBB-2222.vmcx").write_text("")

            p = HyperVProvider(self.logger, self.registry, search_roots=[root])
            with patch.object(U, "which", return_value=None):
                found = p.find_vms()
                self.assertTrue(p.vm_exists("_ffu-build"))

        self.assertEqual(sorted(h.name for h in found), ["_FFU-Build", "aaaa-1111"])
        self.assertEqual(sorted(h.uid for h in found), ["aaaa-1111", "bbbb-2222"])
