# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Config files become parser defaults; explicit CLI flags win.
"""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes.fake_logger import FakeLogger
from ffubuild.__main__ import main
from ffubuild.cli.args import parse_args_with_config
from ffubuild.config import BuildConfig
from ffubuild.core.exceptions import Fatal


class TwoPhaseCase(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.logger = FakeLogger()

    def tearDown(self):
        self._td.cleanup()

    def cfg(self, name, text):
        p = self.td / name
        p.write_text(text, encoding="utf-8")
        return p

    def parse(self, *argv):
        return parse_args_with_config(list(argv), logger=self.logger)


class TestConfigDefaults(TwoPhaseCase):
    def test_config_satisfies_work_dir(self):
        cfg = self.cfg("build.yaml", f"work_dir: {self.td / 'work'}\nvm-name: Win11-FFU\nmemory_gb: 16\n")
        args, conf, _ = self.parse("--config", str(cfg))

        self.assertEqual(Path(args.work_dir), self.td / "work")
        self.assertEqual(args.vm_name, "Win11-FFU")
        self.assertEqual(args.memory_gb, 16)
        self.assertIn("vm_name", conf)

    def test_cli_overrides_config(self):
        cfg = self.cfg("build.yaml", f"work_dir: {self.td}\nvm_name: FromFile\nkeep_vm: false\n")
        args, _, _ = self.parse("--config", str(cfg), "--vm-name", "FromCli", "--keep-vm")
        self.assertEqual(args.vm_name, "FromCli")
        self.assertTrue(args.keep_vm)

    def test_later_files_win_and_commands_merge(self):
        a = self.cfg("a.yaml", f"work_dir: {self.td}\nprocessors: 2\ncommands:\n  DriverDownload: get-drivers\n")
        b = self.cfg("b.json", '{"processors": 8, "commands": {"capture": ["dism", "/Capture-FFU"]}}')
        args, _, _ = self.parse("--config", str(a), "--config", str(b))

        self.assertEqual(args.processors, 8)
        config = BuildConfig.from_args(args)
        self.assertEqual(config.commands["DriverDownload"], ["get-drivers"])
        self.assertEqual(config.commands["FFUCapture"], ["dism", "/Capture-FFU"])

    def test_config_directory(self):
        d = self.td / "conf.d"
        d.mkdir()
        (d / "10-base.yaml").write_text(f"work_dir: {self.td}\nvm_name: base\n", encoding="utf-8")
        (d / "20-site.yml").write_text("vm_name: site\n", encoding="utf-8")
        (d / "README.txt").write_text("vm_name: ignored\n", encoding="utf-8")
        args, _, _ = self.parse("--config", str(d))
        self.assertEqual(args.vm_name, "site")

    def test_unknown_key_is_ignored_with_warning(self):
        cfg = self.cfg("build.yaml", f"work_dir: {self.td}\nflux_capacitor: on\n")
        args, _, _ = self.parse("--config", str(cfg))
        self.assertFalse(hasattr(args, "flux_capacitor"))
        self.assertTrue(any("flux_capacitor" in m for m in self.logger.messages("warning")))


class TestPhaseCommands(TwoPhaseCase):
    def test_phase_command_flag(self):
        args, _, _ = self.parse(
            "--work-dir", str(self.td),
            "--phase-command", "DriverDownload=pwsh -File 'C:/ffu/Get Drivers.ps1'",
            "--phase-command", "ffucreation=dism /Capture-FFU /ImageFile:{ffu}",
        )
        config = BuildConfig.from_args(args)
        self.assertEqual(config.commands["DriverDownload"], ["pwsh", "-File", "C:/ffu/Get Drivers.ps1"])
        self.assertEqual(config.commands["FFUCapture"][-1], "/ImageFile:{ffu}")

    def test_unknown_phase(self):
        cfg = self.cfg("build.yaml", f"work_dir: {self.td}\ncommands:\n  Defrag: defrag.exe\n")
        with self.assertRaises(Fatal) as cm:
            self.parse("--config", str(cfg))
        self.assertEqual(cm.exception.code, 2)

    def test_malformed_phase_command(self):
        with self.assertRaises(Fatal) as cm:
            self.parse("--work-dir", str(self.td), "--phase-command", "DriverDownload")
        self.assertEqual(cm.exception.code, 2)

    def test_commands_must_be_a_mapping(self):
        cfg = self.cfg("build.yaml", f"work_dir: {self.td}\ncommands: [a, b]\n")
        with self.assertRaises(Fatal):
            self.parse("--config", str(cfg))


class TestValidation(TwoPhaseCase):
    def test_work_dir_required(self):
        with self.assertRaises(Fatal) as cm:
            self.parse("--vm-name", "x")
        self.assertEqual(cm.exception.code, 2)

    def test_missing_config_file(self):
        with self.assertRaises(Fatal) as cm:
            self.parse("--config", str(self.td / "nope.yaml"))
        self.assertEqual(cm.exception.code, 2)

    def test_invalid_yaml(self):
        cfg = self.cfg("bad.yaml", "work_dir: [unclosed\n")
        with self.assertRaises(Fatal):
            self.parse("--config", str(cfg))

    def test_resume_flags_are_exclusive(self):
        with self.assertRaises(SystemExit) as cm:
            self.parse("--work-dir", str(self.td), "--resume", "--no-resume")
        self.assertEqual(cm.exception.code, 2)

    def test_resume_flags(self):
        args, _, _ = self.parse("--work-dir", str(self.td))
        self.assertIsNone(args.resume)
        args, _, _ = self.parse("--work-dir", str(self.td), "--no-resume")
        self.assertIs(args.resume, False)

    def test_provider_aliases(self):
        args, _, _ = self.parse("--work-dir", str(self.td), "--hypervisor", "workstation")
        self.assertEqual(BuildConfig.from_args(args).provider_options()["vmrest_user"], None)


class TestSecrets(TwoPhaseCase):
    def test_password_from_env(self):
        with patch.dict(os.environ, {"FFU_SHARE_PW": "s3cret!"}):
            args, _, _ = self.parse("--work-dir", str(self.td), "--capture-password-env", "FFU_SHARE_PW")
        self.assertEqual(args.capture_password, "s3cret!")

    def test_direct_value_wins(self):
        with patch.dict(os.environ, {"VMREST_PW": "from-env"}):
            args, _, _ = self.parse(
                "--work-dir", str(self.td), "--vmrest-password", "direct", "--vmrest-password-env", "VMREST_PW"
            )
        self.assertEqual(args.vmrest_password, "direct")

    def test_secrets_never_echoed(self):
        args, _, _ = self.parse("--work-dir", str(self.td), "--capture-password", "pw")
        echo = BuildConfig.from_args(args).echo()
        self.assertNotIn("capture_password", echo)
        self.assertNotIn("pw", echo.values())


class TestMainExitCodes(TwoPhaseCase):
    def test_invalid_values_exit_2(self):
        with self.assertRaises(SystemExit) as cm:
            main(["--work-dir", str(self.td), "--processors", "0"])
        self.assertEqual(cm.exception.code, 2)

    def test_missing_work_dir_exits_2(self):
        with self.assertRaises(SystemExit) as cm:
            main(["--vm-name", "x"])
        self.assertEqual(cm.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
