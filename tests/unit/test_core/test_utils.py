# SPDX-License-Identifier: LGPL-3.0-or-later
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from ffubuild.core.exceptions import Fatal
from ffubuild.core.utils import U


class TestUtilsFileOperations(unittest.TestCase):
    def test_ensure_dir_creates_nested_directory(self):
        with tempfile.TemporaryDirectory() as td:
            new_dir = Path(td) / "VM" / "nested"

            U.ensure_dir(new_dir)

            self.assertTrue(new_dir.is_dir())

    def test_ensure_dir_handles_existing(self):
        with tempfile.TemporaryDirectory() as td:
            U.ensure_dir(Path(td))
            self.assertTrue(Path(td).exists())

    def test_free_bytes_walks_up_to_existing_parent(self):
        with tempfile.TemporaryDirectory() as td:
            free = U.free_bytes(Path(td) / "does" / "not" / "exist")
            self.assertIsNotNone(free)
            self.assertGreater(free, 0)


class TestUtilsFormatting(unittest.TestCase):
    def test_human_bytes(self):
        self.assertEqual(U.human_bytes(None), "unknown")
        self.assertEqual(U.human_bytes(512), "512 B")
        self.assertEqual(U.human_bytes(1024 ** 3), "1.00 GiB")
        self.assertEqual(U.human_bytes(50 * 1024 ** 3), "50.00 GiB")

    def test_json_dump_is_sorted_and_handles_paths(self):
        out = U.json_dump({"b": 1, "a": Path("x")})
        self.assertLess(out.index('"a"'), out.index('"b"'))
        self.assertIn('"x"', out)

    def test_die_logs_and_raises_fatal(self):
        logger = Mock()
        with self.assertRaises(Fatal) as cm:
            U.die(logger, "bad config", 2)
        self.assertEqual(cm.exception.code, 2)
        logger.error.assert_called_once_with("bad config")


class TestRunCmd(unittest.TestCase):
    def setUp(self):
        self.logger = Mock()

    def test_capture(self):
        cp = U.run_cmd(self.logger, [sys.executable, "-c", "print('hello')"], capture=True)
        self.assertEqual(cp.returncode, 0)
        self.assertEqual(cp.stdout.strip(), "hello")

    def test_failure_reraises_without_fatal(self):
        with self.assertRaises(subprocess.CalledProcessError):
            U.run_cmd(self.logger, [sys.executable, "-c", "import sys; sys.exit(3)"], capture=True)

    def test_failure_wraps_into_fatal(self):
        with self.assertRaises(Fatal) as cm:
            U.run_cmd(self.logger, [sys.executable, "-c", "import sys; sys.exit(3)"], capture=True, fatal=True)
        self.assertEqual(cm.exception.code, 3)

    def test_stream_logs_each_line(self):
        cp = U.run_cmd(self.logger, [sys.executable, "-c", "print('a'); print('b')"], stream=True)
        self.assertEqual(cp.stdout.splitlines(), ["a", "b"])
        logged = [c.args[0] for c in self.logger.info.call_args_list]
        self.assertIn("a", logged)
        self.assertIn("b", logged)

    def test_stream_nonzero_raises(self):
        with self.assertRaises(subprocess.CalledProcessError):
            U.run_cmd(self.logger, [sys.executable, "-c", "import sys; sys.exit(1)"], stream=True)

    @patch("ffubuild.core.utils.subprocess.run", side_effect=FileNotFoundError("nope"))
    def test_missing_binary(self, _run):
        with self.assertRaises(OSError):
            U.run_cmd(self.logger, ["definitely-not-here"])
