# SPDX-License-Identifier: LGPL-3.0-or-later
import logging
import unittest
from unittest.mock import Mock

from ffubuild.messaging import Severity, new_messaging_context
from ffubuild.messaging.reporter import Reporter


class TestReporter(unittest.TestCase):
    def setUp(self):
        self.logger = Mock()
        self.logger.isEnabledFor.return_value = False
        self.ctx = new_messaging_context(logger=self.logger)
        self.rep = Reporter(self.logger, self.ctx, source="hyperv")

    def test_writes_to_log_and_channel(self):
        self.rep.warning("falling back to polling", vm="_FFU-Build")

        self.logger.log.assert_called_once()
        level, text = self.logger.log.call_args.args
        self.assertEqual(level, logging.WARNING)
        self.assertEqual(text, "falling back to polling")

        (m,) = self.ctx.drain()
        self.assertEqual(m.severity, Severity.WARNING)
        self.assertEqual(m.source, "hyperv")
        self.assertEqual(m.payload["vm"], "_FFU-Build")

    def test_bind_changes_source_only(self):
        other = self.rep.bind("cleanup")
        other.info("x")
        self.assertEqual(self.ctx.drain()[0].source, "cleanup")
        self.assertIs(other.ctx, self.ctx)

    def test_debug_skipped_unless_enabled(self):
        self.rep.debug("noise")
        self.assertEqual(self.ctx.pending(), 0)
        self.logger.isEnabledFor.return_value = True
        self.rep.debug("noise")
        self.assertEqual(self.ctx.drain()[0].severity, Severity.DEBUG)

    def test_progress(self):
        self.rep.progress(12.0, "Downloading drivers", phase="DriverDownload", eta_seconds=30.0)
        self.assertEqual(self.ctx.current_phase, "DriverDownload")
        (m,) = self.ctx.drain()
        self.assertEqual(m.percent, 12.0)
        self.assertEqual(m.source, "hyperv")

    def test_without_context_only_logs(self):
        rep = Reporter(self.logger, None)
        self.assertIsNone(rep.emit(Severity.ERROR, "boom"))
        self.assertIsNone(rep.progress(1, "x"))
        self.logger.log.assert_called()
