"""
Tests for the command line entry points.
"""

import io
import json
import unittest
from unittest.mock import patch

from counselor import cli
from counselor.runlog import RunLogger

from fakes import make_config


class CliTest(unittest.TestCase):

    def setUp(self):
        self.cfg = make_config(["primary"])
        patcher = patch.object(cli, "load_engine_config", return_value=self.cfg)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _run(self, argv):
        out = io.StringIO()
        with patch("sys.stdout", out):
            code = cli.main(argv)
        return code, out.getvalue()

    def test_config_is_redacted_json(self):
        """Test that config prints JSON without raw API keys."""
        code, out = self._run(["config"])
        self.assertEqual(code, 0)
        data = json.loads(out)
        self.assertNotIn('"test"', out)
        self.assertIn("providers", data)

    def test_tail_filters_events(self):
        """Test that tail prints only the requested event."""
        logger = RunLogger(self.cfg.log_dir)
        logger.log("provider_retry", vendor="primary")
        logger.log("turn_state", state="done")
        code, out = self._run(["tail", "--event", "provider_retry"])
        self.assertEqual(code, 0)
        lines = [json.loads(l) for l in out.splitlines()]
        self.assertEqual([l["event"] for l in lines], ["provider_retry"])

    def test_tail_missing_log(self):
        """Test that tail reports a missing log file."""
        self.cfg.log_dir = self.cfg.log_dir + "-missing"
        code, _ = self._run(["tail"])
        self.assertEqual(code, 1)

    def test_parser_requires_command(self):
        """Test that a command is required."""
        with patch("sys.stderr", io.StringIO()):
            with self.assertRaises(SystemExit):
                cli.build_parser().parse_args([])
