#!/usr/bin/env python3
"""
Tests for the command-line entry point.
"""

import io
import os
import sys
import tempfile
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import main
from feedscribe.core.constants import APP_VERSION


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.env = mock.patch.dict(os.environ)
        self.env.start()
        for key in list(os.environ):
            if key.startswith("FEEDSCRIBE_"):
                del os.environ[key]

    def tearDown(self):
        self.env.stop()
        self.tmp.cleanup()

    def test_parser_defaults(self):
        args = main.build_parser().parse_args(["talk.mp3"])
        self.assertEqual(args.file, Path("talk.mp3"))
        self.assertFalse(args.optimize)
        self.assertFalse(args.text)
        self.assertIsNone(args.credential_id)

    def test_parser_flags(self):
        args = main.build_parser().parse_args(
            ["talk.mp3", "--optimize", "--credential-id", "k2", "-v"])
        self.assertTrue(args.optimize)
        self.assertEqual(args.credential_id, "k2")
        self.assertTrue(args.verbose)

    def test_version(self):
        with mock.patch('sys.stdout', new_callable=io.StringIO) as out:
            with self.assertRaises(SystemExit):
                main.build_parser().parse_args(["--version"])
        self.assertIn(APP_VERSION, out.getvalue())

    def test_missing_file_exits_with_error(self):
        config_path = Path(self.tmp.name) / "config.json"
        config_path.write_text('{"speech_api_key": "gsk_test"}')
        log_file = Path(self.tmp.name) / "logs" / "app.log"

        with mock.patch('sys.stderr', new_callable=io.StringIO) as err:
            code = main.main([str(Path(self.tmp.name) / "missing.mp3"),
                              "--config", str(config_path), "--log-file", str(log_file)])

        self.assertEqual(code, 1)
        self.assertIn("Media file not found", err.getvalue())


if __name__ == "__main__":
    unittest.main()
