# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Unit tests for the CLI parser, its custom argparse actions and the LogParams/Params configuration classes."""

from __future__ import (
    annotations,
)
import argparse
import os
import stat
import unittest
from unittest.mock import (
    patch,
)

from apfsclone_main import (
    argparse_actions,
    argparse_cli,
)
from apfsclone_main.configuration import (
    LogParams,
)
from apfsclone_main.utils import (
    DIE_STATUS,
    DIR_PERMISSIONS,
)
from apfsclone_tests.abstract_testcase import (
    AbstractTestCase,
)
from apfsclone_tests.tools import (
    suppress_output,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestArgumentParser,
        TestNonEmptyStringAction,
        TestSafeFileNameAction,
        TestSafeDirectoryNameAction,
        TestDurationAction,
        TestLogParams,
        TestParams,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestArgumentParser(unittest.TestCase):

    def test_defaults(self) -> None:
        args = argparse_cli.argument_parser().parse_args(["Data", "Backup1", "Backup2"])
        self.assertEqual("Data", args.source)
        self.assertEqual(["Backup1", "Backup2"], args.destinations)
        self.assertFalse(args.prune)
        self.assertFalse(args.dryrun)
        self.assertFalse(args.check_only)
        self.assertIsNone(args.timeout)
        self.assertEqual("diskutil", args.diskutil_program)
        self.assertEqual("asr", args.asr_program)
        self.assertEqual("sudo", args.sudo_program)
        self.assertEqual(0, args.verbose)

    def test_flags(self) -> None:
        args = argparse_cli.argument_parser().parse_args(
            ["--prune", "-n", "--check-only", "--timeout=2 hours", "-v", "-v", "/Volumes/Data", "disk5s1"]
        )
        self.assertTrue(args.prune)
        self.assertTrue(args.dryrun)
        self.assertTrue(args.check_only)
        self.assertEqual(7200, args.timeout)
        self.assertEqual(5 * 60, args.diskutil_timeout)
        self.assertEqual(2, args.verbose)
        self.assertEqual("/Volumes/Data", args.source)

    def test_missing_destination(self) -> None:
        with self.assertRaises(SystemExit), suppress_output():
            argparse_cli.argument_parser().parse_args(["Data"])

    def test_version(self) -> None:
        with self.assertRaises(SystemExit) as cm, suppress_output():
            argparse_cli.argument_parser().parse_args(["--version"])
        self.assertEqual(0, cm.exception.code)


#############################################################################
class TestNonEmptyStringAction(unittest.TestCase):

    def setUp(self) -> None:
        self.parser = argparse.ArgumentParser()
        self.parser.add_argument("--name", action=argparse_actions.NonEmptyStringAction)

    def test_strips_whitespace(self) -> None:
        self.assertEqual("foo", self.parser.parse_args(["--name", "  foo "]).name)

    def test_empty_string(self) -> None:
        for value in ("", "   "):
            with self.subTest(value=value):
                with self.assertRaises(SystemExit), suppress_output():
                    self.parser.parse_args(["--name", value])


#############################################################################
class TestSafeFileNameAction(unittest.TestCase):

    def setUp(self) -> None:
        self.parser = argparse.ArgumentParser()
        self.parser.add_argument("filename", action=argparse_actions.SafeFileNameAction)

    def test_safe_filename(self) -> None:
        self.assertEqual("crun_ daily", self.parser.parse_args(["crun_ daily"]).filename)

    def test_unsafe_filename(self) -> None:
        for value in ("../escape", "sub/dir", "back\\slash", "tab\tname", "new\nline"):
            with self.subTest(value=value):
                with self.assertRaises(SystemExit), suppress_output():
                    self.parser.parse_args([value])


#############################################################################
class TestSafeDirectoryNameAction(unittest.TestCase):

    def setUp(self) -> None:
        self.parser = argparse.ArgumentParser()
        self.parser.add_argument("--dir", action=argparse_actions.SafeDirectoryNameAction)

    def test_valid_dir(self) -> None:
        self.assertEqual("/tmp/apfsclone-logs", self.parser.parse_args(["--dir", " /tmp/apfsclone-logs "]).dir)

    def test_invalid_dir(self) -> None:
        for value in ("", "/tmp/a\tb"):
            with self.subTest(value=value):
                with self.assertRaises(SystemExit), suppress_output():
                    self.parser.parse_args(["--dir", value])


#############################################################################
class TestDurationAction(unittest.TestCase):

    def setUp(self) -> None:
        self.parser = argparse.ArgumentParser()
        self.parser.add_argument("--timeout", action=argparse_actions.DurationAction)

    def test_valid_durations(self) -> None:
        for value, expected in (("600 seconds", 600), ("90minutes", 5400), ("2 hours", 7200), ("1 days", 86400)):
            with self.subTest(value=value):
                self.assertEqual(expected, self.parser.parse_args(["--timeout", value]).timeout)

    def test_invalid_durations(self) -> None:
        for value in ("0 seconds", "forever", "-5 seconds", "10"):
            with self.subTest(value=value):
                with self.assertRaises(SystemExit), suppress_output():
                    self.parser.parse_args(["--timeout", value])


#############################################################################
class TestLogParams(AbstractTestCase):

    def test_logdir_basename_must_contain_default(self) -> None:
        logdir = os.path.join(self.tmp_dir, argparse_cli.LOG_DIR_DEFAULT + "-tmp")
        LogParams(argparse_cli.argument_parser().parse_args(["src", "dst", "--log-dir=" + logdir]))
        self.assertTrue(os.path.isdir(logdir))

        logdir = os.path.join(self.tmp_dir, "apfsclone-tmp")
        with self.assertRaises(SystemExit) as cm:
            LogParams(argparse_cli.argument_parser().parse_args(["src", "dst", "--log-dir=" + logdir]))
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertFalse(os.path.exists(logdir))

    def test_logdir_must_not_be_symlink(self) -> None:
        target = os.path.join(self.tmp_dir, "target")
        os.mkdir(target, DIR_PERMISSIONS)
        link_path = os.path.join(self.tmp_dir, argparse_cli.LOG_DIR_DEFAULT + "-link")
        os.symlink(target, link_path)
        with self.assertRaises(SystemExit) as cm:
            LogParams(argparse_cli.argument_parser().parse_args(["src", "dst", "--log-dir=" + link_path]))
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertIn("--log-dir must not be a symlink", str(cm.exception))

    def test_log_file_layout(self) -> None:
        args = self.argparser_parse_args(["src", "dst", "--log-file-prefix=xrun_", "--log-file-suffix=_weekly"])
        lp = LogParams(args)
        self.assertEqual(self.log_dir, lp.log_parent_dir)
        self.assertEqual(os.path.join(self.log_dir, lp.timestamp[0:10]), lp.log_dir)  # daily subdir
        self.assertTrue(os.path.isfile(lp.log_file))
        self.assertEqual(os.path.dirname(lp.log_file), lp.log_dir)
        basename = os.path.basename(lp.log_file)
        self.assertTrue(basename.startswith(f"xrun_{lp.timestamp}_weekly-"))
        self.assertTrue(basename.endswith(".log"))
        self.assertRegex(lp.logger_name_suffix, r"^[A-Za-z0-9_]+$")
        self.assertEqual(0o600, stat.S_IMODE(os.stat(lp.log_file).st_mode))

    def test_current_log_symlink_points_to_latest_log_file(self) -> None:
        lp1 = LogParams(self.argparser_parse_args(["src", "dst"]))
        lp2 = LogParams(self.argparser_parse_args(["src", "dst", "--log-subdir=minutely"]))
        current = os.path.join(self.log_dir, "current.log")
        self.assertTrue(os.path.islink(current))
        self.assertEqual(os.path.realpath(lp2.log_file), os.path.realpath(current))
        self.assertNotEqual(os.path.realpath(lp1.log_file), os.path.realpath(current))
        self.assertEqual([], [name for name in os.listdir(self.log_dir) if name.endswith(".tmp")])


#############################################################################
class TestParams(AbstractTestCase):

    def test_params(self) -> None:
        args = self.argparser_parse_args(["--prune", "--timeout=90 seconds", "Data", " Backup1 ", "Backup2"])
        p = self.make_params(args)
        self.assertEqual("Data", p.source)
        self.assertEqual(["Backup1", "Backup2"], p.destinations)
        self.assertTrue(p.prune)
        self.assertFalse(p.dry_run)
        self.assertEqual(90, p.timeout_secs)
        self.assertEqual(300, p.diskutil_timeout_secs)
        self.assertEqual(self.lock_dir, p.lock_dir)
        self.assertTrue(os.path.isdir(self.lock_dir))
        uuid = "21CF5985-FA46-42AF-9872-52CDE74B04DE"
        self.assertEqual(os.path.join(self.lock_dir, f"apfsclone-{uuid}.lock"), p.lock_file_name(uuid))

    def test_empty_destination(self) -> None:
        args = self.argparser_parse_args(["Data", "Backup1", "  "])
        with self.assertRaises(SystemExit) as cm:
            self.make_params(args)
        self.assertEqual(DIE_STATUS, cm.exception.code)

    def test_source_is_normalized_like_destinations(self) -> None:
        args = self.argparser_parse_args(["Data", "Backup1"])
        args.source = "  /Volumes/Data\t"  # Namespace built by a Python client, bypassing the CLI actions
        self.assertEqual("/Volumes/Data", self.make_params(args).source)
        args.source = "   "
        with self.assertRaises(SystemExit) as cm:
            self.make_params(args)
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertIn("SOURCE: Empty string is not valid", str(cm.exception))

    def test_default_lock_dir_is_below_log_dir(self) -> None:
        args = argparse_cli.argument_parser().parse_args(["Data", "Backup1", "--log-dir", self.log_dir])
        lp = LogParams(args)
        p = self.make_params(args, log_params=lp)
        self.assertEqual(os.path.join(self.log_dir, ".locks"), p.lock_dir)
        self.assertTrue(os.path.isdir(p.lock_dir))

    def test_lock_dir_must_not_be_symlink(self) -> None:
        target = os.path.join(self.tmp_dir, "target")
        os.mkdir(target, DIR_PERMISSIONS)
        os.symlink(target, self.lock_dir)
        with self.assertRaises(SystemExit) as cm:
            self.make_params(self.argparser_parse_args(["Data", "Backup1"]))
        self.assertIn("--lock-dir must not be a symlink", str(cm.exception))

    def test_sudo_prefix(self) -> None:
        args = self.argparser_parse_args(["Data", "Backup1", "--sudo-program=-"])
        self.assertEqual([], self.make_params(args).sudo_prefix)

        args = self.argparser_parse_args(["Data", "Backup1", "--sudo-program=/usr/bin/sudo"])
        with patch("apfsclone_main.configuration.validate_file_permissions"):
            with patch("os.geteuid", return_value=501):
                self.assertEqual(["/usr/bin/sudo"], self.make_params(args).sudo_prefix)
            with patch("os.geteuid", return_value=0):
                self.assertEqual([], self.make_params(args).sudo_prefix)
