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
"""Test case base class used by most unit tests; provides CLI argument parsing with a throwaway log directory."""

from __future__ import (
    annotations,
)
import argparse
import logging
import os
import shutil
import tempfile
import unittest
from unittest.mock import (
    MagicMock,
)

from apfsclone_main import (
    argparse_cli,
    configuration,
)


#############################################################################
class AbstractTestCase(unittest.TestCase):

    def setUp(self) -> None:
        super().setUp()
        self.tmp_dir: str = tempfile.mkdtemp(prefix="apfsclone_test_")
        self.addCleanup(shutil.rmtree, self.tmp_dir, ignore_errors=True)
        self.log_dir: str = os.path.join(self.tmp_dir, argparse_cli.LOG_DIR_DEFAULT + "-test")
        self.lock_dir: str = os.path.join(self.tmp_dir, "locks")

    def argparser_parse_args(self, args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(args + ["--log-dir", self.log_dir, "--lock-dir", self.lock_dir])

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
    ) -> configuration.Params:
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, sys_argv=[], log_params=log_params, log=log)
