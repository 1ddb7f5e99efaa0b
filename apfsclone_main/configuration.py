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
"""Configuration subsystem; All CLI option/parameter values are reachable from the "Params" class."""

from __future__ import (
    annotations,
)
import argparse
import os
import re
import tempfile
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

from apfsclone_main.argparse_cli import (
    DISABLE_PRG,
    LOG_DIR_DEFAULT,
)
from apfsclone_main.utils import (
    DIR_PERMISSIONS,
    FILE_PERMISSIONS,
    PROG_NAME,
    die,
    get_home_directory,
    validate_file_permissions,
    validate_is_not_a_symlink,
)

# constants:
HOME_DIRECTORY: Final[str] = get_home_directory()


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.timestamp: Final[str] = datetime.now().isoformat(sep="_", timespec="seconds")  # 2024-09-03_12:26:15
        self.quiet: Final[bool] = args.quiet
        self.home_dir: Final[str] = HOME_DIRECTORY
        log_parent_dir: Final[str] = args.log_dir if args.log_dir else os.path.join(self.home_dir, LOG_DIR_DEFAULT)
        if LOG_DIR_DEFAULT not in os.path.basename(log_parent_dir):
            die(f"Basename of --log-dir must contain the substring '{LOG_DIR_DEFAULT}', but got: {log_parent_dir}")
        self.log_parent_dir: Final[str] = log_parent_dir
        sep: str = "_" if args.log_subdir == "daily" else ":"
        timestamp: str = self.timestamp
        subdir: str = timestamp[0 : timestamp.rindex(sep) if args.log_subdir == "minutely" else timestamp.index(sep)]
        # 2024-09-03 (d), 2024-09-03_12 (h), 2024-09-03_12:26 (m)
        self.log_dir: Final[str] = os.path.join(log_parent_dir, subdir)
        os.makedirs(log_parent_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--log-dir ", log_parent_dir)
        validate_file_permissions(log_parent_dir, DIR_PERMISSIONS)
        os.makedirs(self.log_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--log-dir subdir ", self.log_dir)
        validate_file_permissions(self.log_dir, DIR_PERMISSIONS)
        self.log_file_prefix: Final[str] = args.log_file_prefix
        self.log_file_suffix: Final[str] = args.log_file_suffix
        fd, self.log_file = tempfile.mkstemp(
            suffix=".log",
            prefix=f"{self.log_file_prefix}{self.timestamp}{self.log_file_suffix}-",
            dir=self.log_dir,
        )
        os.fchmod(fd, FILE_PERMISSIONS)
        os.close(fd)
        log_file_stem: str = os.path.basename(self.log_file)[0 : -len(".log")]
        # Python's standard logger naming API interprets chars such as '.', '-', ':', spaces, etc in special ways, e.g.
        # logging.getLogger("foo.bar") vs logging.getLogger("foo-bar"). Thus, we sanitize the Python logger name via a regex:
        self.logger_name_suffix: Final[str] = re.sub(r"[^A-Za-z0-9_]", repl="_", string=log_file_stem)

        # Create/update "current.log" symlink to the most recent log file; the atomic rename ensures there is no time
        # window when the symlink does not exist.
        current: str = os.path.join(log_parent_dir, "current.log")
        tmp_link: str = f"{current}.{log_file_stem}.tmp"
        try:
            os.symlink(os.path.relpath(self.log_file, start=log_parent_dir), tmp_link)
            os.replace(tmp_link, current)  # atomic rename
        except FileNotFoundError:
            pass  # harmless concurrent cleanup

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(self, args: argparse.Namespace, sys_argv: list[str], log_params: LogParams, log: Logger) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert args is not None
        assert isinstance(sys_argv, list)
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.sys_argv: Final[list[str]] = sys_argv
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log

        assert len(args.destinations) > 0
        self.source: Final[str] = args.source.strip()
        if self.source == "":
            die("SOURCE: Empty string is not valid")
        self.destinations: Final[list[str]] = [destination.strip() for destination in args.destinations]
        for destination in self.destinations:
            if destination == "":
                die("DESTINATION: Empty string is not valid")
        self.prune: Final[bool] = args.prune
        self.dry_run: Final[bool] = args.dryrun
        self.check_only: Final[bool] = args.check_only
        self.timeout_secs: Final[float | None] = args.timeout
        self.diskutil_timeout_secs: Final[float] = args.diskutil_timeout
        self.diskutil_program: Final[str] = args.diskutil_program
        self.asr_program: Final[str] = args.asr_program
        self.sudo_program: Final[str] = args.sudo_program
        self.sudo_prefix: Final[list[str]] = (
            [] if self.sudo_program == DISABLE_PRG or os.geteuid() == 0 else [self.sudo_program]
        )
        lock_dir: str = args.lock_dir if args.lock_dir else os.path.join(log_params.log_parent_dir, ".locks")
        os.makedirs(lock_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--lock-dir ", lock_dir)
        validate_file_permissions(lock_dir, DIR_PERMISSIONS)
        self.lock_dir: Final[str] = lock_dir

    def lock_file_name(self, volume_uuid: str) -> str:
        """Returns the path of the lock file that serializes all runs writing to the given destination volume."""
        return os.path.join(self.lock_dir, f"{PROG_NAME}-{volume_uuid}.lock")

    def __repr__(self) -> str:
        return str(self.__dict__)
