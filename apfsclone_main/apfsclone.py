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
# Inline script metadata conforming to https://packaging.python.org/specifications/inline-script-metadata
# /// script
# requires-python = ">=3.9"
# dependencies = []
# ///
#
"""
* Main CLI entry point for cloning APFS volumes; the engine lives in the cloner, planner and validation modules.
* Overview of the apfsclone.py codebase:
* The codebase starts with docs, definition of input data and associated argument parsing into a "Params" class.
* All CLI option/parameter values are reachable from the "Params" class.
* Control flow starts in main(), which kicks off a "Job".
* A Job first validates that the source can be cloned onto every destination, then clones each destination in turn.
* A lock file per destination volume ensures that at most one run writes to a given destination at any time.
* The diskutil and asr adapters can be replaced with test doubles via run_main(), which keeps the Job testable without
  macOS.
"""

from __future__ import (
    annotations,
)
import argparse
import fcntl
import os
import sys
from logging import (
    Logger,
)
from pathlib import (
    Path,
)
from typing import (
    Any,
    Callable,
)

from apfsclone_main.argparse_cli import (
    argument_parser,
)
from apfsclone_main.asr import (
    ASR,
)
from apfsclone_main.cloner import (
    Cloner,
)
from apfsclone_main.configuration import (
    LogParams,
    Params,
)
from apfsclone_main.diskutil import (
    DiskUtil,
)
from apfsclone_main.errors import (
    CloneError,
    CommandError,
    PruneFailed,
)
from apfsclone_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from apfsclone_main.planner import (
    ReplicationPlan,
)
from apfsclone_main.utils import (
    DIE_STATUS,
    FILE_PERMISSIONS,
    LOG_TRACE,
    PROG_NAME,
    STILL_RUNNING_STATUS,
    die,
    xfinally,
)
from apfsclone_main.volumes import (
    ReplicationExecutor,
    Volume,
    VolumeDirectory,
)


#############################################################################
def main() -> None:
    """API for command line clients."""
    run_main(argument_parser().parse_args(), sys.argv)


def run_main(
    args: argparse.Namespace,
    sys_argv: list[str] | None = None,
    log: Logger | None = None,
    directory: VolumeDirectory | None = None,
    executor: ReplicationExecutor | None = None,
) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    Job(directory=directory, executor=executor).run_main(args, sys_argv, log)


#############################################################################
class Job:
    """Executes one apfsclone run: validates all destinations, then clones the source onto each destination in turn."""

    def __init__(self, directory: VolumeDirectory | None = None, executor: ReplicationExecutor | None = None) -> None:
        self.params: Params
        self.directory: VolumeDirectory | None = directory  # None means use diskutil
        self.executor: ReplicationExecutor | None = executor  # None means use asr
        self.plans: list[ReplicationPlan] = []  # plans carried out so far, in destination order

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging, then validates and clones, mapping every failure to a logged SystemExit."""
        owns_logger: bool = log is None
        try:
            log_params = LogParams(args)
            log = get_logger(log_params=log_params, args=args, log=log)
            log.info("%s", f"Log file is: {log_params.log_file}")
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise

        def cleanup() -> None:
            if owns_logger:
                reset_logger(log)

        def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
            log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

        with xfinally(cleanup):  # runs cleanup() on exit, without masking exception raised in body of `with` block
            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = Params(args, sys_argv or [], log_params, log)
                self.run_tasks()
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except PruneFailed as e:
                log_error_on_exit(f"Replication succeeded but pruning failed: {e}", DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except (CloneError, CommandError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            finally:
                log.info("%s", f"Log file was: {log_params.log_file}")
            log.info("Success. Goodbye!")
            sys.stderr.flush()

    def run_tasks(self) -> None:
        """Validates the source against all destinations up front, then clones each destination sequentially."""
        p, log = self.params, self.params.log
        if self.directory is None:
            self.directory = DiskUtil(log, program=p.diskutil_program, sudo=p.sudo_prefix, timeout=p.diskutil_timeout_secs)
        if self.executor is None:
            self.executor = ASR(log, program=p.asr_program, sudo=p.sudo_prefix, timeout=p.timeout_secs)
        cloner = Cloner(self.directory, self.executor, log, prune=p.prune, dry_run=p.dry_run)

        src, dsts = cloner.cloneable(p.source, *p.destinations)
        log.info("Source %s can be cloned onto: %s", src, ", ".join(str(dst) for dst in dsts))
        if p.check_only:
            return
        for i, (identifier, dst) in enumerate(zip(p.destinations, dsts)):
            log.info("%s", f"Cloning {src} onto destination {i + 1}/{len(dsts)}: {dst}")
            self.clone_with_lock(dst, lambda identifier=identifier: cloner.clone(p.source, identifier))

    def clone_with_lock(self, dst: Volume, clone: Callable[[], ReplicationPlan]) -> None:
        """Runs clone() while holding the exclusive lock of the destination volume; exits if another run holds it."""
        if self.params.dry_run:
            self.plans.append(clone())
            return
        lock_file: str = self.params.lock_file_name(dst.uuid)
        lock_fd = os.open(lock_file, os.O_WRONLY | os.O_TRUNC | os.O_CREAT | os.O_NOFOLLOW, FILE_PERMISSIONS)
        with xfinally(lambda: os.close(lock_fd)):
            try:
                # Acquire an exclusive lock; will raise an error if lock is already held by another process.
                # The (advisory) lock is auto-released when the process terminates or the fd is closed.
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # LOCK_NB ... non-blocking
            except BlockingIOError:
                msg = f"Exiting as another {PROG_NAME} run is still writing to destination {dst} per "
                die(msg + lock_file, STILL_RUNNING_STATUS)
            with xfinally(lambda: Path(lock_file).unlink(missing_ok=True)):  # don't accumulate stale files
                self.plans.append(clone())
