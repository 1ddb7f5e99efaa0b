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
"""Documentation, definition of input data and ArgumentParser used by the 'apfsclone' CLI."""

from __future__ import annotations
import argparse

from apfsclone_main.argparse_actions import (
    DurationAction,
    NonEmptyStringAction,
    SafeDirectoryNameAction,
    SafeFileNameAction,
)
from apfsclone_main.utils import (
    PROG_NAME,
)

# constants:
__version__: str = "1.0.0"
PROG_AUTHOR: str = "Wolfgang Hoschek"
LOG_DIR_DEFAULT: str = PROG_NAME + "-logs"
DISABLE_PRG: str = "-"
DISKUTIL_TIMEOUT_SECS_DEFAULT: float = 5 * 60


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by apfsclone."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} is a command line tool that clones a macOS APFS volume onto one or more destination APFS volumes
by replicating the newest APFS snapshot of the source volume, using diskutil and asr (Apple Software Restore).*

For each destination, {PROG_NAME} compares the snapshot history of the source with the snapshot history of the
destination and picks the cheapest way to bring the destination up to date:

* If the destination already contains the newest source snapshot, nothing is done.
* If source and destination share a snapshot, only the changes between the most recent shared snapshot and the
newest source snapshot are transferred (incremental restore). All existing destination snapshots are preserved.
* Otherwise, the entire content and snapshot history of the destination is erased and replaced with the newest
source snapshot (full restore).

Before touching any destination, {PROG_NAME} checks that every destination volume exists, is listed only once,
differs from the source, is mounted writable, is an APFS volume, and has the same case sensitivity as the source.
The snapshot listings are verified to be strictly ordered by creation time; the creation time is parsed from the
`yyyy-mm-dd-hhmmss` timestamp embedded in each snapshot name, as created by tools such as Carbon Copy Cloner.

The source is treated as read-only. With the --dryrun flag, the destinations are also treated as read-only.
Destinations are processed one at a time, and a lock file per destination volume prevents two {PROG_NAME}
processes from writing to the same destination concurrently.

# Quickstart

* Check whether the volume 'Data' can be cloned onto the volumes 'Backup1' and 'Backup2':

`   {PROG_NAME} --check-only Data Backup1 Backup2`

* Show what would happen, without changing anything:

`   {PROG_NAME} --dryrun Data Backup1`

* Clone the volume mounted at /Volumes/Data onto the volume with device node /dev/disk5s1, then delete all
destination snapshots other than the newly replicated one:

`   {PROG_NAME} --prune /Volumes/Data /dev/disk5s1`

Volumes can be identified by volume UUID, volume name, mount point, device node (e.g. /dev/disk5s1) or device
identifier (e.g. disk5s1). An identifier that matches more than one volume, such as a volume name that is used twice,
is rejected as ambiguous.
""")

    parser.add_argument(
        "source", metavar="SOURCE", action=NonEmptyStringAction,
        help="Identifier of the source volume.\n\n")
    parser.add_argument(
        "destinations", nargs="+", metavar="DESTINATION",
        help="Identifiers of one or more destination volumes.\n\n")
    parser.add_argument(
        "--prune", action="store_true",
        help="After a successful replication, delete every destination snapshot except the newly replicated one "
             "(optional). Deletion proceeds oldest first and stops at the first failure, reporting the snapshots that "
             "remain. If the destination was already up to date, nothing is pruned.\n\n")
    parser.add_argument(
        "--dryrun", "-n", action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real (optional). This option treats both the source and the destinations as read-only.\n\n")
    parser.add_argument(
        "--check-only", action="store_true",
        help="Only check whether the source can be cloned onto all destinations, then exit (optional).\n\n")
    parser.add_argument(
        "--timeout", default=None, action=DurationAction, metavar="DURATION",
        help="Maximum amount of time each asr restore may take (optional). If the timeout is exceeded, the restore "
             "process is terminated and the destination may be left in an inconsistent state. Examples: '600 seconds', "
             "'90 minutes', '2 hours'. Default is to wait forever.\n\n")
    parser.add_argument(
        "--diskutil-timeout", default=DISKUTIL_TIMEOUT_SECS_DEFAULT, action=DurationAction, metavar="DURATION",
        help="Maximum amount of time each diskutil invocation may take (optional). diskutil only inspects volumes, "
             "deletes snapshots and renames volumes, so it normally completes within seconds; a diskutil that hangs is "
             "terminated and reported as an error. Default is 5 minutes.\n\n")
    parser.add_argument(
        "--lock-dir", default=None, action=SafeDirectoryNameAction, metavar="DIR",
        help="Directory that holds one lock file per destination volume (optional). Default is the '.locks' "
             "subdirectory of --log-dir.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. To print what diskutil and asr operation exactly is happening (or would happen), add the `-v` "
             "flag, maybe along with --dryrun. All commands are logged such that they can be inspected, "
             "copy-and-pasted into a terminal shell and run manually to help anticipate or diagnose issues. "
             "ERROR, WARN, INFO, DEBUG, TRACE output lines are identified by [E], [W], [I], [D], [T] prefixes, "
             "respectively.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")

    def hlp(program: str) -> str:
        return f"The name of the '{program}' executable (optional). Default is '{program}'. "

    parser.add_argument(
        "--diskutil-program", default="diskutil", action=NonEmptyStringAction, metavar="STRING",
        help=hlp("diskutil") + "\n\n")
    parser.add_argument(
        "--asr-program", default="asr", action=NonEmptyStringAction, metavar="STRING",
        help=hlp("asr") + "\n\n")
    parser.add_argument(
        "--sudo-program", default="sudo", action=NonEmptyStringAction, metavar="STRING",
        help=hlp("sudo") + f"asr restores and volume mutations run via sudo unless {PROG_NAME} already runs as root. "
             f"Use '{DISABLE_PRG}' to disable the use of sudo.\n\n")
    parser.add_argument(
        "--log-dir", type=str, action=SafeDirectoryNameAction, metavar="DIR",
        help=f"Path to the log output directory on local host (optional). Default: $HOME/{LOG_DIR_DEFAULT}. The logger "
             "that is used by default writes log files there, in addition to the console. The basename of --log-dir must "
             f"contain the substring '{LOG_DIR_DEFAULT}' as this helps prevent accidents.\n\n")
    h_fix = ("The path name of the log file on local host is "
             "`${--log-dir}/${--log-file-prefix}<timestamp>${--log-file-suffix}-<random>.log`. "
             "Example: `--log-file-prefix=crun_ --log-file-suffix=_daily` will generate log "
             "file names such as `crun_2024-09-03_12:26:15_daily-bl4i1fth.log`\n\n")
    parser.add_argument(
        "--log-file-prefix", default="crun_", action=SafeFileNameAction, metavar="STRING",
        help="Default is %(default)s. " + h_fix)
    parser.add_argument(
        "--log-file-suffix", default="", action=SafeFileNameAction, metavar="STRING",
        help="Default is the empty string. " + h_fix)
    parser.add_argument(
        "--log-subdir", choices=["daily", "hourly", "minutely"], default="daily",
        help="Make a new subdirectory in --log-dir every day, hour or minute; write log files there. "
             "Default is '%(default)s'.")
    parser.add_argument(
        "--log-syslog-address", default=None, action=NonEmptyStringAction, metavar="STRING",
        help="Host:port of the syslog machine to send messages to (e.g. 'foo.example.com:514' or '127.0.0.1:514'), or "
             "the file system path to the syslog socket file on localhost (e.g. '/var/run/syslog'). The default is no "
             "address, i.e. do not log anything to syslog by default. See "
             "https://docs.python.org/3/library/logging.handlers.html#sysloghandler\n\n")
    parser.add_argument(
        "--log-syslog-socktype", choices=["UDP", "TCP"], default="UDP",
        help="The socket type to use to connect if no local socket file system path is used. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--log-syslog-facility", type=int, choices=range(8), default=1, metavar="INT",
        help="The local facility aka category that identifies msg sources in syslog "
             "(default: %(default)s, min=0, max=7).\n\n")
    parser.add_argument(
        "--log-syslog-prefix", default=PROG_NAME, action=NonEmptyStringAction, metavar="STRING",
        help=f"The name to prepend to each message that is sent to syslog; identifies {PROG_NAME} messages as opposed "
             "to messages from other sources. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--log-syslog-level", choices=["CRITICAL", "ERROR", "WARN", "INFO", "DEBUG", "TRACE"],
        default="ERROR",
        help="Only send messages with equal or higher priority than this log level to syslog. Default is '%(default)s'.\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}, by {PROG_AUTHOR}",
        help="Display version information and exit.\n\n")
    return parser
    # fmt: on
