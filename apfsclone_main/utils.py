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
"""Helpers shared by all apfsclone modules: exit codes and log levels, file system safety checks, duration formatting,
and running external programs such as diskutil and asr."""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import os
import pwd
import re
import stat
import subprocess
import sys
import types
from collections import (
    defaultdict,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    NoReturn,
    TextIO,
)

from apfsclone_main.errors import (
    CommandError,
)

# constants:
PROG_NAME: Final[str] = "apfsclone"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
STILL_RUNNING_STATUS: Final[int] = 4
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # between INFO and WARNING
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # between INFO and STDERR
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # below DEBUG
FILE_PERMISSIONS: Final[int] = stat.S_IRUSR | stat.S_IWUSR  # rw-------
DIR_PERMISSIONS: Final[int] = stat.S_IRWXU  # rwx------

# each unit with the number of units of the next smaller one that it spans
DURATION_UNITS: Final[tuple[tuple[str, int], ...]] = (
    ("ns", 1),
    ("μs", 1000),
    ("ms", 1000),
    ("s", 1000),
    ("m", 60),
    ("h", 60),
    ("d", 24),
)
SECONDS_PER_UNIT: Final[dict[str, float]] = {
    "milliseconds": 0.001,
    "millis": 0.001,
    "seconds": 1,
    "secs": 1,
    "minutes": 60,
    "mins": 60,
    "hours": 3600,
    "days": 86400,
}
DURATION_REGEX: Final[re.Pattern[str]] = re.compile(r"(\d+)\s*(" + "|".join(SECONDS_PER_UNIT) + ")")


def getenv_any(key: str, default: str | None = None) -> str | None:
    """Reads the environment variable ``apfsclone_<key>``."""
    return os.getenv(ENV_VAR_PREFIX + key, default)


def get_home_directory() -> str:
    """Returns the home dir of the current user from the password database, ignoring $HOME."""
    return pwd.getpwuid(os.getuid()).pw_dir


def human_readable_duration(duration: float, unit: str = "ns", separator: str = "") -> str:
    """Renders a duration given in ``unit`` with the largest unit that keeps the number at least 1, e.g. "1.5m"."""
    names: list[str] = [name for name, _ in DURATION_UNITS]
    i: int = names.index(unit)  # ValueError for an unknown unit
    t: float = abs(duration)
    if 0 < t < 1:  # restart from nanoseconds so that the loop below only ever scales up
        for _, factor in DURATION_UNITS[1 : i + 1]:
            t *= factor
        i = 0
    while i + 1 < len(DURATION_UNITS) and t >= DURATION_UNITS[i + 1][1]:
        i += 1
        t /= DURATION_UNITS[i][1]
    number: str = f"{t:.0f}" if t >= 10 or t == int(t) else f"{t:.1f}"
    return f"{'-' if duration < 0 else ''}{number}{separator}{names[i]}"


def parse_duration_to_seconds(duration: str) -> float:
    """Parses an amount of time such as '90 seconds', '30 mins' or '2 hours' into seconds."""
    match = DURATION_REGEX.fullmatch(duration.strip())
    if match is None:
        raise ValueError(f"Invalid duration format: {duration}")
    return int(match.group(1)) * SECONDS_PER_UNIT[match.group(2)]


def list_formatter(iterable: Iterable[Any], separator: str = " ", lstrip: bool = False) -> Any:
    """Returns an object whose str() joins ``iterable``; the join only happens if a log record is actually emitted."""

    class JoinOnStr:

        def __str__(self) -> str:
            joined: str = separator.join(str(item) for item in iterable)
            return joined.lstrip() if lstrip else joined

    return JoinOnStr()


def stderr_to_str(stderr: Any) -> str:
    """Decodes process output that may arrive as bytes, str or None."""
    if isinstance(stderr, bytes):
        return stderr.decode("utf-8", errors="replace")
    return str(stderr)


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Forwards output of a child process to ``log`` at the STDOUT or STDERR level, unless it is empty."""
    if not run or not value:
        return
    log.log(LOG_STDOUT if file is sys.stdout else LOG_STDERR, "%s", value if end else str(value).rstrip())


def die(msg: str, exit_code: int = DIE_STATUS, parser: argparse.ArgumentParser | None = None) -> NoReturn:
    """Raises SystemExit carrying ``msg`` and ``exit_code``; via ``parser.error()`` for CLI usage errors."""
    if parser is not None:
        parser.error(msg)
    error = SystemExit(msg)
    error.code = exit_code
    raise error


def validate_is_not_a_symlink(msg: str, path: str, parser: argparse.ArgumentParser | None = None) -> None:
    if os.path.islink(path):
        die(f"{msg}must not be a symlink: {path}", parser=parser)


def validate_file_permissions(path: str, mode: int) -> None:
    """Exits unless ``path`` is owned by the effective UID and has exactly the permission bits ``mode``."""
    info: os.stat_result = os.stat(path, follow_symlinks=False)
    euid: int = os.geteuid()
    if info.st_uid != euid:
        die(f"{path!r} is owned by uid {info.st_uid}, not {euid}")
    actual: int = stat.S_IMODE(info.st_mode)
    if actual != mode:
        die(
            f"{path!r} has permissions {actual:03o} aka {stat.filemode(actual)[1:]}, "
            f"not {mode:03o} aka {stat.filemode(mode)[1:]}"
        )


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Same contract as subprocess.run(), except that a timeout also terminates the grandchildren of the process.

    asr spawns helper processes of its own; killing only the direct child would leave those behind.
    """
    stdin_data: Any = kwargs.pop("input", None)
    timeout: float | None = kwargs.pop("timeout", None)
    check: bool = kwargs.pop("check", False)
    if stdin_data is not None:
        if kwargs.get("stdin") is not None:
            raise ValueError("input and stdin are mutually exclusive")
        kwargs["stdin"] = PIPE

    with subprocess.Popen(*args, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate(stdin_data, timeout=timeout)
        except BaseException as e:
            if isinstance(e, subprocess.TimeoutExpired):
                with contextlib.suppress(OSError, subprocess.SubprocessError):  # e.g. ps is missing
                    terminate_process_subtree(root_pid=proc.pid)
            proc.kill()
            raise
        returncode: int | None = proc.poll()
        assert returncode is not None
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, proc.args, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(proc.args, returncode, stdout, stderr)


def run_command(
    log: logging.Logger,
    cmd: list[str],
    level: int = LOG_DEBUG,
    print_stdout: bool = False,
    print_stderr: bool = True,
    timeout: float | None = None,
) -> bytes:
    """Runs the given CLI cmd on the local host and returns its raw stdout; raises CommandError on failure.

    stdout is returned as bytes because diskutil emits binary-safe XML property lists that are fed to plistlib as-is.
    """
    assert isinstance(cmd, list) and len(cmd) > 0
    log.log(level, "Executing: %s", list_formatter(cmd))
    try:
        process: subprocess.CompletedProcess = subprocess_run(
            cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, timeout=timeout, check=True
        )
    except subprocess.CalledProcessError as e:
        xprint(log, stderr_to_str(e.stdout), run=print_stdout, file=sys.stdout, end="")
        xprint(log, stderr_to_str(e.stderr), run=print_stderr, file=sys.stderr, end="")
        raise CommandError(cmd, e.returncode, stderr_to_str(e.stderr)) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(cmd, None, f"timed out after {human_readable_duration(timeout or 0, unit='s')}") from e
    except OSError as e:  # e.g. FileNotFoundError if the program is not installed
        raise CommandError(cmd, None, str(e)) from e
    xprint(log, stderr_to_str(process.stdout), run=print_stdout, file=sys.stdout, end="")
    xprint(log, stderr_to_str(process.stderr), run=print_stderr, file=sys.stderr, end="")
    return process.stdout


def terminate_process_subtree(root_pid: int) -> None:
    """Sends SIGTERM to ``root_pid`` and every process below it; processes that already exited are ignored."""
    import signal  # lazy import for startup perf

    for pid in [root_pid] + _get_descendant_processes(root_pid):
        with contextlib.suppress(OSError):
            os.kill(pid, signal.SIGTERM)


def _get_descendant_processes(root_pid: int) -> list[int]:
    """Returns the PIDs of all children, grandchildren and so on of ``root_pid``, as reported by ps."""
    ps_cmd: list[str] = ["ps", "-Ao", "pid,ppid"]
    output: str = subprocess.run(ps_cmd, stdin=DEVNULL, stdout=PIPE, text=True, check=True).stdout
    children: defaultdict[int, list[int]] = defaultdict(list)
    for row in output.splitlines()[1:]:  # skip header
        pid, ppid = row.split()
        children[int(ppid)].append(int(pid))
    result: list[int] = []
    todo: list[int] = [root_pid]
    while todo:
        for child in children[todo.pop()]:
            result.append(child)
            todo.append(child)
    return result


#############################################################################
class _XFinally(contextlib.AbstractContextManager):

    def __init__(self, cleanup: Callable[[], None]) -> None:
        self._cleanup: Callable[[], None] = cleanup

    def __exit__(  # type: ignore[exit-return]
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> bool:
        try:
            self._cleanup()
        except BaseException as cleanup_error:
            if exc is None:
                raise
            exc.__context__ = cleanup_error  # visible in the traceback of exc, which keeps propagating
        return False


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Usage: with xfinally(lambda: cleanup()): ...

    Like try/finally, cleanup() runs on exit; unlike try/finally, an error raised by cleanup() never replaces an exception
    that the body of the `with` block raised. Instead, the cleanup error is attached as the body exception's __context__.
    """
    return _XFinally(cleanup)
