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
"""Builds the loggers of apfsclone.

A run logs to the console and to its own log file, and optionally to syslog. The Logger of a run is never registered with
the global logging manager, so that several runs inside one Python process keep their handlers apart. Whoever creates such
a Logger releases it again via ``reset_logger()``.
"""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Any,
    Final,
)

from apfsclone_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
    PROG_NAME,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from apfsclone_main.configuration import (
        LogParams,
    )

LOGGER_NAME: Final[str] = "apfsclone_main.apfsclone"
PLACEHOLDER_COLUMN: Final[int] = 54  # the first "%s" argument of a message starts at this column

LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}


def get_logger(log_params: LogParams, args: argparse.Namespace, log: Logger | None = None) -> Logger:
    """Returns ``log`` if the caller brings its own Logger, else a new Logger configured from the CLI options."""
    _add_custom_loglevels()
    if log is None:
        return _get_default_logger(log_params, args)
    assert isinstance(log, Logger)
    return log


def reset_logger(log: Logger) -> None:
    """Detaches and closes all handlers and filters of ``log``, returning it to the state of a fresh Logger."""
    while log.handlers:
        handler: logging.Handler = log.handlers[-1]
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for log_filter in list(log.filters):
        log.removeFilter(log_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


def _add_handler(log: Logger, handler: logging.Handler, level: int | str, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    log.addHandler(handler)
    return handler


def _get_default_logger(log_params: LogParams, args: argparse.Namespace) -> Logger:
    suffix: str = log_params.logger_name_suffix
    log = Logger(f"{LOGGER_NAME}.{suffix}" if suffix else LOGGER_NAME)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(log_params.log_level)
    log.propagate = False  # the root logger must not emit our records a second time
    _add_handler(log, logging.StreamHandler(stream=sys.stdout), log_params.log_level, get_default_log_formatter())
    file_handler = logging.FileHandler(log_params.log_file, encoding="utf-8")
    _add_handler(log, file_handler, log_params.log_level, get_default_log_formatter())
    if args.log_syslog_address:
        _add_syslog_handler(log, args)

    # skip collecting per-record process and thread details that no formatter of ours prints
    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    logging.raiseExceptions = False  # a handler failure such as BrokenPipeError must not print a traceback
    return log


def _add_syslog_handler(log: Logger, args: argparse.Namespace) -> None:
    """Also sends records of at least --log-syslog-level to the local or remote syslog daemon."""
    from logging import handlers  # lazy import for startup perf

    address, socktype = _get_syslog_address(args.log_syslog_address, args.log_syslog_socktype)
    syslog_prefix: str = str(args.log_syslog_prefix).strip().replace("%", "")
    syslog = handlers.SysLogHandler(address=address, facility=args.log_syslog_facility, socktype=socktype)
    _add_handler(log, syslog, args.log_syslog_level, get_default_log_formatter(prefix=syslog_prefix + " "))
    effective_level: int = log.getEffectiveLevel()
    if syslog.level < effective_level:
        level_name: str = logging.getLevelName(effective_level)
        log.warning(
            "%s",
            f"Syslog level {args.log_syslog_level} is below the overall log level {level_name}, hence syslog will "
            f"not receive any messages with a priority lower than {level_name}.",
        )


def _get_syslog_address(address: str, log_syslog_socktype: str) -> tuple[str | tuple[str, int], Any]:
    """Turns 'host:port' into a (host, port) tuple plus socket type; any other address is a local socket file path."""
    import socket  # lazy import for startup perf

    address = address.strip()
    if ":" not in address:
        return address, None
    host, port = address.rsplit(":", 1)
    socktype: socket.SocketKind = socket.SOCK_STREAM if log_syslog_socktype == "TCP" else socket.SOCK_DGRAM
    return (host.strip(), int(port.strip())), socktype


def get_default_log_formatter(prefix: str = "") -> logging.Formatter:
    """Returns a formatter that tags each record with a timestamp and level; STDOUT and STDERR records pass verbatim."""

    class DefaultLogFormatter(logging.Formatter):
        """Timestamp and level tag first, then the message with its first '%s' argument aligned to a fixed column."""

        def format(self, record: logging.LogRecord) -> str:
            if record.levelno in (LOG_STDOUT, LOG_STDERR):
                return prefix + super().format(record)
            now: str = datetime.now().isoformat(sep=" ", timespec="seconds")  # 2024-09-03 12:26:15
            head: str = f"{now} {LOG_LEVEL_PREFIXES.get(record.levelno, '')} "
            template: str = str(record.msg)
            pos: int = template.find("%s")
            if pos >= 1:
                template = (head + template[0:pos]).ljust(PLACEHOLDER_COLUMN) + template[pos:]
            else:
                template = head + template
            if record.exc_info or record.exc_text or record.stack_info:
                record.msg = template
                return prefix + super().format(record)
            return prefix + (template % record.args if record.args else template)

    return DefaultLogFormatter()


def get_simple_logger(program: str = PROG_NAME) -> Logger:
    """Returns a bare stderr Logger for failures that happen before the log file of the run exists."""

    class LevelFormatter(logging.Formatter):

        def format(self, record: logging.LogRecord) -> str:
            record.level_prefix = LOG_LEVEL_PREFIXES.get(record.levelno, "")
            record.program = program
            return super().format(record)

    _add_custom_loglevels()
    log = Logger(program)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(logging.INFO)
    log.propagate = False
    fmt: str = "%(asctime)s %(level_prefix)s [%(program)s] %(message)s"
    _add_handler(log, logging.StreamHandler(), logging.NOTSET, LevelFormatter(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S"))
    return log


def _add_custom_loglevels() -> None:
    logging.addLevelName(LOG_TRACE, "TRACE")
    logging.addLevelName(LOG_STDOUT, "STDOUT")
    logging.addLevelName(LOG_STDERR, "STDERR")
