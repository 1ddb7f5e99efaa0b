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
"""Custom argparse actions of the 'apfsclone' CLI; they validate names, directories and durations at parse time."""

from __future__ import (
    annotations,
)
import argparse
from typing import (
    Any,
    final,
)

from apfsclone_main.utils import (
    parse_duration_to_seconds,
)


#############################################################################
class _CheckedAction(argparse.Action):
    """Stores ``convert(value)``; ``convert()`` reports bad input by raising ValueError, which becomes a usage error."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        try:
            converted: Any = self.convert(values)
        except ValueError as e:
            parser.error(f"{option_string or self.metavar or self.dest}: {e}")
        setattr(namespace, self.dest, converted)

    def convert(self, value: str) -> Any:
        raise NotImplementedError


def _non_empty(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Empty string is not valid")
    return value


def _reject_odd_whitespace(kind: str, value: str) -> None:
    if any(char.isspace() and char != " " for char in value):
        raise ValueError(f"Invalid {kind} name '{value}': must not contain whitespace other than space.")


#############################################################################
@final
class NonEmptyStringAction(_CheckedAction):
    """Strips surrounding whitespace and rejects what remains if it is empty."""

    def convert(self, value: str) -> str:
        return _non_empty(value)


#############################################################################
@final
class SafeFileNameAction(_CheckedAction):
    """Accepts a bare file name: no path separators, no '..', and no whitespace other than plain spaces."""

    def convert(self, value: str) -> str:
        if ".." in value or "/" in value or "\\" in value:
            raise ValueError(f"Invalid file name '{value}': must not contain '..' or '/' or '\\'.")
        _reject_odd_whitespace("file", value)
        return value


#############################################################################
@final
class SafeDirectoryNameAction(_CheckedAction):

    def convert(self, value: str) -> str:
        value = _non_empty(value)
        _reject_odd_whitespace("dir", value)
        return value


#############################################################################
@final
class DurationAction(_CheckedAction):
    """Parses a human readable duration such as '90 seconds' or '2 hours' into a positive number of seconds."""

    def convert(self, value: str) -> float:
        seconds: float = parse_duration_to_seconds(value)
        if seconds <= 0:
            raise ValueError(f"Duration must be positive: {value}")
        return seconds
