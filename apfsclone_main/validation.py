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
"""Eligibility checks that decide whether a source volume may be cloned onto a set of destination volumes.

Rules are evaluated in a fixed order and the first violation is reported, so the same inputs always yield the same error:
first the source resolves, then each destination resolves, then no two destinations are the same volume, then no
destination is the source; after that each destination in turn must be mounted writable, must be APFS and must match the
case sensitivity of the source. The checks have no side effects and are safe to repeat.
"""

from __future__ import (
    annotations,
)
from logging import (
    Logger,
)
from typing import (
    Sequence,
)

from apfsclone_main.errors import (
    CaseSensitivityMismatch,
    DestinationNotWritable,
    DuplicateDestination,
    SourceEqualsDestination,
    UnsupportedFilesystem,
)
from apfsclone_main.utils import (
    LOG_TRACE,
)
from apfsclone_main.volumes import (
    Volume,
    VolumeDirectory,
    VolumeIndex,
)


def check_cloneable(
    directory: VolumeDirectory, source: str, destinations: Sequence[str], log: Logger | None = None
) -> tuple[Volume, list[Volume]]:
    """Returns the resolved source and destination volumes, or raises the EligibilityError of the first violated rule."""
    if len(destinations) == 0:
        raise ValueError("At least one destination volume must be given")
    index: VolumeIndex = directory.list_volumes()  # one listing for all identifiers
    src: Volume = index.lookup(source)
    dsts: list[Volume] = [index.lookup(destination) for destination in destinations]
    if log is not None:
        log.log(LOG_TRACE, "Resolved source %s to %s", source, src)

    seen: dict[str, str] = {}  # volume uuid -> identifier that first resolved to it
    for identifier, dst in zip(destinations, dsts):
        if dst.uuid in seen:
            raise DuplicateDestination(
                f"Destinations {seen[dst.uuid]!r} and {identifier!r} both refer to the same volume {dst}"
            )
        seen[dst.uuid] = identifier

    for identifier, dst in zip(destinations, dsts):
        if dst.uuid == src.uuid:
            raise SourceEqualsDestination(f"Destination {identifier!r} refers to the source volume {src}")

    for dst in dsts:
        validate_destination(src, dst)
    return src, dsts


def validate_destination(src: Volume, dst: Volume) -> None:
    """Checks the per-destination rules in order: mounted writable, APFS, same case sensitivity as the source."""
    if not dst.mounted:
        raise DestinationNotWritable(f"Destination volume {dst} is not mounted")
    if not dst.writable:
        raise DestinationNotWritable(f"Destination volume {dst} is mounted read-only at {dst.mount_point}")
    if not dst.apfs:
        raise UnsupportedFilesystem(f"Destination volume {dst} is not an APFS volume")
    if dst.case_sensitive != src.case_sensitive:
        raise CaseSensitivityMismatch(
            f"Destination volume {dst} is case-{_sensitivity(dst)} but source volume {src} is case-{_sensitivity(src)}"
        )


def _sensitivity(volume: Volume) -> str:
    return "sensitive" if volume.case_sensitive else "insensitive"
