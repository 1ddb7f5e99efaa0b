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
"""Volume directory backed by the macOS ``diskutil`` CLI; decodes its ``-plist`` output with plistlib.

``diskutil apfs listsnapshots`` lists snapshots oldest first and carries no creation time, so the creation time is taken
from the ``yyyy-mm-dd-hhmmss`` UTC timestamp that snapshot tools embed in each snapshot name, for example
``com.bombich.ccc.6AE4815C-1F9A-4D5E-86E1-19078BE01958.2021-03-01-203509``.
"""

from __future__ import (
    annotations,
)
import plistlib
import re
from datetime import (
    datetime,
    timezone,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Final,
    Iterator,
    Sequence,
)
from xml.parsers.expat import (
    ExpatError,
)

from apfsclone_main.errors import (
    HistoryOrderingViolation,
)
from apfsclone_main.utils import (
    LOG_DEBUG,
    run_command,
)
from apfsclone_main.volumes import (
    Snapshot,
    Volume,
    VolumeIndex,
)

SNAPSHOT_TIME_REGEX: Final[re.Pattern[str]] = re.compile(r"\d{4}-\d{2}-\d{2}-\d{6}")
SNAPSHOT_TIME_FORMAT: Final[str] = "%Y-%m-%d-%H%M%S"


def parse_snapshot_time(name: str) -> datetime:
    """Returns the UTC creation time embedded in the given snapshot name."""
    match = SNAPSHOT_TIME_REGEX.search(name)
    if not match:
        raise ValueError(f"Snapshot name {name!r} does not contain a timestamp of the form yyyy-mm-dd-hhmmss")
    return datetime.strptime(match.group(0), SNAPSHOT_TIME_FORMAT).replace(tzinfo=timezone.utc)


def _decode_plist(cmd: str, data: bytes) -> dict[str, Any]:
    try:
        result = plistlib.loads(data)
    except (ValueError, ExpatError) as e:  # InvalidFileException is a ValueError
        raise ValueError(f"Cannot parse plist output of `{cmd}`: {e}") from e
    if not isinstance(result, dict):
        raise ValueError(f"Unexpected plist output of `{cmd}`: expected a dictionary but got {type(result).__name__}")
    return result


#############################################################################
class DiskUtil:
    """Resolves volumes, lists snapshot histories and applies snapshot deletions and renames via ``diskutil``."""

    def __init__(
        self, log: Logger, program: str = "diskutil", sudo: Sequence[str] = (), timeout: float | None = None
    ) -> None:
        # immutable variables:
        self.log: Final[Logger] = log
        self.program: Final[str] = program
        self.sudo: Final[tuple[str, ...]] = tuple(sudo)  # prefix of commands that mutate a volume
        self.timeout: Final[float | None] = timeout

    def _run(self, *args: str, sudo: bool = False) -> bytes:
        cmd: list[str] = (list(self.sudo) if sudo else []) + [self.program] + list(args)
        return run_command(self.log, cmd, timeout=self.timeout)

    def info(self, device: str) -> Volume:
        """Returns the attributes of the given volume as reported by ``diskutil info -plist``."""
        info: dict[str, Any] = _decode_plist(f"{self.program} info", self._run("info", "-plist", device))
        uuid: str = str(info.get("VolumeUUID", ""))
        if not uuid:
            raise ValueError(f"{device!r} is not a volume: `{self.program} info` reports no VolumeUUID")
        return Volume(
            uuid=uuid,
            name=str(info.get("VolumeName", "")),
            mount_point=str(info.get("MountPoint", "")),
            device=str(info.get("DeviceNode", "")),
            writable=bool(info.get("WritableVolume", False)),
            apfs=str(info.get("FilesystemType", "")).lower() == "apfs",
            case_sensitive="case-sensitive" in str(info.get("FilesystemName", "")).lower(),
        )

    def list_volumes(self) -> VolumeIndex:
        """Returns an index over every volume that ``diskutil list -plist`` reports."""
        listing: dict[str, Any] = _decode_plist(f"{self.program} list", self._run("list", "-plist"))
        index = VolumeIndex()
        seen: set[str] = set()
        for uuid, device_identifier in _walk_volumes(listing.get("AllDisksAndPartitions", [])):
            if uuid not in seen:  # a volume may be listed under its container and its synthesized disk
                seen.add(uuid)
                index.add(self.info(device_identifier))
        self.log.log(LOG_DEBUG, "Found %s volumes", len(index))
        return index

    def resolve(self, identifier: str) -> Volume:
        return self.list_volumes().lookup(identifier)

    def history(self, volume: Volume) -> list[Snapshot]:
        """Returns the snapshots of the volume, newest first."""
        cmd: str = f"{self.program} apfs listsnapshots"
        listing: dict[str, Any] = _decode_plist(cmd, self._run("apfs", "listsnapshots", "-plist", _device_of(volume)))
        snapshots: list[Snapshot] = []
        for item in listing.get("Snapshots", []):
            name: str = str(item.get("SnapshotName", ""))
            try:
                created: datetime = parse_snapshot_time(name)
            except ValueError as e:
                raise HistoryOrderingViolation(f"Cannot order snapshots of volume {volume}: {e}") from e
            snapshots.append(Snapshot(uuid=str(item.get("SnapshotUUID", "")), name=name, created=created))
        for i in range(1, len(snapshots)):
            if snapshots[i - 1].created > snapshots[i].created:
                raise HistoryOrderingViolation(
                    f"`{cmd}` returned snapshots of volume {volume} in an unexpected order: "
                    f"{snapshots[i - 1]} is listed before {snapshots[i]}"
                )
        snapshots.reverse()  # diskutil lists oldest first
        return snapshots

    def delete_snapshot(self, volume: Volume, snapshot: Snapshot) -> None:
        self._run("apfs", "deletesnapshot", _device_of(volume), "-uuid", snapshot.uuid, sudo=True)

    def rename(self, volume: Volume, name: str) -> None:
        self._run("rename", _device_of(volume), name, sudo=True)


def _device_of(volume: Volume) -> str:
    return volume.device if volume.device else volume.uuid


def _walk_volumes(entries: list[dict[str, Any]]) -> Iterator[tuple[str, str]]:
    """Yields the uuid and device identifier of every volume in the nested disk, partition and APFS volume listing."""
    for entry in entries:
        if entry.get("VolumeUUID") and entry.get("DeviceIdentifier"):
            yield str(entry["VolumeUUID"]), str(entry["DeviceIdentifier"])
        yield from _walk_volumes(entry.get("Partitions", []))
        yield from _walk_volumes(entry.get("APFSVolumes", []))
