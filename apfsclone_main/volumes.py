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
"""Volume and snapshot records plus the collaborator contracts consumed by the planning engine.

The engine never mutates volumes or snapshots itself; it reads them through a VolumeDirectory and asks a
ReplicationExecutor or the directory to apply changes. Both collaborators are passed explicitly into every entry point so
tests can substitute in-memory doubles.
"""

from __future__ import (
    annotations,
)
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
)
from typing import (
    Protocol,
)

from apfsclone_main.errors import (
    VolumeNotFound,
)

DEV_PREFIX: str = "/dev/"


#############################################################################
@dataclass(frozen=True)
class Volume:
    """A mountable storage unit with its own snapshot history, as reported by the volume directory."""

    uuid: str
    name: str
    mount_point: str = ""  # empty if unmounted
    device: str = ""  # device node, e.g. /dev/disk3s1
    writable: bool = False  # mounted read-write
    apfs: bool = False  # supports versioned snapshots
    case_sensitive: bool = False

    @property
    def mounted(self) -> bool:
        return self.mount_point != ""

    def aliases(self) -> tuple[str, ...]:
        """Returns all identifiers that refer to this volume: uuid, name, mount point, device node and bare device id."""
        names: list[str] = [self.uuid, self.name, self.mount_point, self.device]
        if self.device.startswith(DEV_PREFIX):
            names.append(self.device[len(DEV_PREFIX) :])
        return tuple(dict.fromkeys(name for name in names if name))

    def __str__(self) -> str:
        return f"{self.name} ({self.uuid})"


#############################################################################
@dataclass(frozen=True)
class Snapshot:
    """An immutable point-in-time capture of one volume; snapshots of one volume are totally ordered by creation time."""

    uuid: str
    name: str
    created: datetime

    def __str__(self) -> str:
        return f"{self.name} ({self.uuid})"


#############################################################################
class VolumeIndex:
    """Resolves any alias of a volume (uuid, name, mount point or device) to exactly one volume.

    Two distinct volumes may share an alias, most commonly a volume name; looking up such an alias is ambiguous and fails
    rather than silently picking one of them.
    """

    def __init__(self) -> None:
        self._volumes: dict[str, Volume] = {}  # uuid -> volume
        self._aliases: dict[str, set[str]] = {}  # alias -> uuids

    def add(self, volume: Volume) -> None:
        if volume.uuid in self._volumes:
            raise ValueError(f"Volume is already indexed: {volume}")
        self._volumes[volume.uuid] = volume
        for alias in volume.aliases():
            self._aliases.setdefault(alias, set()).add(volume.uuid)

    def lookup(self, identifier: str) -> Volume:
        uuids: set[str] = self._aliases.get(identifier, set())
        if len(uuids) == 0:
            raise VolumeNotFound(f"No volume found for identifier: {identifier!r}")
        if len(uuids) > 1:
            candidates: str = ", ".join(sorted(str(self._volumes[uuid]) for uuid in uuids))
            raise VolumeNotFound(f"Identifier {identifier!r} is ambiguous; it matches volumes: {candidates}")
        return self._volumes[next(iter(uuids))]

    def volumes(self) -> list[Volume]:
        return list(self._volumes.values())

    def __len__(self) -> int:
        return len(self._volumes)


#############################################################################
class VolumeDirectory(Protocol):
    """Resolves volume identifiers, lists snapshot histories and applies snapshot deletions and renames."""

    def list_volumes(self) -> VolumeIndex:
        """Returns an index over all volumes as of one listing, for resolving several identifiers consistently."""
        ...

    def resolve(self, identifier: str) -> Volume:
        """Returns the single volume the identifier refers to; raises VolumeNotFound otherwise."""
        ...

    def history(self, volume: Volume) -> list[Snapshot]:
        """Returns the snapshots of the volume, newest first."""
        ...

    def delete_snapshot(self, volume: Volume, snapshot: Snapshot) -> None: ...

    def rename(self, volume: Volume, name: str) -> None: ...


class ReplicationExecutor(Protocol):
    """Performs the actual data transfer of a replication plan; may block for the duration of a large transfer."""

    def replicate(self, source: Volume, destination: Volume, to: Snapshot, from_snapshot: Snapshot) -> None:
        """Brings destination to the state of source as of ``to``, transferring only the delta since the shared
        ``from_snapshot``; leaves the other destination snapshots intact and adds ``to``."""
        ...

    def replicate_full(self, source: Volume, destination: Volume, to: Snapshot) -> None:
        """Discards the destination's content and history and replaces it with the single snapshot ``to``."""
        ...
