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
"""In-memory test doubles of the volume directory and the replication executor, plus canned volumes and snapshots.

FakeDevices holds the shared state: volumes keyed by uuid and each volume's snapshots, newest first. FakeDirectory and
FakeExecutor both operate on the same FakeDevices, so a restore performed by the executor is visible to the directory.
"""

from __future__ import (
    annotations,
)
import dataclasses
from datetime import (
    datetime,
    timezone,
)

from apfsclone_main.errors import (
    CommandError,
)
from apfsclone_main.volumes import (
    Snapshot,
    Volume,
    VolumeIndex,
)

SOURCE: Volume = Volume(
    uuid="CA79DDFA-D75D-43F3-8099-3BEA2F7C1F33",
    name="source",
    mount_point="/Volumes/source",
    device="/dev/disk4s1",
    writable=False,
    apfs=True,
)
TARGET: Volume = Volume(
    uuid="21CF5985-FA46-42AF-9872-52CDE74B04DE",
    name="target",
    mount_point="/Volumes/target",
    device="/dev/disk5s1",
    writable=True,
    apfs=True,
)
TARGET2: Volume = Volume(
    uuid="7A1E2B7C-3A0D-4C7E-9E0C-5B3F1E2D4C61",
    name="target2",
    mount_point="/Volumes/target2",
    device="/dev/disk6s1",
    writable=True,
    apfs=True,
)
SNAP_NEW: Snapshot = Snapshot(
    uuid="D1ABE254-5B1B-4FDF-8DB3-1B4B4B825E39",
    name="com.bombich.ccc.6AE4815C-1F9A-4D5E-86E1-19078BE01958.2021-03-01-203509",
    created=datetime(2021, 3, 1, 20, 35, 9, tzinfo=timezone.utc),
)
SNAP_OLD: Snapshot = Snapshot(
    uuid="A175CCCF-0C56-4A46-97FB-CA267A540C96",
    name="com.bombich.ccc.D7B2D286-3CE0-40B9-9797-EBF108ADAD30.2021-03-01-203433",
    created=datetime(2021, 3, 1, 20, 34, 33, tzinfo=timezone.utc),
)
SNAP_OTHER: Snapshot = Snapshot(
    uuid="5E0F3C1A-8B1B-4F3A-A0C3-2D1E9B6F7A10",
    name="com.bombich.ccc.0B7C4C2E-9C1A-4F0E-8E57-6E7D2B3C4A5F.2021-03-02-081500",
    created=datetime(2021, 3, 2, 8, 15, 0, tzinfo=timezone.utc),
)


def make_snapshot(uuid: str, created: datetime) -> Snapshot:
    return Snapshot(uuid=uuid, name=f"com.bombich.ccc.{uuid}.{created.strftime('%Y-%m-%d-%H%M%S')}", created=created)


#############################################################################
class FakeDevices:
    """Volumes keyed by uuid together with their snapshots, newest first."""

    def __init__(self) -> None:
        self.volumes: dict[str, Volume] = {}
        self.snapshots: dict[str, list[Snapshot]] = {}

    def add_volume(self, volume: Volume, *snapshots: Snapshot) -> FakeDevices:
        if volume.uuid in self.volumes:
            raise ValueError(f"volume already exists: {volume}")
        self.volumes[volume.uuid] = volume
        self.snapshots[volume.uuid] = list(snapshots)
        return self

    def volume(self, uuid: str) -> Volume:
        return self.volumes[uuid]

    def snapshot_uuids(self, volume: Volume) -> list[str]:
        return [snapshot.uuid for snapshot in self.snapshots[volume.uuid]]

    def add_snapshot(self, volume: Volume, snapshot: Snapshot) -> None:
        """Inserts the snapshot at the position that keeps the history ordered newest first."""
        snapshots: list[Snapshot] = self.snapshots[volume.uuid]
        if any(item.uuid == snapshot.uuid for item in snapshots):
            raise ValueError(f"snapshot {snapshot} already exists on {volume}")
        snapshots.append(snapshot)
        snapshots.sort(key=lambda item: item.created, reverse=True)

    def rename(self, uuid: str, name: str) -> None:
        self.volumes[uuid] = dataclasses.replace(self.volumes[uuid], name=name)


#############################################################################
class FakeDirectory:
    """VolumeDirectory over FakeDevices; records mutations and can be told to fail selected snapshot deletions."""

    def __init__(self, devices: FakeDevices) -> None:
        self.devices: FakeDevices = devices
        self.deleted: list[Snapshot] = []
        self.renamed: list[tuple[str, str]] = []  # (volume uuid, new name)
        self.failing_deletes: set[str] = set()  # snapshot uuids whose deletion fails
        self.history_calls: int = 0
        self.list_calls: int = 0

    def list_volumes(self) -> VolumeIndex:
        self.list_calls += 1
        index = VolumeIndex()
        for volume in self.devices.volumes.values():
            index.add(volume)
        return index

    def resolve(self, identifier: str) -> Volume:
        return self.list_volumes().lookup(identifier)

    def history(self, volume: Volume) -> list[Snapshot]:
        self.history_calls += 1
        return list(self.devices.snapshots[volume.uuid])

    def delete_snapshot(self, volume: Volume, snapshot: Snapshot) -> None:
        cmd: list[str] = ["diskutil", "apfs", "deletesnapshot", volume.device, "-uuid", snapshot.uuid]
        if snapshot.uuid in self.failing_deletes:
            raise CommandError(cmd, 1, "Error deleting APFS snapshot: Resource busy")
        snapshots: list[Snapshot] = self.devices.snapshots[volume.uuid]
        if all(item.uuid != snapshot.uuid for item in snapshots):
            raise CommandError(cmd, 1, f"No snapshot with UUID {snapshot.uuid}")
        self.devices.snapshots[volume.uuid] = [item for item in snapshots if item.uuid != snapshot.uuid]
        self.deleted.append(snapshot)

    def rename(self, volume: Volume, name: str) -> None:
        self.devices.rename(volume.uuid, name)
        self.renamed.append((volume.uuid, name))


#############################################################################
class ReadOnlyDirectory(FakeDirectory):
    """FakeDirectory that fails the test run on any attempt to mutate a volume."""

    def delete_snapshot(self, volume: Volume, snapshot: Snapshot) -> None:
        raise AssertionError(f"unexpected deletion of snapshot {snapshot} on read-only {volume}")

    def rename(self, volume: Volume, name: str) -> None:
        raise AssertionError(f"unexpected rename of read-only {volume} to {name}")


#############################################################################
class FakeExecutor:
    """ReplicationExecutor over FakeDevices that behaves like asr: it adds ``to`` and renames the target after the
    source. Set ``error`` to make the next restores fail with that exception."""

    def __init__(self, devices: FakeDevices) -> None:
        self.devices: FakeDevices = devices
        self.calls: list[tuple[str, ...]] = []
        self.error: Exception | None = None

    def replicate(self, source: Volume, destination: Volume, to: Snapshot, from_snapshot: Snapshot) -> None:
        self.calls.append(("replicate", source.uuid, destination.uuid, to.uuid, from_snapshot.uuid))
        self._check(source, destination)
        if to.uuid == from_snapshot.uuid:
            raise ValueError(f"to and from are the same snapshot: {to}")
        for volume, snapshot in ((source, to), (source, from_snapshot), (destination, from_snapshot)):
            if snapshot.uuid not in self.devices.snapshot_uuids(volume):
                raise CommandError(["asr", "restore"], 1, f"snapshot {snapshot} not found on {volume}")
        self.devices.add_snapshot(destination, to)
        self.devices.rename(destination.uuid, self.devices.volume(source.uuid).name)

    def replicate_full(self, source: Volume, destination: Volume, to: Snapshot) -> None:
        self.calls.append(("replicate_full", source.uuid, destination.uuid, to.uuid))
        self._check(source, destination)
        if to.uuid not in self.devices.snapshot_uuids(source):
            raise CommandError(["asr", "restore"], 1, f"snapshot {to} not found on {source}")
        self.devices.snapshots[destination.uuid] = [to]
        self.devices.rename(destination.uuid, self.devices.volume(source.uuid).name)

    def _check(self, source: Volume, destination: Volume) -> None:
        if self.error is not None:
            raise self.error
        if source.uuid == destination.uuid:
            raise ValueError(f"source and target are the same volume: {source}")
        if not self.devices.volume(destination.uuid).writable:
            raise CommandError(["asr", "restore"], 1, f"target {destination} is read-only")
