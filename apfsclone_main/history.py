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
"""Pure functions over newest-first snapshot histories; finds the most recent snapshot that source and destination share.

Any two snapshots are "common" iff their snapshot UUIDs are equal; an incremental restore writes the source snapshot with
its UUID onto the destination, so shared history is recognizable by UUID alone, independently of snapshot names.
"""

from __future__ import (
    annotations,
)
from typing import (
    Sequence,
)

from apfsclone_main.errors import (
    HistoryOrderingViolation,
    NoSourceHistory,
)
from apfsclone_main.volumes import (
    Snapshot,
    Volume,
)


def verify_newest_first(volume: Volume, snapshots: Sequence[Snapshot]) -> None:
    """Raises HistoryOrderingViolation unless creation times are strictly decreasing and UUIDs are unique."""
    seen: set[str] = set()
    for i, snapshot in enumerate(snapshots):
        if snapshot.uuid in seen:
            raise HistoryOrderingViolation(f"Snapshot history of volume {volume} lists snapshot {snapshot} more than once")
        seen.add(snapshot.uuid)
        if i > 0 and not snapshots[i - 1].created > snapshot.created:
            newer: Snapshot = snapshots[i - 1]
            raise HistoryOrderingViolation(
                f"Snapshot history of volume {volume} is not strictly ordered newest first: "
                f"{newer} created {newer.created.isoformat()} is listed before "
                f"{snapshot} created {snapshot.created.isoformat()}"
            )


def newest_snapshot(volume: Volume, snapshots: Sequence[Snapshot]) -> Snapshot:
    """Returns the replication target, i.e. the most recent snapshot of the source history."""
    if len(snapshots) == 0:
        raise NoSourceHistory(f"Source volume {volume} has no snapshots; there is nothing to replicate")
    return snapshots[0]


def latest_common_snapshot(src_snapshots: Sequence[Snapshot], dst_snapshots: Sequence[Snapshot]) -> Snapshot | None:
    """Returns the most recent source snapshot whose UUID is also present on the destination, or None if none is shared.

    Both histories are newest first and UUIDs are unique per volume, so the first match in source order is also the most
    recent match in destination order.
    """
    dst_uuids: set[str] = {snapshot.uuid for snapshot in dst_snapshots}
    return next((snapshot for snapshot in src_snapshots if snapshot.uuid in dst_uuids), None)


def snapshots_newer_than(snapshots: Sequence[Snapshot], snapshot: Snapshot) -> list[Snapshot]:
    """Returns the snapshots of a newest-first history that precede the snapshot with the given UUID."""
    for i, item in enumerate(snapshots):
        if item.uuid == snapshot.uuid:
            return list(snapshots[0:i])
    return list(snapshots)
