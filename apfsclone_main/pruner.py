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
"""Retention cleanup that deletes every destination snapshot except the one that was just replicated."""

from __future__ import (
    annotations,
)
from logging import (
    Logger,
)

from apfsclone_main.errors import (
    PruneFailed,
)
from apfsclone_main.history import (
    verify_newest_first,
)
from apfsclone_main.utils import (
    list_formatter,
)
from apfsclone_main.volumes import (
    Snapshot,
    Volume,
    VolumeDirectory,
)


def prune_snapshots(
    directory: VolumeDirectory, destination: Volume, keep: Snapshot, log: Logger, dry_run: bool = False
) -> list[Snapshot]:
    """Deletes all snapshots of destination other than ``keep``, oldest first, and returns the deleted snapshots.

    Aborts on the first deletion failure and raises PruneFailed listing the snapshots that remain undeleted, including the
    one whose deletion failed; a partially pruned destination is consistent and pruning can simply be rerun. Nothing is
    deleted unless ``keep`` is present on the destination. With ``dry_run``, ``keep`` may still be missing because the
    replication that would add it has not happened; the snapshots that would be deleted are logged and returned.
    """
    try:
        snapshots: list[Snapshot] = directory.history(destination)
        verify_newest_first(destination, snapshots)
    except Exception as e:
        raise PruneFailed(f"Cannot list snapshots of destination {destination} for pruning: {e}") from e
    if not dry_run and all(snapshot.uuid != keep.uuid for snapshot in snapshots):
        raise PruneFailed(
            f"Refusing to prune destination {destination} because it does not contain the replicated snapshot {keep}",
            remaining=snapshots,
        )
    doomed: list[Snapshot] = [snapshot for snapshot in reversed(snapshots) if snapshot.uuid != keep.uuid]
    if len(doomed) == 0:
        log.info("Nothing to prune on %s", destination)
        return []
    log.info(
        "%s",
        f"{'Would prune' if dry_run else 'Pruning'} {len(doomed)} snapshots of {destination}, keeping {keep}: "
        f"{list_formatter(doomed, separator=', ')}",
    )
    if dry_run:
        return doomed

    deleted: list[Snapshot] = []
    for i, snapshot in enumerate(doomed):
        log.debug("Deleting snapshot %s of %s", snapshot, destination)
        try:
            directory.delete_snapshot(destination, snapshot)
        except Exception as e:
            remaining: list[Snapshot] = doomed[i:]
            raise PruneFailed(
                f"Cannot delete snapshot {snapshot} of destination {destination}: {e}; "
                f"{len(remaining)} snapshots remain undeleted: {list_formatter(remaining, separator=', ')}",
                remaining=remaining,
                failed=snapshot,
            ) from e
        deleted.append(snapshot)
    return deleted
