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
"""Decides how to bring one destination volume up to date with the newest snapshot of a source volume.

The plan is one of three shapes: the destination already holds the newest source snapshot (nothing to do), the two
histories share a snapshot (incremental transfer of the delta since that snapshot), or they share nothing (destructive full
transfer that replaces the destination's content and history). Planning is read-only; it never mutates any volume.
"""

from __future__ import (
    annotations,
)
from dataclasses import (
    dataclass,
)
from logging import (
    Logger,
)
from typing import (
    Union,
)

from apfsclone_main.history import (
    latest_common_snapshot,
    newest_snapshot,
    snapshots_newer_than,
    verify_newest_first,
)
from apfsclone_main.utils import (
    LOG_DEBUG,
    list_formatter,
)
from apfsclone_main.validation import (
    check_cloneable,
)
from apfsclone_main.volumes import (
    Snapshot,
    Volume,
    VolumeDirectory,
)


#############################################################################
@dataclass(frozen=True)
class IncrementalPlan:
    """Transfer the delta between ``from_snapshot`` and ``to``; other destination snapshots are preserved."""

    source: Volume
    destination: Volume
    to: Snapshot
    from_snapshot: Snapshot


@dataclass(frozen=True)
class FullPlan:
    """Discard the destination's content and history and transfer ``to`` in full."""

    source: Volume
    destination: Volume
    to: Snapshot


@dataclass(frozen=True)
class AlreadyCurrent:
    """The destination already holds ``snapshot``, the newest source snapshot."""

    source: Volume
    destination: Volume
    snapshot: Snapshot


ReplicationPlan = Union[IncrementalPlan, FullPlan, AlreadyCurrent]


def describe_plan(plan: ReplicationPlan) -> str:
    """Returns a one-line human readable description of the plan."""
    if isinstance(plan, AlreadyCurrent):
        return f"Destination {plan.destination} is already up to date with source snapshot {plan.snapshot}"
    if isinstance(plan, IncrementalPlan):
        return (
            f"Incremental replication of {plan.source} to {plan.destination} "
            f"from snapshot {plan.from_snapshot} to snapshot {plan.to}"
        )
    assert isinstance(plan, FullPlan)
    return (
        f"Full replication of {plan.source} to {plan.destination} up to snapshot {plan.to}; "
        f"all existing content and snapshots of {plan.destination} will be erased"
    )


def plan_replication(directory: VolumeDirectory, source: str, destination: str, log: Logger) -> ReplicationPlan:
    """Validates the pair, compares both snapshot histories and returns the plan for bringing destination up to date.

    A destination that holds snapshots newer than the shared snapshot, but which the source does not have, has diverged.
    Such snapshots are reported with a warning and left in place; they do not affect the plan.
    """
    src, dsts = check_cloneable(directory, source, [destination], log)
    dst: Volume = dsts[0]
    src_snapshots: list[Snapshot] = directory.history(src)
    dst_snapshots: list[Snapshot] = directory.history(dst)
    verify_newest_first(src, src_snapshots)
    verify_newest_first(dst, dst_snapshots)
    log.log(LOG_DEBUG, "Source snapshots of %s: %s", src, list_formatter(src_snapshots, separator=", "))
    log.log(LOG_DEBUG, "Destination snapshots of %s: %s", dst, list_formatter(dst_snapshots, separator=", "))

    to: Snapshot = newest_snapshot(src, src_snapshots)
    anchor: Snapshot | None = latest_common_snapshot(src_snapshots, dst_snapshots)
    log.log(LOG_DEBUG, "Newest source snapshot: %s, latest common snapshot: %s", to, anchor)

    plan: ReplicationPlan
    if anchor is None:
        plan = FullPlan(src, dst, to)
    else:
        plan = AlreadyCurrent(src, dst, to) if anchor.uuid == to.uuid else IncrementalPlan(src, dst, to, anchor)
        diverged: list[Snapshot] = snapshots_newer_than(dst_snapshots, anchor)
        if len(diverged) > 0:
            log.warning(
                "Destination %s has diverged from source %s; these destination snapshots are newer than the latest "
                "common snapshot %s and are left in place: %s",
                dst,
                src,
                anchor,
                list_formatter(diverged, separator=", "),
            )
    log.info("%s", describe_plan(plan))
    return plan
