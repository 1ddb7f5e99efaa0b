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
"""Orchestrates one clone: plan, then replicate according to the plan, then optionally prune the destination.

Replication runs only once planning succeeded, and pruning runs only once replication succeeded and the replicated
snapshot is confirmed to exist on the destination. A destination that is already current is left untouched.
"""

from __future__ import (
    annotations,
)
import time
from logging import (
    Logger,
)
from typing import (
    Final,
)

from apfsclone_main.errors import (
    ExecutionFailed,
)
from apfsclone_main.planner import (
    AlreadyCurrent,
    FullPlan,
    IncrementalPlan,
    ReplicationPlan,
    describe_plan,
    plan_replication,
)
from apfsclone_main.pruner import (
    prune_snapshots,
)
from apfsclone_main.utils import (
    human_readable_duration,
)
from apfsclone_main.validation import (
    check_cloneable,
)
from apfsclone_main.volumes import (
    ReplicationExecutor,
    Volume,
    VolumeDirectory,
)


#############################################################################
class Cloner:
    """Clones a source volume onto destination volumes via the given volume directory and replication executor."""

    def __init__(
        self,
        directory: VolumeDirectory,
        executor: ReplicationExecutor,
        log: Logger,
        prune: bool = False,
        dry_run: bool = False,
    ) -> None:
        # immutable variables:
        self.directory: Final[VolumeDirectory] = directory
        self.executor: Final[ReplicationExecutor] = executor
        self.log: Final[Logger] = log
        self.prune: Final[bool] = prune
        self.dry_run: Final[bool] = dry_run

    def cloneable(self, source: str, *destinations: str) -> tuple[Volume, list[Volume]]:
        """Raises the EligibilityError of the first violated rule; returns the resolved volumes otherwise."""
        return check_cloneable(self.directory, source, list(destinations), self.log)

    def clone(self, source: str, destination: str) -> ReplicationPlan:
        """Brings destination up to date with the newest snapshot of source and returns the plan that was carried out.

        Raises EligibilityError or PlanningError if nothing was attempted, ExecutionFailed if replication failed and the
        destination may be inconsistent, and PruneFailed if replication succeeded but retention cleanup did not.
        """
        plan: ReplicationPlan = plan_replication(self.directory, source, destination, self.log)
        if isinstance(plan, AlreadyCurrent):
            return plan
        if self.dry_run:
            self.log.info("Dry run: would execute: %s", describe_plan(plan))
            if self.prune:
                self._report_prune(plan)
            return plan

        dst: Volume = plan.destination
        start_time_nanos: int = time.monotonic_ns()
        try:
            if isinstance(plan, IncrementalPlan):
                self.executor.replicate(plan.source, dst, plan.to, plan.from_snapshot)
            else:
                assert isinstance(plan, FullPlan)
                self.executor.replicate_full(plan.source, dst, plan.to)
        except Exception as e:
            raise ExecutionFailed(f"Replication of {plan.source} to {dst} failed: {e}") from e
        elapsed: str = human_readable_duration(time.monotonic_ns() - start_time_nanos)
        self.log.info("Replicated snapshot %s to %s in %s", plan.to, dst, elapsed)
        self._restore_volume_name(dst)
        self._confirm_replicated(plan)
        if self.prune:
            prune_snapshots(self.directory, dst, plan.to, self.log)
        return plan

    def _report_prune(self, plan: IncrementalPlan | FullPlan) -> None:
        """Logs which destination snapshots a real run would prune once the plan is carried out."""
        if isinstance(plan, FullPlan):
            self.log.info("Dry run: would prune nothing on %s; the full restore leaves only %s", plan.destination, plan.to)
            return
        prune_snapshots(self.directory, plan.destination, plan.to, self.log, dry_run=True)

    def _restore_volume_name(self, dst: Volume) -> None:
        """Renames the destination back to its name from before replication; a restore renames it after the source."""
        try:
            current: Volume = self.directory.resolve(dst.uuid)
            if current.name != dst.name:
                self.log.info("Renaming %s back to %s", current, dst.name)
                self.directory.rename(current, dst.name)
        except Exception as e:
            raise ExecutionFailed(f"Cannot restore the name {dst.name!r} of destination volume {dst.uuid}: {e}") from e

    def _confirm_replicated(self, plan: IncrementalPlan | FullPlan) -> None:
        dst: Volume = plan.destination
        try:
            found: bool = any(snapshot.uuid == plan.to.uuid for snapshot in self.directory.history(dst))
        except Exception as e:
            raise ExecutionFailed(f"Cannot list snapshots of destination {dst} after replication: {e}") from e
        if not found:
            raise ExecutionFailed(f"Replicated snapshot {plan.to} is missing on destination {dst} after replication")
