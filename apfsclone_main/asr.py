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
"""Replication executor backed by Apple Software Restore (``asr``), which copies APFS snapshots block by block.

Both restore modes erase the target volume and rename it after the source volume. An incremental restore requires
``--fromSnapshot`` on both volumes, keeps the existing target snapshots and adds ``--toSnapshot``; a full restore leaves
``--toSnapshot`` as the only snapshot of the target.
"""

from __future__ import (
    annotations,
)
import logging
from logging import (
    Logger,
)
from typing import (
    Final,
    Sequence,
)

from apfsclone_main.utils import (
    run_command,
)
from apfsclone_main.volumes import (
    Snapshot,
    Volume,
)


#############################################################################
class ASR:
    """Runs ``asr restore`` to replicate a source snapshot onto a target volume, optionally with a time limit."""

    def __init__(self, log: Logger, program: str = "asr", sudo: Sequence[str] = (), timeout: float | None = None) -> None:
        # immutable variables:
        self.log: Final[Logger] = log
        self.program: Final[str] = program
        self.sudo: Final[tuple[str, ...]] = tuple(sudo)
        self.timeout: Final[float | None] = timeout  # in seconds; None means wait forever

    def replicate(self, source: Volume, destination: Volume, to: Snapshot, from_snapshot: Snapshot) -> None:
        if to.uuid == from_snapshot.uuid:
            raise ValueError(f"Snapshot to restore and base snapshot must differ, but both are {to}")
        self._restore(source, destination, "--toSnapshot", to.uuid, "--fromSnapshot", from_snapshot.uuid)

    def replicate_full(self, source: Volume, destination: Volume, to: Snapshot) -> None:
        self._restore(source, destination, "--toSnapshot", to.uuid)

    def _restore(self, source: Volume, destination: Volume, *snapshot_args: str) -> None:
        if source.uuid == destination.uuid:
            raise ValueError(f"Source and target of a restore must differ, but both are {source}")
        cmd: list[str] = list(self.sudo) + [self.program, "restore"]
        cmd += ["--source", source.device, "--target", destination.device]
        cmd += list(snapshot_args) + ["--erase", "--noprompt"]
        run_command(self.log, cmd, level=logging.INFO, print_stdout=True, timeout=self.timeout)
