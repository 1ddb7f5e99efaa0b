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
"""Exception hierarchy of apfsclone; every failure names the rule or step that failed and the volume or snapshot that
triggered it.

Validation and planning errors indicate a precondition the caller must fix and are never retried. ExecutionFailed means the
destination may be inconsistent, whereas PruneFailed means replication succeeded and only the cleanup is incomplete.
"""

from __future__ import (
    annotations,
)
from typing import (
    TYPE_CHECKING,
    Sequence,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from apfsclone_main.volumes import (
        Snapshot,
    )


#############################################################################
class CloneError(RuntimeError):
    """Base class of all errors raised by the clone planning and validation engine."""


#############################################################################
class EligibilityError(CloneError):
    """A source/destination pair violates one of the eligibility rules checked before any replication."""


class VolumeNotFound(EligibilityError):
    """An identifier resolves to no volume, or ambiguously to more than one volume."""


class DuplicateDestination(EligibilityError):
    """Two destination identifiers resolve to the same volume."""


class SourceEqualsDestination(EligibilityError):
    """A destination resolves to the source volume."""


class DestinationNotWritable(EligibilityError):
    """A destination volume is unmounted or mounted read-only."""


class UnsupportedFilesystem(EligibilityError):
    """A destination volume does not support versioned snapshots, i.e. is not APFS."""


class CaseSensitivityMismatch(EligibilityError):
    """A destination volume's case sensitivity differs from the source's."""


#############################################################################
class PlanningError(CloneError):
    """The snapshot histories do not permit building a replication plan."""


class NoSourceHistory(PlanningError):
    """The source volume has no snapshot, so there is nothing to replicate."""


class HistoryOrderingViolation(PlanningError):
    """A snapshot history listing is not strictly ordered by creation time."""


#############################################################################
class ExecutionFailed(CloneError):
    """Replication failed; the destination may be inconsistent. The collaborator failure is chained as __cause__."""


#############################################################################
class PruneFailed(CloneError):
    """Replication succeeded but retention pruning is incomplete; the destination is consistent but larger than intended."""

    def __init__(self, message: str, remaining: Sequence[Snapshot] = (), failed: Snapshot | None = None) -> None:
        super().__init__(message)
        # immutable variables:
        self.remaining: tuple[Snapshot, ...] = tuple(remaining)
        self.failed: Snapshot | None = failed


#############################################################################
class CommandError(Exception):
    """An external command such as diskutil or asr failed; raised by the adapters, never by the core."""

    def __init__(self, cmd: Sequence[str], returncode: int | None, stderr: str) -> None:
        self.cmd: tuple[str, ...] = tuple(cmd)
        self.returncode: int | None = returncode
        self.stderr: str = stderr
        status = f"exit status {returncode}" if returncode is not None else "no exit status"
        super().__init__(f"`{' '.join(self.cmd)}` failed ({status}) with stderr: {stderr.strip()}")
