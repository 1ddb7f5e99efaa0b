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
"""Unit tests for the volume index and the snapshot history helpers."""

from __future__ import (
    annotations,
)
import itertools
import unittest
from datetime import (
    datetime,
    timedelta,
    timezone,
)

from apfsclone_main.errors import (
    HistoryOrderingViolation,
    NoSourceHistory,
    VolumeNotFound,
)
from apfsclone_main.history import (
    latest_common_snapshot,
    newest_snapshot,
    snapshots_newer_than,
    verify_newest_first,
)
from apfsclone_main.volumes import (
    Snapshot,
    Volume,
    VolumeIndex,
)
from apfsclone_tests.fakes import (
    SNAP_NEW,
    SNAP_OLD,
    SNAP_OTHER,
    SOURCE,
    TARGET,
    make_snapshot,
)
from apfsclone_tests.tools import (
    stop_on_failure_subtest,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestVolume,
        TestVolumeIndex,
        TestVerifyNewestFirst,
        TestLatestCommonSnapshot,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


T0: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)


def snaps(*ids: int) -> list[Snapshot]:
    """Returns snapshots whose creation time grows with their id, in the given order."""
    return [make_snapshot(f"S{i}", T0 + timedelta(hours=i)) for i in ids]


#############################################################################
class TestVolume(unittest.TestCase):

    def test_aliases(self) -> None:
        self.assertEqual(
            (SOURCE.uuid, "source", "/Volumes/source", "/dev/disk4s1", "disk4s1"),
            SOURCE.aliases(),
        )
        self.assertTrue(SOURCE.mounted)

    def test_aliases_of_unmounted_volume_without_device(self) -> None:
        volume = Volume(uuid="U1", name="data")
        self.assertEqual(("U1", "data"), volume.aliases())
        self.assertFalse(volume.mounted)

    def test_str(self) -> None:
        self.assertEqual(f"target ({TARGET.uuid})", str(TARGET))
        self.assertEqual(f"{SNAP_OLD.name} ({SNAP_OLD.uuid})", str(SNAP_OLD))


#############################################################################
class TestVolumeIndex(unittest.TestCase):

    def test_lookup_by_every_alias(self) -> None:
        index = VolumeIndex()
        index.add(SOURCE)
        index.add(TARGET)
        self.assertEqual(2, len(index))
        for alias in TARGET.aliases():
            with stop_on_failure_subtest(alias=alias):
                self.assertEqual(TARGET, index.lookup(alias))

    def test_lookup_unknown_identifier(self) -> None:
        index = VolumeIndex()
        index.add(SOURCE)
        with self.assertRaises(VolumeNotFound) as cm:
            index.lookup("nonexistent")
        self.assertIn("nonexistent", str(cm.exception))

    def test_lookup_ambiguous_name(self) -> None:
        index = VolumeIndex()
        index.add(TARGET)
        index.add(Volume(uuid="OTHER-UUID", name=TARGET.name, device="/dev/disk9s1"))
        with self.assertRaises(VolumeNotFound) as cm:
            index.lookup(TARGET.name)
        self.assertIn("ambiguous", str(cm.exception))
        self.assertEqual(TARGET, index.lookup(TARGET.uuid))  # unique aliases still resolve
        self.assertEqual("OTHER-UUID", index.lookup("disk9s1").uuid)

    def test_add_duplicate_uuid(self) -> None:
        index = VolumeIndex()
        index.add(SOURCE)
        with self.assertRaises(ValueError):
            index.add(SOURCE)


#############################################################################
class TestVerifyNewestFirst(unittest.TestCase):

    def test_accepts_strictly_decreasing(self) -> None:
        verify_newest_first(SOURCE, [])
        verify_newest_first(SOURCE, snaps(1))
        verify_newest_first(SOURCE, snaps(3, 2, 1))
        verify_newest_first(SOURCE, [SNAP_NEW, SNAP_OLD])

    def test_rejects_oldest_first(self) -> None:
        with self.assertRaises(HistoryOrderingViolation) as cm:
            verify_newest_first(TARGET, snaps(1, 2))
        self.assertIn(str(TARGET), str(cm.exception))
        self.assertIn("S1", str(cm.exception))

    def test_rejects_equal_creation_times(self) -> None:
        a = make_snapshot("A", T0)
        b = make_snapshot("B", T0)
        with self.assertRaises(HistoryOrderingViolation):
            verify_newest_first(TARGET, [a, b])

    def test_rejects_duplicate_uuid(self) -> None:
        with self.assertRaises(HistoryOrderingViolation):
            verify_newest_first(TARGET, [SNAP_NEW, SNAP_OLD, SNAP_OLD])

    def test_newest_snapshot(self) -> None:
        self.assertEqual(SNAP_NEW, newest_snapshot(SOURCE, [SNAP_NEW, SNAP_OLD]))
        with self.assertRaises(NoSourceHistory) as cm:
            newest_snapshot(SOURCE, [])
        self.assertIn(str(SOURCE), str(cm.exception))


#############################################################################
class TestLatestCommonSnapshot(unittest.TestCase):

    def test_scenarios(self) -> None:
        self.assertEqual(SNAP_OLD, latest_common_snapshot([SNAP_NEW, SNAP_OLD], [SNAP_OLD]))
        self.assertEqual(SNAP_NEW, latest_common_snapshot([SNAP_NEW, SNAP_OLD], [SNAP_NEW, SNAP_OLD]))
        self.assertEqual(SNAP_OLD, latest_common_snapshot([SNAP_NEW, SNAP_OLD], [SNAP_OTHER, SNAP_OLD]))
        self.assertIsNone(latest_common_snapshot([SNAP_NEW, SNAP_OLD], []))
        self.assertIsNone(latest_common_snapshot([], [SNAP_OLD]))
        self.assertIsNone(latest_common_snapshot([SNAP_NEW], [SNAP_OLD]))

    def test_matches_by_uuid_not_name(self) -> None:
        renamed = Snapshot(uuid=SNAP_OLD.uuid, name="renamed", created=SNAP_OLD.created)
        self.assertEqual(SNAP_OLD, latest_common_snapshot([SNAP_NEW, SNAP_OLD], [renamed]))

    def test_result_is_newest_shared_snapshot_for_all_subsets(self) -> None:
        """The result is in both histories and no newer source snapshot is on the destination."""
        universe: list[Snapshot] = snaps(5, 4, 3, 2, 1)
        subsets: list[list[Snapshot]] = [
            [snapshot for snapshot, keep in zip(universe, mask) if keep]
            for mask in itertools.product([False, True], repeat=len(universe))
        ]
        for src in subsets:
            for dst in subsets:
                with stop_on_failure_subtest(src=[s.uuid for s in src], dst=[s.uuid for s in dst]):
                    anchor = latest_common_snapshot(src, dst)
                    shared = [s for s in src if s in dst]
                    if anchor is None:
                        self.assertEqual([], shared)
                    else:
                        self.assertIn(anchor, src)
                        self.assertIn(anchor, dst)
                        self.assertEqual(shared[0], anchor)

    def test_snapshots_newer_than(self) -> None:
        self.assertEqual([SNAP_OTHER], snapshots_newer_than([SNAP_OTHER, SNAP_OLD], SNAP_OLD))
        self.assertEqual([], snapshots_newer_than([SNAP_NEW, SNAP_OLD], SNAP_NEW))
        self.assertEqual([SNAP_OLD], snapshots_newer_than([SNAP_OLD], SNAP_NEW))
