import unittest
from datetime import datetime, timedelta, timezone

from calsync.marker import encode_marker
from calsync.matcher import TargetIndex, resolve_twin
from calsync.models import EventRecord, MappingRow

START = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)
KEY = "src-1|2024-06-03T09:00:00Z"


def _target(uid: str, sync_id: str | None = "s1", summary: str = "Busy") -> EventRecord:
    description = encode_marker(sync_id, "src-1", "2024-06-03T09:00:00Z") if sync_id else ""
    return EventRecord(
        calendar_id="target",
        uid=uid,
        summary=summary,
        description=description,
        start=START,
        end=START + timedelta(hours=1),
    )


class ResolveTwinTests(unittest.TestCase):
    def test_mapping_row_is_primary(self) -> None:
        index = TargetIndex.build([_target("t-2"), _target("t-1")])
        mapping = {KEY: MappingRow("s1", "src-1", "2024-06-03T09:00:00Z", "t-2")}
        match = resolve_twin(KEY, "Busy", START, mapping, index, set())
        self.assertEqual(match.target.uid, "t-2")
        self.assertEqual(match.via, "mapping")

    def test_loose_fallback_picks_smallest_uid(self) -> None:
        index = TargetIndex.build([_target("t-b"), _target("t-a")])
        match = resolve_twin(KEY, "Busy", START, {}, index, set())
        self.assertEqual(match.target.uid, "t-a")
        self.assertEqual(match.via, "loose")

    def test_loose_fallback_skips_unmarked_claimed_and_reserved(self) -> None:
        index = TargetIndex.build([_target("t-a", sync_id=None), _target("t-b"), _target("t-c")])
        match = resolve_twin(KEY, "Busy", START, {}, index, {"t-b"}, reserved={"t-c"})
        self.assertIsNone(match)

    def test_loose_fallback_respects_owner(self) -> None:
        index = TargetIndex.build([_target("t-a", sync_id="s2")])
        self.assertIsNone(resolve_twin(KEY, "Busy", START, {}, index, set(), owner="s1"))
        self.assertIsNotNone(resolve_twin(KEY, "Busy", START, {}, index, set(), owner="s2"))

    def test_title_or_start_mismatch_is_no_match(self) -> None:
        index = TargetIndex.build([_target("t-a")])
        self.assertIsNone(resolve_twin(KEY, "Other", START, {}, index, set()))
        self.assertIsNone(resolve_twin(KEY, "Busy", START + timedelta(minutes=1), {}, index, set()))
        self.assertIsNone(resolve_twin(KEY, "Busy", None, {}, index, set()))


if __name__ == "__main__":
    unittest.main()
