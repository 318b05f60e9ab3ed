import tempfile
import unittest
from pathlib import Path

from calsync.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "nested" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_run_lifecycle_and_levels(self) -> None:
        ok = self.store.start_sync_run(sync_id="s1", trigger="manual")
        self.store.finish_sync_run(run_id=ok, status="success", message="done", duration_ms=12, created=2)
        partial = self.store.start_sync_run(sync_id="s1", trigger="scheduled")
        self.store.finish_sync_run(run_id=partial, status="success", message="partial", duration_ms=5, failed=1)
        broken = self.store.start_sync_run(sync_id="s2", trigger="scheduled")
        self.store.finish_sync_run(run_id=broken, status="error", message="boom", duration_ms=1)

        runs = self.store.recent_sync_runs(limit=10)
        self.assertEqual([run["id"] for run in runs], [broken, partial, ok])
        self.assertEqual([run["level"] for run in runs], ["error", "warn", "info"])
        self.assertEqual(self.store.get_sync_run(ok)["created"], 2)
        self.assertEqual(len(self.store.recent_sync_runs(sync_id="s1")), 2)
        self.assertIsNone(self.store.get_sync_run(9999))

    def test_action_logs_flatten_event_snapshots(self) -> None:
        run_id = self.store.start_sync_run(sync_id="s1", trigger="manual")
        self.store.record_action_log(
            run_id=run_id,
            kind="create",
            reason="Missing in target",
            occurrence="a|2024-06-03T09:00:00Z",
            applied=True,
            source={"summary": "Standup", "start": "2024-06-03T09:00:00+00:00"},
            target={"summary": "Busy"},
            target_calendar_id="target",
            target_event_id="t-1",
        )
        self.store.record_action_log(
            run_id=run_id, kind="delete", reason="Source missing", occurrence="b|x", applied=None
        )
        logs = self.store.action_logs_for_run(run_id)
        self.assertEqual(len(logs), 2)
        self.assertTrue(logs[0]["applied"])
        self.assertEqual(logs[0]["source_title"], "Standup")
        self.assertEqual(logs[0]["target_title"], "Busy")
        self.assertIsNone(logs[1]["applied"])
        self.assertIsNone(logs[1]["diagnostic"])

    def test_audit_events_round_trip_details(self) -> None:
        self.store.record_audit_event(sync_id="s1", action="run_error", details={"error": "x"}, run_id=3)
        self.store.record_audit_event(sync_id="s1", action="mapping_adopt", details={"key": "k"})
        events = self.store.recent_audit_events()
        self.assertEqual([event["action"] for event in events], ["mapping_adopt", "run_error"])
        self.assertEqual(events[1]["details"], {"error": "x"})
        self.assertEqual(len(self.store.recent_audit_events(run_id=3)), 1)

    def test_mapping_upsert_and_remove(self) -> None:
        self.store.upsert_mapping(sync_id="s1", source_event_id="a", occurrence_key="o1", target_event_id="t-1")
        self.store.upsert_mapping(sync_id="s1", source_event_id="a", occurrence_key="o1", target_event_id="t-2")
        self.store.upsert_mapping(sync_id="s2", source_event_id="a", occurrence_key="o1", target_event_id="t-3")
        rows = self.store.list_mappings("s1")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].target_event_id, "t-2")
        self.assertEqual(rows[0].key, "a|o1")
        self.assertIsNotNone(rows[0].last_updated)

        self.store.remove_mapping(sync_id="s1", source_event_id="a", occurrence_key="o1")
        self.assertEqual(self.store.list_mappings("s1"), [])
        self.assertEqual(len(self.store.list_mappings("s2")), 1)

    def test_meta_values(self) -> None:
        self.assertIsNone(self.store.get_meta("last_message"))
        self.store.set_meta("last_message", "first")
        self.store.set_meta("last_message", "second")
        self.assertEqual(self.store.get_meta("last_message"), "second")


if __name__ == "__main__":
    unittest.main()
