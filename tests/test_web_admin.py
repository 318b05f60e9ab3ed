import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from calsync.models import CalendarInfo, SyncResult
from calsync.planner import Plan
from calsync.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        self.env = mock.patch.dict(
            os.environ,
            {"CALSYNC_CONFIG_PATH": self.config_path, "CALSYNC_STATE_PATH": self.state_path},
        )
        self.env.start()
        self.app = create_app()
        self.client = TestClient(self.app)
        self.context = self.app.state.context

        seed_payload = {
            "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "secret-pass"},
            "sync": {"interval_seconds": 300, "timezone": "Europe/Berlin"},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)
        resp = self.client.put(
            "/api/syncs",
            json={"id": "work", "source_calendar_id": "src", "target_calendar_id": "dst", "enabled": True},
        )
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.env.stop()
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_config_is_masked(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["caldav"]["password"], "***")
        self.assertEqual(resp.json()["sync"]["timezone"], "Europe/Berlin")

    def test_put_config_masked_or_empty_secret_does_not_override(self) -> None:
        for password in ("***", ""):
            resp = self.client.put("/api/config", json={"payload": {"caldav": {"password": password}}})
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["config"]["caldav"]["password"], "***")
        self.assertEqual(self.context.config_manager.load().caldav.password, "secret-pass")

    def test_put_config_ignores_sync_list(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"syncs": [], "sync": {"interval_seconds": 600}}})
        self.assertEqual(resp.status_code, 200)
        config = self.context.config_manager.load()
        self.assertEqual(config.sync.interval_seconds, 600)
        self.assertEqual([sync.id for sync in config.syncs], ["work"])

    def test_put_config_rejects_bad_values(self) -> None:
        for payload in (
            {"sync": {"interval_seconds": "soon"}},
            {"sync": "hourly"},
            {"caldav": {"username": ["u"]}},
        ):
            resp = self.client.put("/api/config", json={"payload": payload})
            self.assertEqual(resp.status_code, 422, payload)
        self.assertEqual(self.context.config_manager.load().sync.interval_seconds, 300)

        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": "600"}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["sync"]["interval_seconds"], 600)

    def test_sync_crud(self) -> None:
        resp = self.client.put(
            "/api/syncs",
            json={"id": "work", "mode": "full", "filters": [{"kind": "exclude_title", "pattern": "lunch"}]},
        )
        self.assertEqual(resp.status_code, 200)
        sync = resp.json()["sync"]
        self.assertEqual((sync["mode"], sync["source_calendar_id"]), ("full", "src"))
        self.assertEqual(sync["filters"], [{"kind": "exclude_title", "pattern": "lunch", "case_sensitive": False}])

        created = self.client.put("/api/syncs", json={"name": "Home"}).json()["sync"]
        self.assertTrue(created["id"])
        listed = self.client.get("/api/syncs").json()["syncs"]
        self.assertEqual(len(listed), 2)

        self.assertEqual(self.client.delete(f"/api/syncs/{created['id']}").status_code, 200)
        self.assertEqual(self.client.delete(f"/api/syncs/{created['id']}").status_code, 404)

    def test_invalid_sync_payload_is_rejected(self) -> None:
        resp = self.client.put("/api/syncs", json={"id": "work", "horizon_days_override": 0})
        self.assertEqual(resp.status_code, 422)

    def test_unknown_sync_returns_404(self) -> None:
        self.assertEqual(self.client.post("/api/syncs/nope/run").status_code, 404)
        self.assertEqual(self.client.get("/api/syncs/nope/preview").status_code, 404)
        self.assertEqual(self.client.post("/api/syncs/nope/purge").status_code, 404)
        self.assertEqual(self.client.get("/api/syncs/nope/mappings").status_code, 404)
        self.assertEqual(self.client.get("/api/runs/123").status_code, 404)

    def test_trigger_sync_uses_scheduler(self) -> None:
        with mock.patch.object(self.context.scheduler, "trigger_manual") as trigger:
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        trigger.assert_called_once()

    def test_run_single_sync_passes_dry_run(self) -> None:
        result = SyncResult(status="success", message="ok", duration_ms=3, trigger="dry-run", sync_id="work")
        with mock.patch.object(self.context.sync_engine, "run_sync", return_value=result) as run_sync:
            resp = self.client.post("/api/syncs/work/run", params={"dry_run": "true"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["sync_id"], "work")
        run_sync.assert_called_once_with("work", trigger="dry-run", dry_run=True)

    def test_preview_and_preview_failure(self) -> None:
        with mock.patch.object(self.context.sync_engine, "preview", return_value=Plan(sync_id="work")):
            resp = self.client.get("/api/syncs/work/preview")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["plan"]["summary"]["created"], 0)

        with mock.patch.object(self.context.sync_engine, "preview", side_effect=RuntimeError("offline")):
            resp = self.client.get("/api/syncs/work/preview")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("offline", resp.json()["detail"])

    def test_list_calendars(self) -> None:
        service = mock.Mock()
        service.list_calendars.return_value = [CalendarInfo(calendar_id="c1", name="Work", url="https://x/c1")]
        with mock.patch("calsync.web_admin.CalDAVService", return_value=service):
            resp = self.client.get("/api/calendars")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["calendars"][0]["name"], "Work")

        service.list_calendars.side_effect = RuntimeError("CalDAV config is incomplete.")
        with mock.patch("calsync.web_admin.CalDAVService", return_value=service):
            resp = self.client.get("/api/calendars")
        self.assertEqual(resp.status_code, 400)

    def test_status_run_detail_and_mappings(self) -> None:
        store = self.context.state_store
        run_id = store.start_sync_run(sync_id="work", trigger="manual")
        store.record_action_log(run_id=run_id, kind="create", reason="Missing in target", occurrence="a|x", applied=True)
        store.finish_sync_run(run_id=run_id, status="success", message="done", duration_ms=4, created=1)
        store.upsert_mapping(sync_id="work", source_event_id="a", occurrence_key="x", target_event_id="t-1")

        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["runs"][0]["id"], run_id)
        self.assertIn("last_success_at", status["last"])

        detail = self.client.get(f"/api/runs/{run_id}").json()
        self.assertEqual(detail["run"]["status"], "success")
        self.assertEqual(detail["actions"][0]["kind"], "create")

        mappings = self.client.get("/api/syncs/work/mappings").json()["mappings"]
        self.assertEqual(mappings[0]["key"], "a|x")
        self.assertEqual(self.client.get("/api/audit/events").json(), {"events": []})


if __name__ == "__main__":
    unittest.main()
