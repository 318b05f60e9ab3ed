from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationError

from calsync.caldav_client import CalDAVService
from calsync.config_manager import ConfigManager
from calsync.models import SYNC_MODES, AppConfig, SyncDefinition
from calsync.scheduler import SyncScheduler
from calsync.state_store import StateStore
from calsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CalDAVSettingsRequest(BaseModel):
    base_url: str | None = None
    username: str | None = None
    password: str | None = None


class SyncSettingsRequest(BaseModel):
    default_horizon_days: int | None = None
    interval_seconds: int | None = None
    timezone: str | None = None
    diagnostics_enabled: bool | None = None


class FilterRuleRequest(BaseModel):
    kind: str
    pattern: str = ""
    case_sensitive: bool = False


class TimeWindowRequest(BaseModel):
    weekday: str
    start: str = "09:00"
    end: str = "17:00"


class SyncUpsertRequest(BaseModel):
    id: str = ""
    name: str | None = None
    source_calendar_id: str | None = None
    target_calendar_id: str | None = None
    mode: str | None = None
    blocker_title_template: str | None = None
    horizon_days_override: int | None = Field(default=None, ge=1)
    enabled: bool | None = None
    ownership_policy: str | None = None
    filters: list[FilterRuleRequest] | None = None
    time_windows: list[TimeWindowRequest] | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


SECTION_MODELS = {"caldav": CalDAVSettingsRequest, "sync": SyncSettingsRequest}


def _validate_config_payload(payload: dict[str, Any]) -> None:
    for section, model in SECTION_MODELS.items():
        if section not in payload:
            continue
        try:
            model.model_validate(payload[section])
        except ValidationError as exc:
            detail = exc.errors(include_url=False, include_context=False, include_input=False)
            raise HTTPException(status_code=422, detail=detail) from exc


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("caldav", {}).get("password", ""))
    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        caldav = dict(caldav)
        password = caldav.get("password")
        if password is not None and str(password).strip() in {"", "***"}:
            if current_password:
                caldav.pop("password", None)
            else:
                caldav["password"] = ""
        if caldav:
            sanitized["caldav"] = caldav
        else:
            sanitized.pop("caldav", None)
    # Sync definitions are edited through /api/syncs so they merge by id.
    sanitized.pop("syncs", None)
    return sanitized


def _sync_payload(sync: SyncDefinition) -> dict[str, Any]:
    return AppConfig(syncs=[sync]).to_dict()["syncs"][0]


def create_app() -> FastAPI:
    config_path = os.getenv("CALSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Calsync Admin", version="0.1.0")
    app.state.context = context

    def _require_sync(sync_id: str) -> SyncDefinition:
        sync = app.state.context.config_manager.load().get_sync(sync_id)
        if sync is None:
            raise HTTPException(status_code=404, detail="sync not found")
        return sync

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        _validate_config_payload(request.payload)
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        updated = app.state.context.config_manager.update(sanitized_payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked(updated)}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        try:
            calendars = CalDAVService(config.caldav).list_calendars()
        except Exception as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.get("/api/syncs")
    def list_syncs() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        return {"syncs": [_sync_payload(sync) for sync in config.syncs], "modes": list(SYNC_MODES)}

    @app.put("/api/syncs")
    def upsert_sync(request: SyncUpsertRequest) -> dict[str, Any]:
        payload = request.model_dump(exclude_none=True)
        if not payload.get("id"):
            payload.pop("id", None)
        sync = app.state.context.config_manager.upsert_sync(payload)
        return {"message": "sync saved", "sync": _sync_payload(sync)}

    @app.delete("/api/syncs/{sync_id}")
    def delete_sync(sync_id: str) -> dict[str, str]:
        if not app.state.context.config_manager.remove_sync(sync_id):
            raise HTTPException(status_code=404, detail="sync not found")
        return {"message": "sync removed"}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/syncs/{sync_id}/run")
    def run_sync(sync_id: str, dry_run: bool = False) -> dict[str, Any]:
        _require_sync(sync_id)
        trigger = "dry-run" if dry_run else "manual"
        result = app.state.context.sync_engine.run_sync(sync_id, trigger=trigger, dry_run=dry_run)
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/syncs/{sync_id}/preview")
    def preview_sync(sync_id: str) -> dict[str, Any]:
        _require_sync(sync_id)
        try:
            plan = app.state.context.sync_engine.preview(sync_id)
        except Exception as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"plan": plan.to_dict()}

    @app.post("/api/syncs/{sync_id}/purge")
    def purge_sync(sync_id: str) -> dict[str, Any]:
        _require_sync(sync_id)
        results = app.state.context.sync_engine.purge(sync_id)
        return {"message": "purge completed", "results": [result.to_dict() for result in results]}

    @app.get("/api/syncs/{sync_id}/mappings")
    def sync_mappings(sync_id: str) -> dict[str, Any]:
        _require_sync(sync_id)
        rows = app.state.context.state_store.list_mappings(sync_id)
        return {"mappings": [row.to_dict() for row in rows]}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20, sync_id: str | None = None) -> dict[str, Any]:
        return {
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit, sync_id=sync_id),
            "last": app.state.context.sync_engine.last_status(),
        }

    @app.get("/api/runs/{run_id}")
    def run_detail(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = app.state.context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        return {
            "run": run,
            "actions": app.state.context.state_store.action_logs_for_run(run_id, limit=limit),
            "events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app


app = create_app()
