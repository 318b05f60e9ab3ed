from __future__ import annotations

import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Callable

from calsync.caldav_client import CalDAVService
from calsync.config_manager import ConfigManager
from calsync.models import AppConfig, EventRecord, MappingRow, SyncDefinition, SyncResult, horizon_window, serialize_datetime
from calsync.planner import Plan, build_plan, build_purge_plan
from calsync.reconciler import ActionOutcome, ApplyReport, apply_plan
from calsync.state_store import StateStore
from calsync.time_windows import resolve_timezone


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Runs snapshot, plan and apply for each configured sync.

    At most one cycle per sync runs at a time; a second request for a sync
    that is already running is reported as skipped rather than queued.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        provider_factory: Callable[[Any], Any] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.provider_factory = provider_factory
        self.clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, sync_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(sync_id, threading.Lock())

    def _elapsed_ms(self, started_at: datetime) -> int:
        return int((self.clock() - started_at).total_seconds() * 1000)

    def _snapshot(
        self,
        provider: Any,
        sync: SyncDefinition,
        config: AppConfig,
        now: datetime,
    ) -> tuple[list[EventRecord], list[EventRecord], list[MappingRow], datetime]:
        window_start, window_end = horizon_window(now, sync.horizon_days(config.sync.default_horizon_days))
        sources = provider.fetch_events(sync.source_calendar_id, window_start, window_end)
        targets = provider.fetch_events(sync.target_calendar_id, window_start, window_end)
        mappings = self.state_store.list_mappings(sync.id)
        return sources, targets, mappings, window_start

    def _skip(self, sync_id: str, trigger: str, message: str) -> SyncResult:
        run_id = self.state_store.start_sync_run(sync_id=sync_id, trigger=trigger, message=message)
        self.state_store.finish_sync_run(run_id=run_id, status="skipped", message=message, duration_ms=0)
        return SyncResult(status="skipped", message=message, duration_ms=0, trigger=trigger, sync_id=sync_id)

    def _record_actions(
        self, run_id: int, sync: SyncDefinition, plan: Plan, report: ApplyReport, dry_run: bool = False
    ) -> None:
        for outcome in report.outcomes:
            action = outcome.action
            target = action.target or action.payload
            self.state_store.record_action_log(
                run_id=run_id,
                kind=action.kind,
                reason=action.reason,
                occurrence=action.key,
                applied=outcome.applied,
                source=action.source.to_dict() if action.source else None,
                target=target.to_dict() if target else None,
                target_calendar_id=sync.target_calendar_id,
                target_event_id=outcome.target_event_id or (action.target.uid if action.target else ""),
                diagnostic=outcome.error,
            )
        for suppressed in plan.suppressed_deletes:
            self.state_store.record_audit_event(
                sync_id=sync.id,
                run_id=run_id,
                action="suppress_unsafe_delete",
                details=suppressed,
            )
        for delta in plan.standalone_deltas:
            self.state_store.record_audit_event(
                sync_id=sync.id,
                run_id=run_id,
                action=f"planned_mapping_{delta.op}" if dry_run else f"mapping_{delta.op}",
                details=delta.to_dict(),
            )

    def _execute(
        self,
        sync: SyncDefinition,
        *,
        trigger: str,
        config: AppConfig,
        provider: Any,
        purge: bool = False,
        dry_run: bool = False,
    ) -> SyncResult:
        lock = self._lock_for(sync.id)
        if not lock.acquire(blocking=False):
            return self._skip(sync.id, trigger, "A run for this sync is already in progress.")
        try:
            started_at = self.clock()
            run_id = self.state_store.start_sync_run(sync_id=sync.id, trigger=trigger)
            report = ApplyReport()
            try:
                sources, targets, mappings, window_start = self._snapshot(provider, sync, config, started_at)
                if purge:
                    plan = build_purge_plan(sync, targets, mappings)
                else:
                    plan = build_plan(
                        sync,
                        sources,
                        targets,
                        mappings,
                        tz=resolve_timezone(config.sync.timezone),
                        now=started_at,
                        horizon_start=window_start,
                    )
                if dry_run:
                    report = ApplyReport(outcomes=[ActionOutcome(action=action, applied=None) for action in plan.actions])
                else:
                    report = apply_plan(plan, sync, provider, self.state_store)
                if config.sync.diagnostics_enabled or dry_run:
                    self._record_actions(run_id, sync, plan, report, dry_run=dry_run)
            except Exception as exc:
                error_message = f"{type(exc).__name__}: {exc}"
                duration_ms = self._elapsed_ms(started_at)
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    **report.to_dict(),
                )
                self.state_store.record_audit_event(
                    sync_id=sync.id,
                    run_id=run_id,
                    action="run_error",
                    details={
                        "trigger": trigger,
                        "error": error_message,
                        "traceback": traceback.format_exc(limit=5),
                    },
                )
                return SyncResult(
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    trigger=trigger,
                    sync_id=sync.id,
                    **report.to_dict(),
                )

            duration_ms = self._elapsed_ms(started_at)
            verb = "Planned" if dry_run else ("Purged" if purge else "Applied")
            message = (
                f"{verb} {len(plan.actions)} actions c/u/d={report.created}/{report.updated}/{report.deleted} "
                f"failed={report.failed} suppressed={len(plan.suppressed_deletes)}"
            )
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                **report.to_dict(),
            )
            return SyncResult(
                status="success",
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                trigger=trigger,
                sync_id=sync.id,
                **report.to_dict(),
            )
        finally:
            lock.release()

    def _provider_or_skip(self, config: AppConfig, trigger: str) -> tuple[Any, SyncResult | None]:
        if not config.caldav.base_url or not config.caldav.username:
            return None, self._skip("system", trigger, "CalDAV config missing base_url/username. Sync skipped.")
        factory = self.provider_factory or CalDAVService
        return factory(config.caldav), None

    def _remember(self, results: list[SyncResult]) -> None:
        now_text = serialize_datetime(self.clock()) or ""
        failures = [result for result in results if result.status == "error"]
        if failures:
            self.record_failure(failures[0].message)
        elif any(result.status == "success" for result in results):
            self.state_store.set_meta("last_success_at", now_text)
            self.state_store.set_meta("last_message", "Sync completed")

    def record_failure(self, message: str) -> None:
        self.state_store.set_meta("last_failure_at", serialize_datetime(self.clock()) or "")
        self.state_store.set_meta("last_message", f"Sync failed: {message}")

    def run_once(self, trigger: str = "manual") -> list[SyncResult]:
        config = self.config_manager.load()
        provider, skipped = self._provider_or_skip(config, trigger)
        if skipped is not None:
            return [skipped]
        results = [
            self._execute(sync, trigger=trigger, config=config, provider=provider)
            for sync in config.syncs
            if sync.is_runnable()
        ]
        self._remember(results)
        return results

    def run_sync(self, sync_id: str, trigger: str = "manual", dry_run: bool = False) -> SyncResult:
        config = self.config_manager.load()
        sync = config.get_sync(sync_id)
        if sync is None:
            raise KeyError(sync_id)
        provider, skipped = self._provider_or_skip(config, trigger)
        if skipped is not None:
            return skipped
        result = self._execute(sync, trigger=trigger, config=config, provider=provider, dry_run=dry_run)
        if not dry_run:
            self._remember([result])
        return result

    def purge(self, sync_id: str | None = None) -> list[SyncResult]:
        """Delete managed target events; every candidate still passes the deletion gate."""
        config = self.config_manager.load()
        syncs = config.syncs if sync_id is None else [sync for sync in config.syncs if sync.id == sync_id]
        if sync_id is not None and not syncs:
            raise KeyError(sync_id)
        provider, skipped = self._provider_or_skip(config, "purge")
        if skipped is not None:
            return [skipped]
        results = [
            self._execute(sync, trigger="purge", config=config, provider=provider, purge=True)
            for sync in syncs
            if sync.target_calendar_id
        ]
        self._remember(results)
        return results

    def preview(self, sync_id: str) -> Plan:
        config = self.config_manager.load()
        sync = config.get_sync(sync_id)
        if sync is None:
            raise KeyError(sync_id)
        provider, skipped = self._provider_or_skip(config, "preview")
        if skipped is not None:
            raise RuntimeError(skipped.message)
        now = self.clock()
        sources, targets, mappings, window_start = self._snapshot(provider, sync, config, now)
        return build_plan(
            sync,
            sources,
            targets,
            mappings,
            tz=resolve_timezone(config.sync.timezone),
            now=now,
            horizon_start=window_start,
        )

    def last_status(self) -> dict[str, str | None]:
        return {
            "last_success_at": self.state_store.get_meta("last_success_at"),
            "last_failure_at": self.state_store.get_meta("last_failure_at"),
            "last_message": self.state_store.get_meta("last_message"),
        }
