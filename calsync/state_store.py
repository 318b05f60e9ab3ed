from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from calsync.models import MappingRow, parse_iso_datetime


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sync_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            finished_at TEXT,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            level TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            failed INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS action_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            kind TEXT NOT NULL,
            reason TEXT NOT NULL,
            applied INTEGER,
            occurrence TEXT NOT NULL,
            source_title TEXT,
            source_start TEXT,
            source_end TEXT,
            target_title TEXT,
            target_start TEXT,
            target_end TEXT,
            target_calendar_id TEXT,
            target_event_id TEXT,
            diagnostic TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            sync_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_mappings (
            sync_id TEXT NOT NULL,
            source_event_id TEXT NOT NULL,
            occurrence_key TEXT NOT NULL,
            target_event_id TEXT NOT NULL,
            last_updated TEXT NOT NULL,
            PRIMARY KEY (sync_id, source_event_id, occurrence_key)
        );

        CREATE INDEX IF NOT EXISTS idx_event_mappings_target
            ON event_mappings(sync_id, target_event_id);

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def start_sync_run(self, *, sync_id: str, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        sync_id, run_at, trigger, status, level, message,
                        duration_ms, created, updated, deleted, failed
                    )
                    VALUES (?, ?, ?, 'running', 'info', ?, 0, 0, 0, 0, 0)
                    """,
                    (sync_id, _utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        failed: int = 0,
    ) -> None:
        level = "error" if status == "error" else ("warn" if failed else "info")
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, level = ?, message = ?, finished_at = ?, duration_ms = ?,
                        created = ?, updated = ?, deleted = ?, failed = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        level,
                        str(message),
                        _utc_now(),
                        int(duration_ms),
                        int(created),
                        int(updated),
                        int(deleted),
                        int(failed),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, sync_id: str | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, sync_id, run_at, finished_at, trigger, status, level, message,
                   duration_ms, created, updated, deleted, failed
            FROM sync_runs
        """
        params: tuple[Any, ...] = (max(1, limit),)
        if sync_id is not None:
            query += " WHERE sync_id = ?"
            params = (sync_id, max(1, limit))
        query += " ORDER BY id DESC LIMIT ?"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def get_sync_run(self, run_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (int(run_id),)).fetchone()
        return dict(row) if row else None

    def record_action_log(
        self,
        *,
        run_id: int,
        kind: str,
        reason: str,
        occurrence: str,
        applied: bool | None,
        source: dict[str, Any] | None = None,
        target: dict[str, Any] | None = None,
        target_calendar_id: str = "",
        target_event_id: str = "",
        diagnostic: str = "",
    ) -> None:
        source = source or {}
        target = target or {}
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO action_logs(
                        run_id, created_at, kind, reason, applied, occurrence,
                        source_title, source_start, source_end,
                        target_title, target_start, target_end,
                        target_calendar_id, target_event_id, diagnostic
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(run_id),
                        _utc_now(),
                        kind,
                        reason,
                        None if applied is None else int(bool(applied)),
                        occurrence,
                        source.get("summary"),
                        source.get("start"),
                        source.get("end"),
                        target.get("summary"),
                        target.get("start"),
                        target.get("end"),
                        target_calendar_id or None,
                        target_event_id or None,
                        diagnostic or None,
                    ),
                )
                conn.commit()

    def action_logs_for_run(self, run_id: int, limit: int = 500) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM action_logs
                    WHERE run_id = ?
                    ORDER BY id ASC
                    LIMIT ?
                    """,
                    (int(run_id), max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            if item["applied"] is not None:
                item["applied"] = bool(item["applied"])
            output.append(item)
        return output

    def record_audit_event(
        self,
        *,
        sync_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, sync_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), sync_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, sync_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, sync_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def list_mappings(self, sync_id: str) -> list[MappingRow]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT sync_id, source_event_id, occurrence_key, target_event_id, last_updated
                    FROM event_mappings
                    WHERE sync_id = ?
                    ORDER BY occurrence_key, source_event_id
                    """,
                    (sync_id,),
                ).fetchall()
        return [
            MappingRow(
                sync_id=row["sync_id"],
                source_event_id=row["source_event_id"],
                occurrence_key=row["occurrence_key"],
                target_event_id=row["target_event_id"],
                last_updated=parse_iso_datetime(row["last_updated"]),
            )
            for row in rows
        ]

    def upsert_mapping(
        self,
        *,
        sync_id: str,
        source_event_id: str,
        occurrence_key: str,
        target_event_id: str,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO event_mappings(sync_id, source_event_id, occurrence_key, target_event_id, last_updated)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(sync_id, source_event_id, occurrence_key) DO UPDATE SET
                        target_event_id = excluded.target_event_id,
                        last_updated = excluded.last_updated
                    """,
                    (sync_id, source_event_id, occurrence_key, target_event_id, _utc_now()),
                )
                conn.commit()

    def remove_mapping(self, *, sync_id: str, source_event_id: str, occurrence_key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    DELETE FROM event_mappings
                    WHERE sync_id = ? AND source_event_id = ? AND occurrence_key = ?
                    """,
                    (sync_id, source_event_id, occurrence_key),
                )
                conn.commit()

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])
