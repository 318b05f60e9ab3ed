from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


SYNC_MODES = ("full", "private", "blocker")
OWNERSHIP_POLICIES = ("other_sync", "any_owner")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_BLOCKER_TITLE = "Busy"

FILTER_KINDS = frozenset(
    {
        "include_title",
        "exclude_title",
        "include_title_regex",
        "exclude_title_regex",
        "include_location",
        "exclude_location",
        "include_location_regex",
        "exclude_location_regex",
        "include_notes",
        "exclude_notes",
        "include_notes_regex",
        "exclude_notes_regex",
        "include_organizer",
        "exclude_organizer",
        "include_organizer_regex",
        "exclude_organizer_regex",
        "include_attendee",
        "exclude_attendee",
        "duration_longer_than",
        "duration_shorter_than",
        "attendees_count_above",
        "attendees_count_below",
        "include_all_day",
        "exclude_all_day",
        "exclude_all_day_when_free",
        "is_repeating",
        "is_not_repeating",
        "availability_busy",
        "availability_free",
        "ignore_other_syncs",
        # Retained so older configs keep loading; evaluated as no-ops.
        "only_accepted",
        "accepted_or_maybe",
        "accepted_or_tentative",
    }
)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _as_int(value: Any, default: int | None) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_time_of_day(value: Any) -> str | None:
    text = str(value or "").strip()
    parts = text.split(":")
    if len(parts) != 2:
        return None
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour <= 24 and 0 <= minute <= 59) or (hour == 24 and minute != 0):
        return None
    return f"{hour:02d}:{minute:02d}"


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class SyncSettings:
    default_horizon_days: int = 14
    interval_seconds: int = 900
    timezone: str = "UTC"
    diagnostics_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncSettings":
        data = data or {}
        return cls(
            default_horizon_days=max(1, _as_int(data.get("default_horizon_days"), 14)),
            interval_seconds=max(30, _as_int(data.get("interval_seconds"), 900)),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            diagnostics_enabled=bool(data.get("diagnostics_enabled", True)),
        )


@dataclass
class FilterRule:
    kind: str
    pattern: str = ""
    case_sensitive: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilterRule | None":
        kind = str(data.get("kind", "")).strip().lower()
        if kind not in FILTER_KINDS:
            return None
        return cls(
            kind=kind,
            pattern=str(data.get("pattern", "") or ""),
            case_sensitive=bool(data.get("case_sensitive", False)),
        )


@dataclass
class TimeWindow:
    weekday: str
    start: str = "09:00"
    end: str = "17:00"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeWindow | None":
        weekday = str(data.get("weekday", "")).strip().lower()
        if weekday not in WEEKDAYS:
            return None
        start = _parse_time_of_day(data.get("start", "09:00"))
        end = _parse_time_of_day(data.get("end", "17:00"))
        if start is None or end is None:
            return None
        return cls(weekday=weekday, start=start, end=end)

    def bounds_on(self, day: date, tzinfo: Any) -> tuple[datetime, datetime]:
        return _anchor(day, self.start, tzinfo), _anchor(day, self.end, tzinfo)


def _anchor(day: date, hhmm: str, tzinfo: Any) -> datetime:
    hour, minute = (int(part) for part in hhmm.split(":"))
    base = datetime.combine(day, time.min, tzinfo=tzinfo)
    return base + timedelta(hours=hour, minutes=minute)


@dataclass
class SyncDefinition:
    id: str
    name: str = "New Sync"
    source_calendar_id: str = ""
    target_calendar_id: str = ""
    mode: str = "blocker"
    blocker_title_template: str = DEFAULT_BLOCKER_TITLE
    horizon_days_override: int | None = None
    enabled: bool = False
    ownership_policy: str = "other_sync"
    filters: list[FilterRule] = field(default_factory=list)
    time_windows: list[TimeWindow] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncDefinition":
        data = data or {}
        mode = str(data.get("mode", "blocker")).strip().lower()
        if mode not in SYNC_MODES:
            mode = "blocker"
        policy = str(data.get("ownership_policy", "other_sync")).strip().lower()
        if policy not in OWNERSHIP_POLICIES:
            policy = "other_sync"
        horizon_raw = _as_int(data.get("horizon_days_override"), None)
        horizon = max(1, horizon_raw) if horizon_raw is not None else None
        filters = []
        for raw in data.get("filters", []) or []:
            if isinstance(raw, dict):
                rule = FilterRule.from_dict(raw)
                if rule is not None:
                    filters.append(rule)
        windows = []
        for raw in data.get("time_windows", []) or []:
            if isinstance(raw, dict):
                window = TimeWindow.from_dict(raw)
                if window is not None:
                    windows.append(window)
        template = data.get("blocker_title_template")
        return cls(
            id=str(data.get("id", "")).strip() or str(uuid.uuid4()),
            name=str(data.get("name", "New Sync")).strip() or "New Sync",
            source_calendar_id=str(data.get("source_calendar_id", "")).strip(),
            target_calendar_id=str(data.get("target_calendar_id", "")).strip(),
            mode=mode,
            blocker_title_template=DEFAULT_BLOCKER_TITLE if template is None else str(template),
            horizon_days_override=horizon,
            enabled=bool(data.get("enabled", False)),
            ownership_policy=policy,
            filters=filters,
            time_windows=windows,
        )

    def horizon_days(self, default_days: int) -> int:
        return self.horizon_days_override or max(1, default_days)

    def is_runnable(self) -> bool:
        return bool(self.enabled and self.source_calendar_id and self.target_calendar_id)


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    syncs: list[SyncDefinition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncSettings.from_dict(data.get("sync")),
            syncs=[SyncDefinition.from_dict(item) for item in data.get("syncs", []) or [] if isinstance(item, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def get_sync(self, sync_id: str) -> SyncDefinition | None:
        for sync in self.syncs:
            if sync.id == sync_id:
                return sync
        return None


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventRecord:
    calendar_id: str
    uid: str
    summary: str = ""
    description: str = ""
    location: str = ""
    url: str = ""
    organizer: str = ""
    attendees: list[str] = field(default_factory=list)
    start: datetime | None = None
    end: datetime | None = None
    occurrence: datetime | None = None
    all_day: bool = False
    repeating: bool = False
    busy: bool = True
    href: str = ""
    etag: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["occurrence"] = serialize_datetime(self.occurrence)
        return payload

    def clone(self) -> "EventRecord":
        copied = EventRecord(**{key: getattr(self, key) for key in self.__dataclass_fields__})
        copied.attendees = list(self.attendees)
        return copied

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    @property
    def duration_minutes(self) -> int | None:
        if self.start is None or self.end is None:
            return None
        return int((self.end - self.start).total_seconds() // 60)


@dataclass
class MappingRow:
    sync_id: str
    source_event_id: str
    occurrence_key: str
    target_event_id: str
    last_updated: datetime | None = None

    @property
    def key(self) -> str:
        return f"{self.source_event_id}|{self.occurrence_key}"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_updated"] = serialize_datetime(self.last_updated)
        payload["key"] = self.key
        return payload


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    sync_id: str = ""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changes_applied(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "sync_id": self.sync_id,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def horizon_window(now: datetime, horizon_days: int) -> tuple[datetime, datetime]:
    start = _ensure_tz(now)
    return start, start + timedelta(days=max(1, horizon_days))
