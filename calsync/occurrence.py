from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from calsync.models import EventRecord


KEY_SEPARATOR = "|"


@dataclass(frozen=True)
class OccurrenceKey:
    source_id: str
    iso_instant: str
    key: str


def format_instant(value: datetime) -> str:
    """UTC ISO-8601 at second precision, e.g. ``2024-06-03T09:00:00Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    normalized = value.astimezone(timezone.utc).replace(microsecond=0)
    return normalized.strftime("%Y-%m-%dT%H:%M:%SZ")


def make_key(source_id: str, iso_instant: str) -> str:
    return f"{source_id}{KEY_SEPARATOR}{iso_instant}"


def derive_key(
    source_id: str,
    occurrence: datetime | None,
    fallback_start: datetime | None,
    now: datetime | None = None,
) -> OccurrenceKey:
    # Detached overrides keep their original instance date as occurrence,
    # so an edited instance keeps the key it was first mapped under.
    chosen = occurrence or fallback_start or now or datetime.now(timezone.utc)
    iso_instant = format_instant(chosen)
    return OccurrenceKey(source_id=source_id, iso_instant=iso_instant, key=make_key(source_id, iso_instant))


def key_for_event(event: EventRecord, now: datetime | None = None) -> OccurrenceKey:
    return derive_key(event.uid, event.occurrence, event.start, now=now)


def parse_key(key: str) -> tuple[str, str]:
    # Source identifiers may contain the separator; the instant never does.
    source_id, _, iso_instant = key.rpartition(KEY_SEPARATOR)
    return source_id, iso_instant


def parse_instant(iso_instant: str) -> datetime | None:
    try:
        return datetime.strptime(iso_instant, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
