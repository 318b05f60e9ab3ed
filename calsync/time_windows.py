from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.models import WEEKDAYS, TimeWindow


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def allowed_by_time_windows(
    start: datetime | None,
    all_day: bool,
    windows: Iterable[TimeWindow],
    tz: tzinfo = timezone.utc,
) -> bool:
    """Whether ``start`` falls inside a window for its local weekday.

    Windows are half-open: ``[window.start, window.end)``. With no windows
    configured everything is allowed; otherwise all-day events and events
    without a start are rejected.
    """
    windows = list(windows)
    if not windows:
        return True
    if all_day or start is None:
        return False
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    local_start = start.astimezone(tz)
    weekday = WEEKDAYS[local_start.weekday()]
    for window in windows:
        if window.weekday != weekday:
            continue
        window_start, window_end = window.bounds_on(local_start.date(), tz)
        if window_start <= local_start < window_end:
            return True
    return False
