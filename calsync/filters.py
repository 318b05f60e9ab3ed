from __future__ import annotations

import re
from typing import Callable, Iterable

from calsync.marker import decode_marker
from calsync.models import EventRecord, FilterRule


DEPRECATED_KINDS = frozenset({"only_accepted", "accepted_or_maybe", "accepted_or_tentative"})

_TEXT_FIELDS: dict[str, Callable[[EventRecord], str]] = {
    "title": lambda event: event.summary or "",
    "location": lambda event: event.location or "",
    "notes": lambda event: event.description or "",
    "organizer": lambda event: event.organizer or "",
}


def contains(text: str, pattern: str, case_sensitive: bool) -> bool:
    if case_sensitive:
        return pattern in text
    return pattern.casefold() in text.casefold()


def regex_matches(text: str, pattern: str, case_sensitive: bool) -> bool:
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        compiled = re.compile(pattern, flags)
    except re.error:
        return False
    return compiled.search(text) is not None


def _parse_threshold(pattern: str) -> int | None:
    try:
        return int(pattern.strip())
    except ValueError:
        return None


def _text_rule(rule: FilterRule, event: EventRecord) -> bool:
    # kind looks like include_title, exclude_notes_regex, ...
    parts = rule.kind.split("_")
    include = parts[0] == "include"
    use_regex = parts[-1] == "regex"
    value = _TEXT_FIELDS[parts[1]](event)
    matcher = regex_matches if use_regex else contains
    matched = matcher(value, rule.pattern, rule.case_sensitive)
    return matched if include else not matched


def _owned_elsewhere(event: EventRecord, sync_id: str, ownership_policy: str) -> bool:
    marker = decode_marker(event.description, event.url)
    if marker is None:
        return False
    if ownership_policy == "any_owner":
        return True
    return marker.sync_id is not None and marker.sync_id != sync_id


def rule_passes(rule: FilterRule, event: EventRecord, sync_id: str, ownership_policy: str = "other_sync") -> bool:
    kind = rule.kind
    if kind in DEPRECATED_KINDS:
        return True
    prefix, _, rest = kind.partition("_")
    if prefix in {"include", "exclude"} and rest.split("_")[0] in _TEXT_FIELDS:
        return _text_rule(rule, event)
    if kind == "include_attendee":
        return any(contains(name, rule.pattern, rule.case_sensitive) for name in event.attendees)
    if kind == "exclude_attendee":
        return not any(contains(name, rule.pattern, rule.case_sensitive) for name in event.attendees)
    if kind in {"duration_longer_than", "duration_shorter_than"}:
        minutes = event.duration_minutes
        threshold = _parse_threshold(rule.pattern)
        if minutes is None or threshold is None:
            return True
        if kind == "duration_longer_than":
            return minutes > threshold
        return minutes < threshold
    if kind in {"attendees_count_above", "attendees_count_below"}:
        threshold = _parse_threshold(rule.pattern)
        if threshold is None:
            return True
        if kind == "attendees_count_above":
            return len(event.attendees) > threshold
        return len(event.attendees) < threshold
    if kind == "include_all_day":
        return event.all_day
    if kind == "exclude_all_day":
        return not event.all_day
    if kind == "exclude_all_day_when_free":
        return not (event.all_day and not event.busy)
    if kind == "is_repeating":
        return event.repeating
    if kind == "is_not_repeating":
        return not event.repeating
    if kind == "availability_busy":
        return event.busy
    if kind == "availability_free":
        return not event.busy
    if kind == "ignore_other_syncs":
        return not _owned_elsewhere(event, sync_id, ownership_policy)
    # Unknown kinds are dropped at config load; anything else fails closed.
    return False


def passes_filters(
    event: EventRecord,
    rules: Iterable[FilterRule],
    sync_id: str,
    ownership_policy: str = "other_sync",
) -> bool:
    for rule in rules:
        if not rule_passes(rule, event, sync_id, ownership_policy):
            return False
    return True
