from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable

from calsync.deletion import may_delete
from calsync.filters import passes_filters
from calsync.marker import embed_marker, encode_marker, strip_marker
from calsync.matcher import TargetIndex, resolve_twin
from calsync.models import DEFAULT_BLOCKER_TITLE, EventRecord, MappingRow, SyncDefinition, serialize_datetime
from calsync.occurrence import OccurrenceKey, key_for_event, parse_instant
from calsync.time_windows import allowed_by_time_windows


TITLE_TOKEN = "{sourceTitle}"


@dataclass
class MappingDelta:
    op: str  # insert | touch | adopt | remove | prune
    key: str
    source_event_id: str
    occurrence_key: str
    target_event_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "key": self.key,
            "source_event_id": self.source_event_id,
            "occurrence_key": self.occurrence_key,
            "target_event_id": self.target_event_id,
        }


@dataclass
class PlanAction:
    kind: str  # create | update | delete
    key: str
    reason: str
    source: EventRecord | None = None
    target: EventRecord | None = None
    payload: EventRecord | None = None
    delta: MappingDelta | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "key": self.key,
            "reason": self.reason,
            "source": self.source.to_dict() if self.source else None,
            "target": self.target.to_dict() if self.target else None,
        }


@dataclass
class Plan:
    sync_id: str
    actions: list[PlanAction] = field(default_factory=list)
    standalone_deltas: list[MappingDelta] = field(default_factory=list)
    suppressed_deletes: list[dict[str, str]] = field(default_factory=list)

    @property
    def mapping_deltas(self) -> list[MappingDelta]:
        deltas = [action.delta for action in self.actions if action.delta is not None]
        return deltas + list(self.standalone_deltas)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def count(self, kind: str) -> int:
        return sum(1 for action in self.actions if action.kind == kind)

    def summary(self) -> dict[str, int]:
        return {
            "created": self.count("create"),
            "updated": self.count("update"),
            "deleted": self.count("delete"),
            "suppressed_deletes": len(self.suppressed_deletes),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "sync_id": self.sync_id,
            "summary": self.summary(),
            "actions": [action.to_dict() for action in self.actions],
            "mapping_deltas": [delta.to_dict() for delta in self.mapping_deltas],
            "suppressed_deletes": list(self.suppressed_deletes),
        }


def render_title(sync: SyncDefinition, source: EventRecord) -> str:
    # Stripped to match how SUMMARY reads back from the server.
    if sync.mode != "blocker":
        return (source.summary or "").strip()
    template = sync.blocker_title_template or DEFAULT_BLOCKER_TITLE
    return template.replace(TITLE_TOKEN, source.summary or "").strip()


def needs_update(sync: SyncDefinition, source: EventRecord, target: EventRecord) -> list[str]:
    """Names of mode-relevant fields that differ between source and twin."""
    changed = []
    if render_title(sync, source) != (target.summary or "").strip():
        changed.append("title")
    if source.start != target.start:
        changed.append("start")
    if source.end != target.end:
        changed.append("end")
    if sync.mode != "blocker" and (source.location or "").strip() != (target.location or "").strip():
        changed.append("location")
    return changed


def target_payload(sync: SyncDefinition, source: EventRecord, key: OccurrenceKey) -> EventRecord:
    marker_text = encode_marker(sync.id, key.source_id, key.iso_instant)
    if sync.mode == "blocker":
        location = ""
        description = marker_text
    else:
        location = source.location
        description = embed_marker(strip_marker(source.description), marker_text)
    return EventRecord(
        calendar_id=sync.target_calendar_id,
        uid="",
        summary=render_title(sync, source),
        description=description,
        location=location,
        start=source.start,
        end=source.end,
        all_day=source.all_day,
        busy=True,
    )


def _suppressed(row: MappingRow, target: EventRecord) -> dict[str, str]:
    return {
        "key": row.key,
        "target_event_id": target.uid,
        "calendar_id": target.calendar_id,
        "start": serialize_datetime(target.start) or "",
    }


def _rows_for_sync(sync: SyncDefinition, mappings: Iterable[MappingRow]) -> list[MappingRow]:
    return [row for row in mappings if row.sync_id == sync.id]


def build_plan(
    sync: SyncDefinition,
    sources: Iterable[EventRecord],
    targets: Iterable[EventRecord],
    mappings: Iterable[MappingRow],
    *,
    tz: tzinfo = timezone.utc,
    now: datetime | None = None,
    horizon_start: datetime | None = None,
) -> Plan:
    """Compute the create/update/delete plan for one sync.

    Pure: reads only its arguments. ``sources`` and ``targets`` are snapshots
    for the same horizon; ``mappings`` is the mapping table for this sync.
    """
    now = now or datetime.now(timezone.utc)
    horizon_start = horizon_start or now
    rows = _rows_for_sync(sync, mappings)
    mapping_by_key: dict[str, MappingRow] = {}
    for row in rows:
        mapping_by_key.setdefault(row.key, row)
    reserved = {row.target_event_id for row in rows}
    index = TargetIndex.build(targets)

    plan = Plan(sync_id=sync.id)
    live_keys: set[str] = set()
    claimed: set[str] = set()

    for source in sources:
        if not passes_filters(source, sync.filters, sync.id, sync.ownership_policy):
            continue
        if not allowed_by_time_windows(source.start, source.all_day, sync.time_windows, tz):
            continue
        occ = key_for_event(source, now=now)
        if occ.key in live_keys:
            continue
        live_keys.add(occ.key)

        match = resolve_twin(
            occ.key,
            render_title(sync, source),
            source.start,
            mapping_by_key,
            index,
            claimed,
            reserved,
            owner=sync.id,
        )
        if match is None:
            plan.actions.append(
                PlanAction(
                    kind="create",
                    key=occ.key,
                    reason="Missing in target",
                    source=source,
                    payload=target_payload(sync, source, occ),
                    delta=MappingDelta("insert", occ.key, occ.source_id, occ.iso_instant),
                )
            )
            continue

        target = match.target
        claimed.add(target.uid)
        changed = needs_update(sync, source, target)
        if changed:
            payload = target_payload(sync, source, occ).with_updates(uid=target.uid, href=target.href)
            plan.actions.append(
                PlanAction(
                    kind="update",
                    key=occ.key,
                    reason=f"Fields changed: {', '.join(changed)}",
                    source=source,
                    target=target,
                    payload=payload,
                    delta=MappingDelta("touch", occ.key, occ.source_id, occ.iso_instant, target.uid),
                )
            )
        elif match.via == "loose":
            plan.standalone_deltas.append(
                MappingDelta("adopt", occ.key, occ.source_id, occ.iso_instant, target.uid)
            )

    for row in rows:
        if row.key in live_keys:
            continue
        target = index.by_id.get(row.target_event_id)
        if target is None:
            occurred_at = parse_instant(row.occurrence_key)
            if occurred_at is not None and occurred_at < horizon_start:
                plan.standalone_deltas.append(
                    MappingDelta("prune", row.key, row.source_event_id, row.occurrence_key, row.target_event_id)
                )
            continue
        if target.uid in claimed:
            # Another live occurrence (or an earlier delete) already owns this target.
            plan.standalone_deltas.append(
                MappingDelta("prune", row.key, row.source_event_id, row.occurrence_key, row.target_event_id)
            )
            continue
        allowed = may_delete(
            sync_id=sync.id,
            target_calendar_id=sync.target_calendar_id,
            event_calendar_id=target.calendar_id,
            marker=index.marker_for(target),
            has_mapping_row=True,
        )
        if not allowed:
            plan.suppressed_deletes.append(_suppressed(row, target))
            continue
        claimed.add(target.uid)
        plan.actions.append(
            PlanAction(
                kind="delete",
                key=row.key,
                reason="Source missing (mapped)",
                target=target,
                delta=MappingDelta("remove", row.key, row.source_event_id, row.occurrence_key, target.uid),
            )
        )
    return plan


def build_purge_plan(
    sync: SyncDefinition,
    targets: Iterable[EventRecord],
    mappings: Iterable[MappingRow],
) -> Plan:
    """Delete every managed target of ``sync`` that passes the deletion gate."""
    index = TargetIndex.build(targets)
    plan = Plan(sync_id=sync.id)
    seen: set[str] = set()
    for row in _rows_for_sync(sync, mappings):
        target = index.by_id.get(row.target_event_id)
        if target is None or target.uid in seen:
            continue
        allowed = may_delete(
            sync_id=sync.id,
            target_calendar_id=sync.target_calendar_id,
            event_calendar_id=target.calendar_id,
            marker=index.marker_for(target),
            has_mapping_row=True,
        )
        if not allowed:
            plan.suppressed_deletes.append(_suppressed(row, target))
            continue
        seen.add(target.uid)
        plan.actions.append(
            PlanAction(
                kind="delete",
                key=row.key,
                reason="Purged managed event",
                target=target,
                delta=MappingDelta("remove", row.key, row.source_event_id, row.occurrence_key, target.uid),
            )
        )
    return plan
