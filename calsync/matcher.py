from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from calsync.marker import Marker, decode_marker
from calsync.models import EventRecord, MappingRow


@dataclass
class TwinMatch:
    target: EventRecord
    via: str  # "mapping" or "loose"


@dataclass
class TargetIndex:
    by_id: dict[str, EventRecord] = field(default_factory=dict)
    markers: dict[str, Marker] = field(default_factory=dict)
    loose: dict[tuple[str, datetime], list[EventRecord]] = field(default_factory=dict)

    @classmethod
    def build(cls, targets: Iterable[EventRecord]) -> "TargetIndex":
        index = cls()
        for target in targets:
            if not target.uid or target.uid in index.by_id:
                continue
            index.by_id[target.uid] = target
            marker = decode_marker(target.description, target.url)
            if marker is None:
                continue
            index.markers[target.uid] = marker
            if target.start is not None:
                index.loose.setdefault(((target.summary or "").strip(), target.start), []).append(target)
        for candidates in index.loose.values():
            candidates.sort(key=lambda item: item.uid)
        return index

    def marker_for(self, target: EventRecord) -> Marker | None:
        return self.markers.get(target.uid)


def resolve_twin(
    key: str,
    title: str,
    start: datetime | None,
    mapping_by_key: dict[str, MappingRow],
    index: TargetIndex,
    claimed: set[str],
    reserved: set[str] | None = None,
    owner: str | None = None,
) -> TwinMatch | None:
    """Find the target event standing in for one source occurrence.

    The mapping table is authoritative. When it has nothing usable, fall back
    to a marker-tagged target with the same title and start so an identifier
    rotation on the provider side does not produce a duplicate. Targets in
    ``reserved`` belong to other mapping rows and are never taken loosely; with
    ``owner`` set, only targets whose marker names that sync are candidates.
    """
    row = mapping_by_key.get(key)
    if row is not None:
        target = index.by_id.get(row.target_event_id)
        if target is not None and target.uid not in claimed:
            return TwinMatch(target=target, via="mapping")
    if start is None:
        return None
    for candidate in index.loose.get((title, start), []):
        if candidate.uid in claimed or (reserved and candidate.uid in reserved):
            continue
        if owner is not None and not index.markers[candidate.uid].owned_by(owner):
            continue
        return TwinMatch(target=candidate, via="loose")
    return None
