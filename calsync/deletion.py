from __future__ import annotations

from calsync.marker import Marker


def may_delete(
    *,
    sync_id: str,
    target_calendar_id: str,
    event_calendar_id: str,
    marker: Marker | None,
    has_mapping_row: bool,
) -> bool:
    """Only events we provably own may be deleted.

    All three must hold: the event lives in the configured target calendar,
    it carries a recognized marker for this sync, and a mapping row exists
    for its occurrence.
    """
    if not target_calendar_id or event_calendar_id != target_calendar_id:
        return False
    if marker is None or not marker.recognized or not marker.owned_by(sync_id):
        return False
    return bool(has_mapping_row)
