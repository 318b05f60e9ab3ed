from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from calsync.models import SyncDefinition
from calsync.planner import MappingDelta, Plan, PlanAction


@dataclass
class ActionOutcome:
    action: PlanAction
    applied: bool | None
    target_event_id: str = ""
    error: str = ""


@dataclass
class ApplyReport:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    outcomes: list[ActionOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
        }


def commit_delta(state_store: Any, sync_id: str, delta: MappingDelta, target_event_id: str = "") -> None:
    if delta.op in {"remove", "prune"}:
        state_store.remove_mapping(
            sync_id=sync_id,
            source_event_id=delta.source_event_id,
            occurrence_key=delta.occurrence_key,
        )
        return
    state_store.upsert_mapping(
        sync_id=sync_id,
        source_event_id=delta.source_event_id,
        occurrence_key=delta.occurrence_key,
        target_event_id=target_event_id or delta.target_event_id,
    )


def _execute(action: PlanAction, sync: SyncDefinition, provider: Any) -> str:
    """Run one provider call; returns the target identifier it touched."""
    if action.kind == "create":
        saved = provider.create_event(sync.target_calendar_id, action.payload)
        if not saved.uid:
            raise RuntimeError("Provider returned no identifier for created event.")
        return saved.uid
    if action.kind == "update":
        saved = provider.update_event(sync.target_calendar_id, action.payload)
        return saved.uid or action.target.uid
    if action.kind == "delete":
        target = action.target
        if not provider.delete_event(sync.target_calendar_id, uid=target.uid, href=target.href):
            raise RuntimeError("Target event could not be deleted.")
        return target.uid
    raise ValueError(f"Unknown action kind: {action.kind}")


def apply_plan(plan: Plan, sync: SyncDefinition, provider: Any, state_store: Any) -> ApplyReport:
    """Execute ``plan`` action by action.

    A mapping row changes only after its provider call succeeds, so an
    interrupted apply leaves the table consistent with what actually landed.
    Failures are local to their action.
    """
    report = ApplyReport()
    for action in plan.actions:
        try:
            target_event_id = _execute(action, sync, provider)
        except Exception as exc:
            report.failed += 1
            report.outcomes.append(
                ActionOutcome(action=action, applied=False, error=f"{type(exc).__name__}: {exc}")
            )
            continue
        if action.delta is not None:
            commit_delta(state_store, sync.id, action.delta, target_event_id)
        if action.kind == "create":
            report.created += 1
        elif action.kind == "update":
            report.updated += 1
        else:
            report.deleted += 1
        report.outcomes.append(ActionOutcome(action=action, applied=True, target_event_id=target_event_id))

    for delta in plan.standalone_deltas:
        commit_delta(state_store, sync.id, delta)
    return report
