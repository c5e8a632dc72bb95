"""
Workflow history: append-only audit trail and state replay.

Rules:
- Entries are only ever inserted; nothing here updates or deletes one.
- ``sequence`` is MAX(sequence)+1 for the instance, computed inside the
  caller's transaction while the instance row is locked. The
  (instance_id, sequence) unique key turns any race into a rollback.
- ``created_at`` is the caller's transaction clock, so an entry's timestamp
  equals the state change it records.

replay() folds entries back into (stage, status, assignee). It is the
executable definition of what each action_type means:

    start / transition / cancel → stage := to_stage, status := status_after,
                                  assignee := assigned_to
    assign                      → assignee := assigned_to
    escalate                    → no change
"""

import logging

from sqlalchemy import func, select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.workflow import HISTORY_ACTION_TYPES, WorkflowHistoryEntry, WorkflowInstance

logger = logging.getLogger(__name__)


def _next_sequence(instance_id):
    stmt = select(func.max(WorkflowHistoryEntry.sequence)).where(
        WorkflowHistoryEntry.instance_id == instance_id
    )
    current = db.session.execute(stmt).scalar()
    return (current or 0) + 1


def append_history(
    instance_id,
    *,
    action_type,
    status_after,
    now,
    actor_id=None,
    transition_action=None,
    from_stage_id=None,
    to_stage_id=None,
    assigned_from=None,
    assigned_to=None,
    comments=None,
    details=None,
):
    """Insert one history entry and flush it. Commit is the caller's job."""
    if action_type not in HISTORY_ACTION_TYPES:
        raise ValidationError(f"Unknown history action_type: {action_type!r}")

    entry = WorkflowHistoryEntry(
        instance_id=instance_id,
        sequence=_next_sequence(instance_id),
        action_type=action_type,
        transition_action=transition_action,
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
        status_after=status_after,
        actor_id=actor_id,
        assigned_from=assigned_from,
        assigned_to=assigned_to,
        comments=comments,
        details=details or None,
        created_at=now,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def get_history(instance_id):
    """Entries for an instance in sequence order, as dicts.

    Raises:
        NotFoundError: unknown instance.
    """
    if db.session.get(WorkflowInstance, instance_id) is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    stmt = (
        select(WorkflowHistoryEntry)
        .where(WorkflowHistoryEntry.instance_id == instance_id)
        .order_by(WorkflowHistoryEntry.sequence.asc())
    )
    return [e.to_dict() for e in db.session.execute(stmt).scalars()]


def replay(entries):
    """Reconstruct {current_stage_id, status, assignee_id} from history dicts.

    Pure function: takes what get_history returns (any iterable of mappings
    with the to_dict keys) and touches no storage.
    """
    state = {"current_stage_id": None, "status": None, "assignee_id": None}
    for entry in sorted(entries, key=lambda e: e["sequence"]):
        kind = entry["action_type"]
        if kind in ("start", "transition", "cancel"):
            state["current_stage_id"] = entry["to_stage_id"]
            state["status"] = entry["status_after"]
            state["assignee_id"] = entry["assigned_to"]
        elif kind == "assign":
            state["assignee_id"] = entry["assigned_to"]
    return state
