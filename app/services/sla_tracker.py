"""
SLA / Escalation Tracker.

Two halves:

1. On stage entry the engine calls ``compute_due_at(stage, started_at)``.
   A stage without ``sla_hours`` has no deadline.

2. A periodic sweep (external trigger: the ``workflow_sla_sweep`` job, the
   ``flask sweep-workflow-sla`` CLI command or ``POST /sla/sweep``) calls
   ``sweep_overdue(now)``. For every active instance whose stage_due_at has
   passed and is not yet flagged it:
     - sets is_overdue (CAS on version, no version bump)
     - records one WorkflowSLAViolation for the stage visit
     - appends an ``escalate`` history entry
     - creates a WorkflowEscalation when the stage names an escalation target

Idempotence: the is_overdue guard plus the (instance, stage, due_at) unique
key mean a second sweep with the same ``now`` records nothing new. Each
instance is its own unit of work, so one instance that moved concurrently
is skipped without failing the rest of the sweep.

Escalation resolution is administrative only: it never moves the instance.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta

from sqlalchemy import select

from app.core.exceptions import (
    ConflictError,
    InvalidStateError,
    InvalidTemplateError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.workflow import (
    ESCALATION_RESOLUTIONS,
    WorkflowEscalation,
    WorkflowInstance,
    WorkflowSLAViolation,
    WorkflowStage,
)
from app.services.assignee_resolver import RoleRule, parse_rule, resolve_assignee
from app.services.workflow_history import append_history
from app.services.workflow_store import atomic, compare_and_swap, lock_instance
from app.utils.helpers import as_utc, clean_str, utcnow

logger = logging.getLogger(__name__)


def _text(value, field):
    try:
        return clean_str(value, field)
    except ValueError as exc:
        raise ValidationError(str(exc), {field: "invalid"})


def compute_due_at(stage, started_at):
    """Deadline for a stage visit, or None when the stage has no SLA."""
    if stage is None or not stage.sla_hours:
        return None
    return as_utc(started_at) + timedelta(hours=stage.sla_hours)


def hours_overdue(due_at, now):
    """Whole hours elapsed past the deadline (floor, never negative)."""
    seconds = (as_utc(now) - as_utc(due_at)).total_seconds()
    return max(0, math.floor(seconds / 3600))


def _escalation_target(stage, project_id):
    """Resolve (user_id, role) from the stage's escalation rule, or None if unset."""
    try:
        rule = parse_rule(stage.escalation_rule) if stage.escalation_rule else None
    except ValidationError as exc:
        raise InvalidTemplateError(
            f"Stage '{stage.stage_name}' has an invalid escalation rule: {exc}",
            {"stage_id": stage.id},
        ) from exc
    if rule is None:
        return None
    user_id = resolve_assignee(rule, project_id)
    role = rule.role if isinstance(rule, RoleRule) else None
    if user_id is None and role is None:
        return None
    return user_id, role


# ═════════════════════════════════════════════════════════════════════════════
# Sweep
# ═════════════════════════════════════════════════════════════════════════════


def _flag_overdue(instance_id, now):
    """Flag one instance inside its own transaction.

    Returns (violation_dict, escalation_dict | None), or None if the
    instance no longer qualifies once locked.
    """
    with atomic("sla_sweep", resource_id=instance_id):
        inst = lock_instance(instance_id)
        due_at = as_utc(inst.stage_due_at)
        if inst.status != "active" or inst.is_overdue or due_at is None or due_at >= now:
            return None

        snapshot_version = inst.version
        stage = db.session.get(WorkflowStage, inst.current_stage_id)
        overdue_hours = hours_overdue(due_at, now)
        target = _escalation_target(stage, inst.project_id)

        compare_and_swap(inst.id, snapshot_version, {"is_overdue": True}, bump=False)

        violation = WorkflowSLAViolation(
            instance_id=inst.id,
            stage_id=stage.id,
            due_at=due_at,
            violated_at=now,
            hours_overdue=overdue_hours,
            assigned_to=inst.assignee_id,
        )
        db.session.add(violation)
        db.session.flush()

        escalation = None
        if target is not None:
            user_id, role = target
            escalation = WorkflowEscalation(
                instance_id=inst.id,
                stage_id=stage.id,
                violation_id=violation.id,
                escalate_to_user_id=user_id,
                escalate_to_role=role,
                trigger_reason="sla_violation",
                hours_overdue=overdue_hours,
                triggered_at=now,
            )
            db.session.add(escalation)
            db.session.flush()

        append_history(
            inst.id,
            action_type="escalate",
            status_after=inst.status,
            now=now,
            from_stage_id=stage.id,
            to_stage_id=stage.id,
            assigned_from=inst.assignee_id,
            assigned_to=inst.assignee_id,
            comments=f"SLA exceeded by {overdue_hours}h at stage '{stage.stage_name}'",
            details={
                "trigger": "sla_violation",
                "violation_id": violation.id,
                "escalation_id": escalation.id if escalation else None,
                "hours_overdue": overdue_hours,
            },
        )
        result = (violation.to_dict(), escalation.to_dict() if escalation else None)

    logger.info(
        "Workflow instance flagged overdue",
        extra={"instance_id": instance_id, "hours_overdue": overdue_hours,
               "escalated": result[1] is not None},
    )
    return result


def sweep_overdue(now=None) -> dict:
    """Flag every active instance whose current stage deadline has passed.

    Args:
        now: Sweep clock; defaults to the current UTC time.

    Returns:
        {"checked", "flagged", "skipped", "violations": [...], "escalations": [...], "swept_at"}
    """
    now = as_utc(now) or utcnow()

    stmt = (
        select(WorkflowInstance.id)
        .where(
            WorkflowInstance.status == "active",
            WorkflowInstance.is_overdue.is_(False),
            WorkflowInstance.stage_due_at.isnot(None),
            WorkflowInstance.stage_due_at < now,
        )
        .order_by(WorkflowInstance.id.asc())
    )
    candidate_ids = list(db.session.execute(stmt).scalars())

    violations, escalations = [], []
    skipped = 0
    for instance_id in candidate_ids:
        try:
            result = _flag_overdue(instance_id, now)
        except ConflictError:
            # version moved, or a parallel sweep recorded the violation first
            logger.info(
                "Instance changed during SLA sweep; skipped",
                extra={"instance_id": instance_id},
            )
            skipped += 1
            continue
        except InvalidTemplateError as exc:
            logger.error(
                "Escalation rule unusable; instance left for the next sweep: %s", exc,
                extra={"instance_id": instance_id},
            )
            skipped += 1
            continue
        if result is None:
            skipped += 1
            continue
        violation, escalation = result
        violations.append(violation)
        if escalation is not None:
            escalations.append(escalation)

    summary = {
        "checked": len(candidate_ids),
        "flagged": len(violations),
        "skipped": skipped,
        "violations": violations,
        "escalations": escalations,
        "swept_at": now.isoformat(),
    }
    logger.info(
        "SLA sweep finished",
        extra={"checked": summary["checked"], "flagged": summary["flagged"],
               "escalations": len(escalations)},
    )
    return summary


# ═════════════════════════════════════════════════════════════════════════════
# Escalations
# ═════════════════════════════════════════════════════════════════════════════


def escalate_manually(instance_id, actor_id, reason, escalate_to_user_id=None, escalate_to_role=None):
    """Raise a ``manual`` escalation on an active instance.

    Raises:
        ValidationError: blank reason or no target.
        NotFoundError: unknown instance.
        InvalidStateError: instance not active.
    """
    reason = _text(reason, "reason")
    if not reason:
        raise ValidationError("reason is required", {"reason": "required"})
    role = _text(escalate_to_role, "escalate_to_role")
    if escalate_to_user_id is None and role is None:
        raise ValidationError(
            "escalate_to_user_id or escalate_to_role is required",
            {"escalate_to_user_id": "required"},
        )

    now = utcnow()
    with atomic("escalate", resource_id=instance_id):
        inst = lock_instance(instance_id)
        if inst.status != "active":
            raise InvalidStateError("WorkflowInstance", inst.status, "escalate")
        if escalate_to_user_id is None and role is not None:
            escalate_to_user_id = resolve_assignee(RoleRule(role=role), inst.project_id)

        due_at = as_utc(inst.stage_due_at)
        escalation = WorkflowEscalation(
            instance_id=inst.id,
            stage_id=inst.current_stage_id,
            escalate_to_user_id=escalate_to_user_id,
            escalate_to_role=role,
            trigger_reason="manual",
            hours_overdue=hours_overdue(due_at, now) if due_at and due_at < now else None,
            triggered_by=actor_id,
            triggered_at=now,
            notes=reason,
        )
        db.session.add(escalation)
        db.session.flush()

        append_history(
            inst.id,
            action_type="escalate",
            status_after=inst.status,
            now=now,
            actor_id=actor_id,
            from_stage_id=inst.current_stage_id,
            to_stage_id=inst.current_stage_id,
            assigned_from=inst.assignee_id,
            assigned_to=inst.assignee_id,
            comments=reason,
            details={"trigger": "manual", "escalation_id": escalation.id},
        )
        result = escalation.to_dict()

    logger.info(
        "Workflow instance escalated manually",
        extra={"instance_id": instance_id, "actor_id": actor_id, "escalation_id": result["id"]},
    )
    return result


def resolve_escalation(escalation_id, action, notes=None, actor_id=None):
    """Close an escalation with an outcome. Does not move the instance.

    The linked SLA violation, if any and still open, is closed with it.

    Raises:
        ValidationError: action outside the resolution set.
        NotFoundError: unknown escalation.
        InvalidStateError: already resolved.
    """
    if not isinstance(action, str) or action not in ESCALATION_RESOLUTIONS:
        raise ValidationError(
            f"Invalid resolution action: {action!r}. Must be one of: {sorted(ESCALATION_RESOLUTIONS)}",
            {"action": "invalid"},
        )
    notes = _text(notes, "notes")

    now = utcnow()
    with atomic("resolve_escalation", resource_id=escalation_id):
        stmt = (
            select(WorkflowEscalation)
            .where(WorkflowEscalation.id == escalation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        escalation = db.session.execute(stmt).scalar_one_or_none()
        if escalation is None:
            raise NotFoundError(resource="WorkflowEscalation", resource_id=escalation_id)
        if escalation.resolved_at is not None:
            raise InvalidStateError("WorkflowEscalation", "resolved", "resolve")

        escalation.resolved_at = now
        escalation.resolution_action = action
        escalation.resolution_notes = notes

        violation = escalation.violation
        if violation is not None and violation.resolved_at is None:
            violation.resolved_at = now
            violation.resolution_notes = notes
        result = escalation.to_dict()

    logger.info(
        "Workflow escalation resolved",
        extra={"escalation_id": escalation_id, "action": action, "actor_id": actor_id},
    )
    return result


def list_escalations(instance_id=None, unresolved_only=False):
    """Escalations, newest first, optionally for one instance / only open ones."""
    stmt = select(WorkflowEscalation)
    if instance_id is not None:
        stmt = stmt.where(WorkflowEscalation.instance_id == instance_id)
    if unresolved_only:
        stmt = stmt.where(WorkflowEscalation.resolved_at.is_(None))
    stmt = stmt.order_by(WorkflowEscalation.triggered_at.desc(), WorkflowEscalation.id.desc())
    return [e.to_dict() for e in db.session.execute(stmt).scalars()]


def list_violations(instance_id):
    """SLA violations recorded for an instance, oldest first.

    Raises:
        NotFoundError: unknown instance.
    """
    if db.session.get(WorkflowInstance, instance_id) is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    stmt = (
        select(WorkflowSLAViolation)
        .where(WorkflowSLAViolation.instance_id == instance_id)
        .order_by(WorkflowSLAViolation.violated_at.asc(), WorkflowSLAViolation.id.asc())
    )
    return [v.to_dict() for v in db.session.execute(stmt).scalars()]
