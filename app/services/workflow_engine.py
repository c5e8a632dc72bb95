"""
Workflow Engine: template-driven state machine for construction documents.

Drives one entity (submittal, RFI, change order, drawing, punch item) through
the ordered stages of its entity type's default template.

Lifecycle:
    start_workflow → active ──transition──▶ active (next stage / self-loop)
                              ──transition──▶ completed | rejected (terminal edge)
                   active ──cancel──▶ cancelled

Rules:
- At most one active instance per (entity_type, entity_id). A new instance
  may start once the previous one is terminal.
- A transition needs exactly one edge for (template, current stage, action).
  A terminal edge ends the instance: ``reject`` → rejected, else completed.
- Every state change is one transaction: instance CAS write, assignment
  close/open, and one history entry. Any failure rolls back all of it.
- Transitions by someone other than the current assignee are allowed and
  logged. Authorization is the caller's concern.

Concurrency:
    The instance row is read with SELECT ... FOR UPDATE and written with
    UPDATE ... WHERE version = :seen (see workflow_store). Of two racing
    transitions on the same stage snapshot, exactly one succeeds; the other
    gets ConcurrentModificationError (SQLite, or any backend without row
    locks) or, on PostgreSQL, blocks, re-reads and fails validation.

Every public function returns plain dicts (to_dict()).
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import case, distinct, func, select

from app.core.exceptions import (
    ConflictError,
    InvalidStateError,
    InvalidTemplateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.project import Project
from app.models.workflow import (
    ENTITY_TYPES,
    INSTANCE_STATUSES,
    TRANSITION_ACTIONS,
    WorkflowInstance,
    WorkflowStage,
    WorkflowTemplate,
    WorkflowTransition,
)
from app.services.assignee_resolver import (
    assignee_role,
    assignee_type,
    parse_rule,
    resolve_assignee,
)
from app.services.sla_tracker import compute_due_at
from app.services.workflow_history import append_history
from app.services.workflow_store import (
    atomic,
    close_active_assignments,
    compare_and_swap,
    lock_instance,
    open_assignment,
)
from app.utils.helpers import as_utc, clean_str, utcnow

logger = logging.getLogger(__name__)

# Display order of available actions; anything else follows alphabetically.
_ACTION_ORDER = {"approve": 0, "revise": 1, "reject": 2}

_URGENCY_RANK = {"overdue": 0, "due_soon": 1, "on_track": 2}


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _text(value, field):
    try:
        return clean_str(value, field)
    except ValueError as exc:
        raise ValidationError(str(exc), {field: "invalid"})


def _validate_entity(entity_type, entity_id):
    if not isinstance(entity_type, str) or entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"Invalid entity_type: {entity_type!r}. Must be one of: {sorted(ENTITY_TYPES)}",
            {"entity_type": "invalid"},
        )
    if isinstance(entity_id, bool) or not isinstance(entity_id, (str, int, type(None))):
        raise ValidationError("entity_id must be a string or integer", {"entity_id": "invalid"})
    entity_id = str(entity_id).strip() if entity_id is not None else ""
    if not entity_id:
        raise ValidationError("entity_id is required", {"entity_id": "required"})
    if len(entity_id) > 64:
        raise ValidationError("entity_id must be at most 64 characters", {"entity_id": "too_long"})
    return entity_id


def _active_instance_for(entity_type, entity_id):
    stmt = select(WorkflowInstance).where(
        WorkflowInstance.entity_type == entity_type,
        WorkflowInstance.entity_id == entity_id,
        WorkflowInstance.status == "active",
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _default_template(entity_type):
    stmt = select(WorkflowTemplate).where(
        WorkflowTemplate.entity_type == entity_type,
        WorkflowTemplate.is_default.is_(True),
        WorkflowTemplate.is_active.is_(True),
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _first_stage(template_id):
    stmt = (
        select(WorkflowStage)
        .where(WorkflowStage.template_id == template_id)
        .order_by(WorkflowStage.stage_number.asc())
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _stage_rule(stage):
    """Parse a stored assignment rule; a malformed one is a template defect."""
    try:
        return parse_rule(stage.assignment_rule)
    except ValidationError as exc:
        raise InvalidTemplateError(
            f"Stage '{stage.stage_name}' has an invalid assignment rule: {exc}",
            {"stage_id": stage.id},
        ) from exc


def _find_edges(template_id, from_stage_id, action):
    stmt = select(WorkflowTransition).where(
        WorkflowTransition.template_id == template_id,
        WorkflowTransition.from_stage_id == from_stage_id,
        WorkflowTransition.action == action,
    )
    return list(db.session.execute(stmt).scalars())


def _enter_stage(stage, project_id, now):
    """Instance column values for entering ``stage`` at ``now``."""
    rule = _stage_rule(stage)
    assignee_id = resolve_assignee(rule, project_id)
    values = {
        "current_stage_id": stage.id,
        "stage_started_at": now,
        "stage_due_at": compute_due_at(stage, now),
        "is_overdue": False,
        "assignee_id": assignee_id,
        "assigned_at": now if assignee_id is not None else None,
    }
    return values, rule


def _open_stage_assignment(instance_id, stage, rule, values, now):
    if values["assignee_id"] is None:
        return None
    return open_assignment(
        instance_id,
        stage.id,
        assignee_type=assignee_type(rule) or "user",
        assignee_id=values["assignee_id"],
        assignee_role=assignee_role(rule),
        now=now,
        due_at=values["stage_due_at"],
    )


def _urgency(inst, now, due_soon_hours):
    due_at = as_utc(inst.stage_due_at)
    if inst.is_overdue or (due_at is not None and due_at < now):
        return "overdue"
    if due_at is not None and due_at < now + timedelta(hours=due_soon_hours):
        return "due_soon"
    return "on_track"


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def start_workflow(entity_type, entity_id, project_id=None, actor_id=None):
    """Start the default workflow for an entity at its first stage.

    Raises:
        ValidationError: unknown entity_type or blank entity_id.
        NotFoundError: unknown project, or no active default template.
        ConflictError: the entity already has an active instance.
        InvalidTemplateError: the template has no stages.
        StorageError: the store failed; nothing was written.
    """
    entity_id = _validate_entity(entity_type, entity_id)
    if project_id is not None and db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    duplicate = ConflictError(
        "WorkflowInstance", "entity", f"{entity_type}/{entity_id}",
        message=f"An active workflow already exists for {entity_type} {entity_id}",
    )
    if _active_instance_for(entity_type, entity_id) is not None:
        raise duplicate

    template = _default_template(entity_type)
    if template is None:
        raise NotFoundError(
            resource="WorkflowTemplate",
            message=f"No active default workflow template for entity_type={entity_type}",
        )
    first_stage = _first_stage(template.id)
    if first_stage is None:
        raise InvalidTemplateError(
            f"Workflow template '{template.name}' has no stages",
            {"template_id": template.id},
        )

    now = utcnow()
    with atomic("start_workflow", resource_id=f"{entity_type}/{entity_id}", conflict=duplicate):
        values, rule = _enter_stage(first_stage, project_id, now)
        inst = WorkflowInstance(
            template_id=template.id,
            entity_type=entity_type,
            entity_id=entity_id,
            project_id=project_id,
            status="active",
            started_by=actor_id,
            started_at=now,
            version=1,
            **values,
        )
        db.session.add(inst)
        db.session.flush()

        _open_stage_assignment(inst.id, first_stage, rule, values, now)
        append_history(
            inst.id,
            action_type="start",
            status_after="active",
            now=now,
            actor_id=actor_id,
            from_stage_id=None,
            to_stage_id=first_stage.id,
            assigned_to=values["assignee_id"],
            details={"template_id": template.id, "template_name": template.name},
        )
        instance_id = inst.id

    logger.info(
        "Workflow started",
        extra={"instance_id": instance_id, "entity_type": entity_type,
               "entity_id": entity_id, "actor_id": actor_id},
    )
    return get_instance(instance_id)


def transition(instance_id, action, actor_id=None, comment=None):
    """Apply ``action`` to the instance's current stage.

    Raises:
        NotFoundError: unknown instance.
        InvalidStateError: instance is not active.
        ValidationError: action or comment is not a string.
        InvalidTransitionError: no edge for (current stage, action).
        InvalidTemplateError: more than one edge matches, or a stored rule is bad.
        ConcurrentModificationError: another writer changed the instance first.
        StorageError: the store failed; nothing was written.
    """
    if not isinstance(action, str):
        raise ValidationError("action must be a string", {"action": "invalid"})
    comment = _text(comment, "comment")

    now = utcnow()
    with atomic("transition", resource_id=instance_id):
        inst = lock_instance(instance_id)
        if inst.status != "active":
            raise InvalidStateError("WorkflowInstance", inst.status, "transition")

        snapshot_version = inst.version
        from_stage = inst.current_stage
        if from_stage is None:
            raise InvalidTemplateError(
                "Active workflow instance has no current stage",
                {"instance_id": inst.id},
            )
        previous_assignee = inst.assignee_id
        project_id = inst.project_id

        if action not in TRANSITION_ACTIONS:
            raise InvalidTransitionError(action, from_stage.stage_name)
        edges = _find_edges(inst.template_id, from_stage.id, action)
        if not edges:
            raise InvalidTransitionError(action, from_stage.stage_name)
        if len(edges) > 1:
            raise InvalidTemplateError(
                f"Ambiguous transition: {len(edges)} edges for {action!r} from '{from_stage.stage_name}'",
                {"stage_id": from_stage.id, "action": action},
            )
        edge = edges[0]

        if actor_id is not None and previous_assignee is not None and actor_id != previous_assignee:
            logger.warning(
                "Transition by a user other than the current assignee",
                extra={"instance_id": inst.id, "actor_id": actor_id,
                       "assignee_id": previous_assignee, "action": action},
            )

        to_stage = edge.to_stage
        if edge.is_terminal:
            status = "rejected" if action == "reject" else "completed"
            values = {
                "status": status,
                "current_stage_id": None,
                "assignee_id": None,
                "assigned_at": None,
                "stage_due_at": None,
                "is_overdue": False,
                "completed_at": now,
            }
            rule = None
        else:
            status = "active"
            values, rule = _enter_stage(to_stage, project_id, now)

        compare_and_swap(inst.id, snapshot_version, values)

        close_active_assignments(
            inst.id, from_stage.id,
            status="completed", now=now,
            response_action=action, response_comments=comment,
        )
        if to_stage is not None:
            _open_stage_assignment(inst.id, to_stage, rule, values, now)

        append_history(
            inst.id,
            action_type="transition",
            transition_action=action,
            status_after=status,
            now=now,
            actor_id=actor_id,
            from_stage_id=from_stage.id,
            to_stage_id=to_stage.id if to_stage else None,
            assigned_from=previous_assignee,
            assigned_to=values.get("assignee_id"),
            comments=comment,
            details={"transition_id": edge.id, "transition_name": edge.name},
        )

    logger.info(
        "Workflow transitioned",
        extra={"instance_id": instance_id, "action": action,
               "actor_id": actor_id, "status": status},
    )
    return get_instance(instance_id)


def cancel(instance_id, actor_id, reason):
    """Cancel an active instance. Open assignments are marked skipped.

    The current stage is kept so the record shows where the document stopped.

    Raises:
        ValidationError: blank or non-string reason.
        NotFoundError: unknown instance.
        InvalidStateError: instance is not active.
    """
    reason = _text(reason, "reason")
    if not reason:
        raise ValidationError("reason is required", {"reason": "required"})

    now = utcnow()
    with atomic("cancel", resource_id=instance_id):
        inst = lock_instance(instance_id)
        if inst.status != "active":
            raise InvalidStateError("WorkflowInstance", inst.status, "cancel")

        snapshot_version = inst.version
        stage_id = inst.current_stage_id
        previous_assignee = inst.assignee_id

        compare_and_swap(inst.id, snapshot_version, {
            "status": "cancelled",
            "completed_at": now,
            "assignee_id": None,
            "assigned_at": None,
            "stage_due_at": None,
            "is_overdue": False,
        })
        close_active_assignments(inst.id, None, status="skipped", now=now)
        append_history(
            inst.id,
            action_type="cancel",
            status_after="cancelled",
            now=now,
            actor_id=actor_id,
            from_stage_id=stage_id,
            to_stage_id=stage_id,
            assigned_from=previous_assignee,
            assigned_to=None,
            comments=reason,
        )

    logger.info(
        "Workflow cancelled",
        extra={"instance_id": instance_id, "actor_id": actor_id},
    )
    return get_instance(instance_id)


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_instance(instance_id):
    inst = db.session.get(WorkflowInstance, instance_id, populate_existing=True)
    if inst is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return inst.to_dict()


def get_instance_for_entity(entity_type, entity_id):
    """Most recent instance for an entity (active or not), or None."""
    entity_id = _validate_entity(entity_type, entity_id)
    stmt = (
        select(WorkflowInstance)
        .where(
            WorkflowInstance.entity_type == entity_type,
            WorkflowInstance.entity_id == entity_id,
        )
        .order_by(WorkflowInstance.started_at.desc(), WorkflowInstance.id.desc())
        .limit(1)
    )
    inst = db.session.execute(stmt).scalar_one_or_none()
    return inst.to_dict() if inst else None


def list_available_transitions(instance_id):
    """Actions that can fire from the current stage: approve, revise, reject, then others.

    Terminal instances have none.
    """
    inst = db.session.get(WorkflowInstance, instance_id)
    if inst is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    if inst.status != "active" or inst.current_stage_id is None:
        return []

    stmt = select(WorkflowTransition).where(
        WorkflowTransition.template_id == inst.template_id,
        WorkflowTransition.from_stage_id == inst.current_stage_id,
    )
    edges = sorted(
        db.session.execute(stmt).scalars(),
        key=lambda t: (_ACTION_ORDER.get(t.action, len(_ACTION_ORDER)), t.action),
    )
    result = []
    for edge in edges:
        target = edge.to_stage
        if edge.is_terminal:
            outcome = "rejected" if edge.action == "reject" else "completed"
        else:
            outcome = "active"
        result.append({
            "transition_id": edge.id,
            "action": edge.action,
            "name": edge.name,
            "to_stage_id": edge.to_stage_id,
            "to_stage_name": target.stage_name if target else None,
            "is_terminal": edge.is_terminal,
            "resulting_status": outcome,
        })
    return result


def list_user_tasks(user_id, project_id=None, entity_type=None, now=None):
    """Active instances assigned to ``user_id``, most urgent first.

    Urgency: overdue, then due within WORKFLOW_DUE_SOON_HOURS, then the rest.
    Ties break on the soonest due date; instances without one sort last.
    """
    if entity_type is not None and entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"Invalid entity_type: {entity_type!r}. Must be one of: {sorted(ENTITY_TYPES)}",
            {"entity_type": "invalid"},
        )
    now = as_utc(now) or utcnow()
    due_soon_hours = current_app.config.get("WORKFLOW_DUE_SOON_HOURS", 24)

    stmt = select(WorkflowInstance).where(
        WorkflowInstance.status == "active",
        WorkflowInstance.assignee_id == user_id,
    )
    if project_id is not None:
        stmt = stmt.where(WorkflowInstance.project_id == project_id)
    if entity_type is not None:
        stmt = stmt.where(WorkflowInstance.entity_type == entity_type)

    ranked = []
    for inst in db.session.execute(stmt).scalars():
        urgency = _urgency(inst, now, due_soon_hours)
        due_at = as_utc(inst.stage_due_at)
        ranked.append(((_URGENCY_RANK[urgency], due_at is None, due_at or now, inst.id), urgency, inst))
    ranked.sort(key=lambda row: row[0])

    tasks = []
    for _, urgency, inst in ranked:
        d = inst.to_dict()
        d["urgency"] = urgency
        tasks.append(d)
    return tasks


def list_project_workflows(project_id, entity_type=None, status=None):
    """Instances in a project, newest first."""
    if status is not None and status not in INSTANCE_STATUSES:
        raise ValidationError(
            f"Invalid status: {status!r}. Must be one of: {sorted(INSTANCE_STATUSES)}",
            {"status": "invalid"},
        )
    stmt = select(WorkflowInstance).where(WorkflowInstance.project_id == project_id)
    if entity_type is not None:
        stmt = stmt.where(WorkflowInstance.entity_type == entity_type)
    if status is not None:
        stmt = stmt.where(WorkflowInstance.status == status)
    stmt = stmt.order_by(WorkflowInstance.started_at.desc(), WorkflowInstance.id.desc())
    return [inst.to_dict() for inst in db.session.execute(stmt).scalars()]


def get_project_stats(project_id):
    """Per entity_type instance counts for a project."""
    stmt = (
        select(
            WorkflowInstance.entity_type,
            func.count(WorkflowInstance.id),
            func.sum(case((WorkflowInstance.status == "active", 1), else_=0)),
            func.sum(case((WorkflowInstance.status == "completed", 1), else_=0)),
            func.sum(case((WorkflowInstance.status == "rejected", 1), else_=0)),
            func.sum(case((WorkflowInstance.status == "cancelled", 1), else_=0)),
            func.sum(case(
                ((WorkflowInstance.status == "active") & WorkflowInstance.is_overdue.is_(True), 1),
                else_=0,
            )),
            func.count(distinct(WorkflowInstance.assignee_id)),
        )
        .where(WorkflowInstance.project_id == project_id)
        .group_by(WorkflowInstance.entity_type)
        .order_by(WorkflowInstance.entity_type)
    )
    keys = ("total", "active", "completed", "rejected", "cancelled", "overdue", "unique_assignees")
    by_type = []
    totals = dict.fromkeys(keys[:-1], 0)
    for row in db.session.execute(stmt):
        counts = {k: int(v or 0) for k, v in zip(keys, row[1:])}
        by_type.append({"entity_type": row[0], **counts})
        for k in totals:
            totals[k] += counts[k]
    return {"project_id": project_id, "by_entity_type": by_type, "totals": totals}
