"""
Workflow template authoring: build and validate template graphs.

Template definition payload:

    {
        "name": "Standard Submittal Review",
        "entity_type": "submittal",
        "is_default": true,
        "stages": [
            {"stage_number": 1, "stage_name": "GC Review", "stage_type": "review",
             "sla_hours": 48, "escalation_hours": 60,
             "assignment_rule": {"type": "role", "role": "superintendent"},
             "escalation_rule": {"type": "role", "role": "project_manager"},
             "actions": ["send_notification"]},
            ...
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 2, "action": "approve", "name": "Forward"},
            {"from_stage": 1, "to_stage": null, "action": "reject"},
            ...
        ]
    }

Transitions reference stages by ``stage_number``; null means start edge
(from) or terminal edge (to).

Validation order: payload fields (ValidationError) before graph shape
(InvalidTemplateError). Nothing is written until the whole definition passes.

Rules:
- At most one default template per entity_type: making one default demotes
  the previous default in the same transaction.
- A template referenced by any instance keeps its graph: replacing stages or
  transitions, or deleting it, raises ConflictError. Deactivate it instead.
"""

import logging

from sqlalchemy import func, select, update

from app.core.exceptions import (
    ConflictError,
    InvalidStateError,
    InvalidTemplateError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.workflow import (
    ENTITY_TYPES,
    STAGE_ACTION_TAGS,
    STAGE_TYPES,
    TRANSITION_ACTIONS,
    WorkflowInstance,
    WorkflowStage,
    WorkflowTemplate,
    WorkflowTransition,
)
from app.services.assignee_resolver import AutoRule, parse_rule
from app.services.workflow_store import atomic

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def _positive_int_or_none(value, field, stage_number):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidTemplateError(
            f"Stage {stage_number}: {field} must be a positive integer",
            {"stage_number": stage_number, field: value},
        )
    return value


def _validate_stage(raw):
    if not isinstance(raw, dict):
        raise InvalidTemplateError("Each stage must be an object")
    number = raw.get("stage_number")
    if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
        raise InvalidTemplateError(
            "stage_number must be a positive integer", {"stage_number": number}
        )
    name = (raw.get("stage_name") or "").strip()
    if not name:
        raise InvalidTemplateError(f"Stage {number}: stage_name is required", {"stage_number": number})
    stage_type = raw.get("stage_type", "approval")
    if stage_type not in STAGE_TYPES:
        raise InvalidTemplateError(
            f"Stage {number}: invalid stage_type {stage_type!r}. Must be one of: {sorted(STAGE_TYPES)}",
            {"stage_number": number},
        )

    sla_hours = _positive_int_or_none(raw.get("sla_hours"), "sla_hours", number)
    escalation_hours = _positive_int_or_none(raw.get("escalation_hours"), "escalation_hours", number)
    if sla_hours is not None and escalation_hours is not None and escalation_hours < sla_hours:
        raise InvalidTemplateError(
            f"Stage {number}: escalation_hours ({escalation_hours}) must be >= sla_hours ({sla_hours})",
            {"stage_number": number},
        )

    try:
        rule = parse_rule(raw.get("assignment_rule"))
        escalation_rule = parse_rule(raw.get("escalation_rule"))
    except ValidationError as exc:
        raise InvalidTemplateError(f"Stage {number}: {exc}", {"stage_number": number}) from exc
    if isinstance(escalation_rule, AutoRule):
        raise InvalidTemplateError(
            f"Stage {number}: escalation_rule must target a user or role",
            {"stage_number": number},
        )

    actions = raw.get("actions") or []
    if not isinstance(actions, list):
        raise InvalidTemplateError(f"Stage {number}: actions must be a list", {"stage_number": number})
    unknown = sorted(set(actions) - STAGE_ACTION_TAGS)
    if unknown:
        raise InvalidTemplateError(
            f"Stage {number}: unknown action tags {unknown}. Allowed: {sorted(STAGE_ACTION_TAGS)}",
            {"stage_number": number},
        )

    return {
        "stage_number": number,
        "stage_name": name,
        "stage_type": stage_type,
        "sla_hours": sla_hours,
        "escalation_hours": escalation_hours,
        "assignment_rule": rule.to_dict() if rule else {},
        "escalation_rule": escalation_rule.to_dict() if escalation_rule else None,
        "actions": list(dict.fromkeys(actions)),
    }


def validate_graph(stages, transitions):
    """Validate a template graph; return normalized (stages, transitions).

    Raises:
        InvalidTemplateError: on the first broken graph rule.
    """
    if not isinstance(stages, list) or not isinstance(transitions, list):
        raise InvalidTemplateError("stages and transitions must be lists")

    clean_stages = [_validate_stage(s) for s in stages]
    numbers = [s["stage_number"] for s in clean_stages]
    duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
    if duplicates:
        raise InvalidTemplateError(
            f"Duplicate stage_number values: {duplicates}", {"stage_numbers": duplicates}
        )
    known = set(numbers)
    first = min(known) if known else None

    clean_edges = []
    seen = set()
    for raw in transitions:
        if not isinstance(raw, dict):
            raise InvalidTemplateError("Each transition must be an object")
        action = raw.get("action")
        if action not in TRANSITION_ACTIONS:
            raise InvalidTemplateError(
                f"Invalid transition action {action!r}. Must be one of: {sorted(TRANSITION_ACTIONS)}",
                {"action": action},
            )
        src, dst = raw.get("from_stage"), raw.get("to_stage")
        if src is None and dst is None:
            raise InvalidTemplateError(
                f"Transition {action!r} needs a from_stage or a to_stage", {"action": action}
            )
        for end in (src, dst):
            if end is not None and end not in known:
                raise InvalidTemplateError(
                    f"Transition {action!r} references unknown stage {end!r}",
                    {"action": action, "stage_number": end},
                )
        if src is None and dst != first:
            raise InvalidTemplateError(
                f"Start transition must enter the first stage ({first})", {"action": action}
            )
        key = (src, action)
        if key in seen:
            raise InvalidTemplateError(
                f"More than one {action!r} transition from stage {src}",
                {"from_stage": src, "action": action},
            )
        seen.add(key)
        clean_edges.append({
            "from_stage": src,
            "to_stage": dst,
            "action": action,
            "name": (raw.get("name") or "").strip() or None,
        })

    return clean_stages, clean_edges


def _validate_header(data, partial=False):
    out = {}
    if not partial or "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", {"name": "required"})
        if len(name) > 200:
            raise ValidationError("name must be at most 200 characters", {"name": "too_long"})
        out["name"] = name
    if not partial:
        entity_type = data.get("entity_type")
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(
                f"Invalid entity_type: {entity_type!r}. Must be one of: {sorted(ENTITY_TYPES)}",
                {"entity_type": "invalid"},
            )
        out["entity_type"] = entity_type
    if "description" in data:
        out["description"] = data.get("description")
    for flag in ("is_active", "is_default"):
        if flag in data:
            if not isinstance(data[flag], bool):
                raise ValidationError(f"{flag} must be a boolean", {flag: "invalid"})
            out[flag] = data[flag]
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _get_or_404(template_id):
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def _instance_count(template_id):
    stmt = select(func.count(WorkflowInstance.id)).where(WorkflowInstance.template_id == template_id)
    return db.session.execute(stmt).scalar() or 0


def _demote_defaults(entity_type, keep_id=None):
    stmt = update(WorkflowTemplate).where(
        WorkflowTemplate.entity_type == entity_type,
        WorkflowTemplate.is_default.is_(True),
    )
    if keep_id is not None:
        stmt = stmt.where(WorkflowTemplate.id != keep_id)
    db.session.execute(stmt.values(is_default=False).execution_options(synchronize_session="fetch"))


def _ensure_name_free(entity_type, name, exclude_id=None):
    stmt = select(WorkflowTemplate.id).where(
        WorkflowTemplate.entity_type == entity_type,
        WorkflowTemplate.name == name,
    )
    if exclude_id is not None:
        stmt = stmt.where(WorkflowTemplate.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError("WorkflowTemplate", "name", name)


def _build_graph(template, stages, transitions):
    by_number = {}
    for s in stages:
        stage = WorkflowStage(**s)
        template.stages.append(stage)
        by_number[s["stage_number"]] = stage
    db.session.flush()
    for t in transitions:
        template.transitions.append(WorkflowTransition(
            from_stage=by_number.get(t["from_stage"]) if t["from_stage"] is not None else None,
            to_stage=by_number.get(t["to_stage"]) if t["to_stage"] is not None else None,
            action=t["action"],
            name=t["name"],
        ))
    db.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# Authoring
# ═════════════════════════════════════════════════════════════════════════════


def create_template(data):
    """Create a template with its stages and transitions.

    Raises:
        ValidationError: bad name / entity_type / flags.
        InvalidTemplateError: broken graph.
        ConflictError: (entity_type, name) already taken.
    """
    header = _validate_header(data)
    stages, transitions = validate_graph(data.get("stages") or [], data.get("transitions") or [])
    _ensure_name_free(header["entity_type"], header["name"])

    conflict = ConflictError("WorkflowTemplate", "name", header["name"])
    with atomic("create_template", resource_id=header["name"], conflict=conflict):
        if header.get("is_default"):
            _demote_defaults(header["entity_type"])
        template = WorkflowTemplate(
            name=header["name"],
            description=header.get("description"),
            entity_type=header["entity_type"],
            is_active=header.get("is_active", True),
            is_default=header.get("is_default", False),
            created_by=data.get("created_by"),
        )
        db.session.add(template)
        db.session.flush()
        _build_graph(template, stages, transitions)
        template_id = template.id

    logger.info(
        "Workflow template created",
        extra={"template_id": template_id, "entity_type": header["entity_type"],
               "stage_count": len(stages)},
    )
    return get_template(template_id)


def update_template(template_id, data):
    """Update template metadata; replace the graph only while no instance uses it.

    Raises:
        NotFoundError, ValidationError, InvalidTemplateError,
        ConflictError: graph change on a template in use, or duplicate name.
    """
    template = _get_or_404(template_id)
    header = _validate_header(data, partial=True)
    replace_graph = "stages" in data or "transitions" in data
    if replace_graph:
        if not ("stages" in data and "transitions" in data):
            raise ValidationError(
                "stages and transitions must be replaced together",
                {"stages": "required", "transitions": "required"},
            )
        stages, transitions = validate_graph(data["stages"] or [], data["transitions"] or [])
        if _instance_count(template_id):
            raise ConflictError(
                "WorkflowTemplate", "id", str(template_id),
                message="Template is referenced by workflow instances; its stages and transitions cannot change",
            )
    if "name" in header:
        _ensure_name_free(template.entity_type, header["name"], exclude_id=template_id)
    if header.get("is_default") and not header.get("is_active", template.is_active):
        raise InvalidStateError("WorkflowTemplate", "inactive", "make default")

    with atomic("update_template", resource_id=template_id):
        if header.get("is_default"):
            _demote_defaults(template.entity_type, keep_id=template_id)
        for field, value in header.items():
            setattr(template, field, value)
        if not template.is_active:
            template.is_default = False
        if replace_graph:
            template.transitions.clear()
            db.session.flush()
            template.stages.clear()
            db.session.flush()
            _build_graph(template, stages, transitions)

    logger.info("Workflow template updated", extra={"template_id": template_id})
    return get_template(template_id)


def set_default_template(template_id):
    """Make an active template the default for its entity_type."""
    template = _get_or_404(template_id)
    if not template.is_active:
        raise InvalidStateError("WorkflowTemplate", "inactive", "make default")
    with atomic("set_default_template", resource_id=template_id):
        _demote_defaults(template.entity_type, keep_id=template_id)
        template.is_default = True
    logger.info(
        "Workflow template set as default",
        extra={"template_id": template_id, "entity_type": template.entity_type},
    )
    return get_template(template_id)


def deactivate_template(template_id):
    """Retire a template. Running instances keep using it; new starts cannot."""
    template = _get_or_404(template_id)
    with atomic("deactivate_template", resource_id=template_id):
        template.is_active = False
        template.is_default = False
    logger.info("Workflow template deactivated", extra={"template_id": template_id})
    return get_template(template_id)


def delete_template(template_id):
    """Delete a template that no instance has ever used."""
    template = _get_or_404(template_id)
    in_use = _instance_count(template_id)
    if in_use:
        raise ConflictError(
            "WorkflowTemplate", "id", str(template_id),
            message=f"Template is referenced by {in_use} workflow instance(s); deactivate it instead",
        )
    with atomic("delete_template", resource_id=template_id):
        db.session.delete(template)
    logger.info("Workflow template deleted", extra={"template_id": template_id})


def get_template(template_id):
    return _get_or_404(template_id).to_dict(include_graph=True)


def list_templates(entity_type=None, include_inactive=False):
    if entity_type is not None and entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"Invalid entity_type: {entity_type!r}. Must be one of: {sorted(ENTITY_TYPES)}",
            {"entity_type": "invalid"},
        )
    stmt = select(WorkflowTemplate)
    if entity_type is not None:
        stmt = stmt.where(WorkflowTemplate.entity_type == entity_type)
    if not include_inactive:
        stmt = stmt.where(WorkflowTemplate.is_active.is_(True))
    stmt = stmt.order_by(WorkflowTemplate.entity_type, WorkflowTemplate.name)
    return [t.to_dict() for t in db.session.execute(stmt).scalars()]


# ═════════════════════════════════════════════════════════════════════════════
# Standard templates
# ═════════════════════════════════════════════════════════════════════════════

_PM_ESCALATION = {"type": "role", "role": "project_manager"}


def _role(name):
    return {"type": "role", "role": name}


DEFAULT_TEMPLATES = [
    {
        "name": "Standard Submittal Review",
        "description": "GC Review → Architect Review → Engineer Review → Distribution",
        "entity_type": "submittal",
        "stages": [
            {"stage_number": 1, "stage_name": "GC Review", "stage_type": "review",
             "sla_hours": 48, "escalation_hours": 60, "assignment_rule": _role("superintendent"),
             "escalation_rule": _PM_ESCALATION, "actions": ["send_notification", "create_audit_log"]},
            {"stage_number": 2, "stage_name": "Architect Review", "stage_type": "approval",
             "sla_hours": 72, "escalation_hours": 84, "assignment_rule": _role("architect"),
             "escalation_rule": _PM_ESCALATION, "actions": ["send_notification", "update_entity_status"]},
            {"stage_number": 3, "stage_name": "Engineer Review", "stage_type": "approval",
             "sla_hours": 72, "escalation_hours": 84, "assignment_rule": _role("engineer"),
             "escalation_rule": _PM_ESCALATION, "actions": ["send_notification", "update_entity_status"]},
            {"stage_number": 4, "stage_name": "Distribution", "stage_type": "action",
             "sla_hours": 24, "assignment_rule": {"type": "auto", "action": "distribute"},
             "actions": ["auto_distribute", "update_entity_status", "create_audit_log"]},
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 2, "action": "approve", "name": "Forward to Architect"},
            {"from_stage": 1, "to_stage": None, "action": "reject", "name": "Reject Submittal"},
            {"from_stage": 2, "to_stage": 3, "action": "approve", "name": "Forward to Engineer"},
            {"from_stage": 2, "to_stage": 1, "action": "revise", "name": "Revise and Resubmit"},
            {"from_stage": 2, "to_stage": None, "action": "reject", "name": "Reject Submittal"},
            {"from_stage": 3, "to_stage": 4, "action": "approve", "name": "Approve for Distribution"},
            {"from_stage": 3, "to_stage": 1, "action": "revise", "name": "Revise and Resubmit"},
            {"from_stage": 3, "to_stage": None, "action": "reject", "name": "Reject Submittal"},
            {"from_stage": 4, "to_stage": None, "action": "complete", "name": "Distributed"},
        ],
    },
    {
        "name": "Standard RFI",
        "description": "Superintendent → Architect → Response",
        "entity_type": "rfi",
        "stages": [
            {"stage_number": 1, "stage_name": "Superintendent Review", "stage_type": "review",
             "sla_hours": 24, "escalation_hours": 36, "assignment_rule": _role("superintendent"),
             "escalation_rule": _PM_ESCALATION, "actions": ["send_notification"]},
            {"stage_number": 2, "stage_name": "Architect Response", "stage_type": "approval",
             "sla_hours": 72, "escalation_hours": 96, "assignment_rule": _role("architect"),
             "escalation_rule": _PM_ESCALATION, "actions": ["send_notification", "update_entity_status"]},
            {"stage_number": 3, "stage_name": "Response Distribution", "stage_type": "notification",
             "assignment_rule": {"type": "auto", "action": "notify"},
             "actions": ["send_notification", "update_entity_status"]},
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 2, "action": "approve", "name": "Send to Architect"},
            {"from_stage": 1, "to_stage": None, "action": "reject", "name": "Close as Invalid"},
            {"from_stage": 2, "to_stage": 3, "action": "approve", "name": "Answer RFI"},
            {"from_stage": 2, "to_stage": 1, "action": "request_changes", "name": "Request Clarification"},
            {"from_stage": 3, "to_stage": None, "action": "complete", "name": "Response Sent"},
        ],
    },
    {
        "name": "Change Order Approval",
        "description": "PM → Owner → Final Approval",
        "entity_type": "change_order",
        "stages": [
            {"stage_number": 1, "stage_name": "PM Review", "stage_type": "approval",
             "sla_hours": 48, "escalation_hours": 72, "assignment_rule": _role("project_manager"),
             "actions": ["send_notification", "create_audit_log"]},
            {"stage_number": 2, "stage_name": "Owner Approval", "stage_type": "approval",
             "sla_hours": 120, "escalation_hours": 144, "assignment_rule": _role("owner"),
             "escalation_rule": _PM_ESCALATION, "actions": ["send_notification", "create_audit_log"]},
            {"stage_number": 3, "stage_name": "Final Approval", "stage_type": "approval",
             "sla_hours": 48, "assignment_rule": _role("project_manager"),
             "actions": ["update_entity_status", "create_audit_log", "trigger_webhook"]},
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 2, "action": "approve", "name": "Submit to Owner"},
            {"from_stage": 1, "to_stage": None, "action": "reject", "name": "Reject Change Order"},
            {"from_stage": 2, "to_stage": 3, "action": "approve", "name": "Owner Approves"},
            {"from_stage": 2, "to_stage": 1, "action": "revise", "name": "Return to PM"},
            {"from_stage": 2, "to_stage": None, "action": "reject", "name": "Owner Rejects"},
            {"from_stage": 3, "to_stage": None, "action": "approve", "name": "Execute Change Order"},
            {"from_stage": 3, "to_stage": None, "action": "reject", "name": "Reject Change Order"},
        ],
    },
    {
        "name": "Drawing Review",
        "description": "Multi-Discipline Review → Coordination → Distribution",
        "entity_type": "drawing",
        "stages": [
            {"stage_number": 1, "stage_name": "Multi-Discipline Review", "stage_type": "review",
             "sla_hours": 72, "escalation_hours": 96, "assignment_rule": _role("engineer"),
             "escalation_rule": _PM_ESCALATION, "actions": ["send_notification"]},
            {"stage_number": 2, "stage_name": "Coordination", "stage_type": "review",
             "sla_hours": 48, "assignment_rule": _role("architect"),
             "actions": ["send_notification", "create_audit_log"]},
            {"stage_number": 3, "stage_name": "Distribution", "stage_type": "action",
             "sla_hours": 24, "assignment_rule": {"type": "auto", "action": "distribute"},
             "actions": ["auto_distribute", "update_entity_status"]},
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 2, "action": "approve", "name": "Send to Coordination"},
            {"from_stage": 1, "to_stage": 1, "action": "revise", "name": "Revise and Resubmit"},
            {"from_stage": 2, "to_stage": 3, "action": "approve", "name": "Release for Distribution"},
            {"from_stage": 2, "to_stage": 1, "action": "request_changes", "name": "Back to Review"},
            {"from_stage": 3, "to_stage": None, "action": "complete", "name": "Distributed"},
        ],
    },
    {
        "name": "Punch Item Closeout",
        "description": "Assigned → In Progress → Completed → Verified → Closed",
        "entity_type": "punch_item",
        "stages": [
            {"stage_number": 1, "stage_name": "Assigned", "stage_type": "notification",
             "sla_hours": 24, "assignment_rule": {"type": "auto", "action": "notify_assignee"},
             "actions": ["send_notification"]},
            {"stage_number": 2, "stage_name": "In Progress", "stage_type": "action",
             "sla_hours": 120, "assignment_rule": _role("subcontractor"),
             "escalation_rule": _role("superintendent"), "actions": ["update_entity_status"]},
            {"stage_number": 3, "stage_name": "Completed", "stage_type": "review",
             "sla_hours": 48, "assignment_rule": _role("superintendent"),
             "actions": ["send_notification", "update_entity_status"]},
            {"stage_number": 4, "stage_name": "Verified", "stage_type": "approval",
             "sla_hours": 48, "assignment_rule": _role("project_manager"),
             "actions": ["create_audit_log"]},
            {"stage_number": 5, "stage_name": "Closed", "stage_type": "notification",
             "assignment_rule": {"type": "auto", "action": "close"},
             "actions": ["send_notification", "update_entity_status"]},
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 2, "action": "complete", "name": "Start Work"},
            {"from_stage": 2, "to_stage": 3, "action": "complete", "name": "Work Complete"},
            {"from_stage": 3, "to_stage": 4, "action": "approve", "name": "Verify"},
            {"from_stage": 3, "to_stage": 2, "action": "request_changes", "name": "Rework Required"},
            {"from_stage": 4, "to_stage": 5, "action": "approve", "name": "Close Out"},
            {"from_stage": 4, "to_stage": 2, "action": "request_changes", "name": "Rework Required"},
            {"from_stage": 5, "to_stage": None, "action": "complete", "name": "Closed"},
        ],
    },
]


def seed_default_templates():
    """Install the standard templates. Safe to run repeatedly.

    A template is skipped when one with the same (entity_type, name) exists.
    A seeded template becomes the default only if its entity_type has none.

    Returns:
        {"created": [names], "skipped": [names]}
    """
    created, skipped = [], []
    for definition in DEFAULT_TEMPLATES:
        exists = db.session.execute(
            select(WorkflowTemplate.id).where(
                WorkflowTemplate.entity_type == definition["entity_type"],
                WorkflowTemplate.name == definition["name"],
            )
        ).first()
        if exists is not None:
            skipped.append(definition["name"])
            continue
        has_default = db.session.execute(
            select(WorkflowTemplate.id).where(
                WorkflowTemplate.entity_type == definition["entity_type"],
                WorkflowTemplate.is_default.is_(True),
            )
        ).first()
        create_template({**definition, "is_default": has_default is None})
        created.append(definition["name"])

    logger.info(
        "Default workflow templates seeded",
        extra={"created_count": len(created), "skipped_count": len(skipped)},
    )
    return {"created": created, "skipped": skipped}
