"""
Workflow Engine Blueprint.

HTTP boundary over the workflow engine services. Maps the engine's
exception taxonomy to status codes; holds no business rules of its own.

Endpoints (all under /api/v1/workflows):
    POST   /start                                   Body: {entity_type, entity_id, project_id?}  → 201
    GET    /<id>                                    Instance
    GET    /entity/<entity_type>/<entity_id>        Latest instance for an entity (404 if none)
    GET    /<id>/history                            Ordered audit trail
    POST   /<id>/transition                         Body: {action, comment?}
    POST   /<id>/cancel                             Body: {reason}
    GET    /<id>/transitions                        Actions available at the current stage
    POST   /<id>/escalate                           Body: {reason, escalate_to_user_id? | escalate_to_role?}
    GET    /tasks/my-tasks                          ?project_id=&entity_type=
    GET    /project/<pid>                           ?entity_type=&status=
    GET    /stats/project/<pid>
    GET    /templates                               ?entity_type=&include_inactive=
    GET    /templates/<tid>
    GET    /escalations                             ?instance_id=&unresolved=
    POST   /escalations/<eid>/resolve               Body: {action, notes?}
    POST   /sla/sweep                               Body: {now?}

Identity:
    The acting user comes from the X-User-Id header. Authentication and
    authorization are enforced upstream; this layer only reads the id.

Layer contract:
    - Blueprint: parse + validate request shape (400), call service,
      return JSON.
    - NO db.session calls here; all writes are owned by the services.
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import paginate
from app.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidStateError,
    InvalidTemplateError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from app.services import sla_tracker, workflow_engine, workflow_history, workflow_template_service
from app.utils.errors import E, api_error
from app.utils.helpers import clean_str, parse_datetime, parse_int

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflows")


# ── Error handlers ─────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})


@workflow_bp.errorhandler(ConcurrentModificationError)
def _handle_concurrent(error: ConcurrentModificationError):
    return api_error(E.CONFLICT_STATE, str(error), details={"instance_id": error.resource_id})


@workflow_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    return api_error(E.INVALID_STATE, str(error), details={"status": error.status})


@workflow_bp.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(error: InvalidTransitionError):
    return api_error(
        E.INVALID_TRANSITION, str(error),
        details={"action": error.action, "stage": error.stage_name},
    )


@workflow_bp.errorhandler(InvalidTemplateError)
def _handle_invalid_template(error: InvalidTemplateError):
    logger.error("Workflow template defect: %s", error, extra={"details": error.details})
    return api_error(E.INVALID_TEMPLATE, str(error), details=error.details)


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@workflow_bp.errorhandler(StorageError)
def _handle_storage(error: StorageError):
    return api_error(E.STORAGE, "Storage temporarily unavailable; retry later",
                     details={"operation": error.operation})


# ── Helpers ────────────────────────────────────────────────────────────────────


class _BadRequest(Exception):
    """Malformed request shape; answered with 400 before any service call."""


@workflow_bp.errorhandler(_BadRequest)
def _handle_bad_request(error: _BadRequest):
    return api_error(E.VALIDATION_INVALID, str(error))


def _actor_id():
    """Acting user from X-User-Id, or None when absent."""
    raw = request.headers.get("X-User-Id")
    try:
        return parse_int(raw, "X-User-Id")
    except ValueError as exc:
        raise _BadRequest(str(exc))


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise _BadRequest("Request body must be a JSON object")
    return data


def _text_field(data, name):
    """Optional string field from a JSON body; anything but a string is a 400."""
    try:
        return clean_str(data.get(name), name)
    except ValueError as exc:
        raise _BadRequest(str(exc))


def _int_arg(name, source=None):
    source = request.args if source is None else source
    try:
        return parse_int(source.get(name), name)
    except ValueError as exc:
        raise _BadRequest(str(exc))


def _bool_arg(name):
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


# ═════════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/start", methods=["POST"])
def start_workflow():
    """Start the default workflow for an entity. Returns 201."""
    data = _json_body()
    entity_type = _text_field(data, "entity_type")
    entity_id = data.get("entity_id")
    if not entity_type:
        return api_error(E.VALIDATION_REQUIRED, "entity_type is required")
    if entity_id in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "entity_id is required")
    if isinstance(entity_id, bool) or not isinstance(entity_id, (str, int)):
        raise _BadRequest("entity_id must be a string or integer")

    instance = workflow_engine.start_workflow(
        entity_type=entity_type,
        entity_id=entity_id,
        project_id=_int_arg("project_id", data),
        actor_id=_actor_id(),
    )
    return jsonify(instance), 201


@workflow_bp.route("/<int:instance_id>", methods=["GET"])
def get_instance(instance_id):
    return jsonify(workflow_engine.get_instance(instance_id))


@workflow_bp.route("/entity/<entity_type>/<entity_id>", methods=["GET"])
def get_instance_for_entity(entity_type, entity_id):
    instance = workflow_engine.get_instance_for_entity(entity_type, entity_id)
    if instance is None:
        return api_error(E.NOT_FOUND, f"No workflow found for {entity_type} {entity_id}")
    return jsonify(instance)


@workflow_bp.route("/<int:instance_id>/history", methods=["GET"])
def get_history(instance_id):
    history = workflow_history.get_history(instance_id)
    return jsonify({"instance_id": instance_id, "items": history, "total": len(history)})


@workflow_bp.route("/<int:instance_id>/transition", methods=["POST"])
def transition(instance_id):
    """Apply an action to the current stage."""
    data = _json_body()
    action = _text_field(data, "action")
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")

    instance = workflow_engine.transition(
        instance_id,
        action,
        actor_id=_actor_id(),
        comment=_text_field(data, "comment"),
    )
    return jsonify(instance)


@workflow_bp.route("/<int:instance_id>/cancel", methods=["POST"])
def cancel(instance_id):
    data = _json_body()
    instance = workflow_engine.cancel(instance_id, _actor_id(), _text_field(data, "reason"))
    return jsonify(instance)


@workflow_bp.route("/<int:instance_id>/transitions", methods=["GET"])
def list_available_transitions(instance_id):
    items = workflow_engine.list_available_transitions(instance_id)
    return jsonify({"instance_id": instance_id, "items": items})


@workflow_bp.route("/<int:instance_id>/escalate", methods=["POST"])
def escalate(instance_id):
    data = _json_body()
    escalation = sla_tracker.escalate_manually(
        instance_id,
        _actor_id(),
        _text_field(data, "reason"),
        escalate_to_user_id=_int_arg("escalate_to_user_id", data),
        escalate_to_role=_text_field(data, "escalate_to_role"),
    )
    return jsonify(escalation), 201


# ═════════════════════════════════════════════════════════════════════════════
# Task lists & reporting
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/tasks/my-tasks", methods=["GET"])
def my_tasks():
    """Active instances assigned to the caller, most urgent first."""
    user_id = _actor_id()
    if user_id is None:
        return api_error(E.VALIDATION_REQUIRED, "X-User-Id header is required")
    tasks = workflow_engine.list_user_tasks(
        user_id,
        project_id=_int_arg("project_id"),
        entity_type=request.args.get("entity_type") or None,
    )
    return jsonify({"items": tasks, "total": len(tasks)})


@workflow_bp.route("/project/<int:project_id>", methods=["GET"])
def project_workflows(project_id):
    items = workflow_engine.list_project_workflows(
        project_id,
        entity_type=request.args.get("entity_type") or None,
        status=request.args.get("status") or None,
    )
    page, total = paginate(items)
    return jsonify({"items": page, "total": total})


@workflow_bp.route("/stats/project/<int:project_id>", methods=["GET"])
def project_stats(project_id):
    return jsonify(workflow_engine.get_project_stats(project_id))


# ═════════════════════════════════════════════════════════════════════════════
# Templates (read-only)
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/templates", methods=["GET"])
def list_templates():
    items = workflow_template_service.list_templates(
        entity_type=request.args.get("entity_type") or None,
        include_inactive=_bool_arg("include_inactive"),
    )
    page, total = paginate(items)
    return jsonify({"items": page, "total": total})


@workflow_bp.route("/templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(workflow_template_service.get_template(template_id))


# ═════════════════════════════════════════════════════════════════════════════
# Escalations & SLA
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/escalations", methods=["GET"])
def list_escalations():
    items = sla_tracker.list_escalations(
        instance_id=_int_arg("instance_id"),
        unresolved_only=_bool_arg("unresolved"),
    )
    page, total = paginate(items)
    return jsonify({"items": page, "total": total})


@workflow_bp.route("/escalations/<int:escalation_id>/resolve", methods=["POST"])
def resolve_escalation(escalation_id):
    data = _json_body()
    action = _text_field(data, "action")
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    escalation = sla_tracker.resolve_escalation(
        escalation_id, action, notes=_text_field(data, "notes"), actor_id=_actor_id(),
    )
    return jsonify(escalation)


@workflow_bp.route("/sla/sweep", methods=["POST"])
def sla_sweep():
    """Run the overdue sweep now. Optional body {"now": ISO-8601} for back-dated runs."""
    data = _json_body()
    try:
        now = parse_datetime(data.get("now"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))
    return jsonify(sla_tracker.sweep_overdue(now=now))
