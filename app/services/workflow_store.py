"""
Workflow Instance Store: transaction boundary, row locking and CAS writes.

Every mutating engine operation runs inside ``atomic()``:

    with atomic("transition", resource_id=instance_id):
        inst = lock_instance(instance_id)
        ...
        compare_and_swap(inst.id, snapshot_version, values)

Architecture:
    - lock_instance issues SELECT ... FOR UPDATE. PostgreSQL blocks a second
      writer until the first commits; SQLite ignores the clause and relies on
      the CAS below.
    - compare_and_swap issues UPDATE ... WHERE id = :id AND version = :seen.
      A zero rowcount means someone else wrote first: the unit of work is
      rolled back and ConcurrentModificationError is raised.
    - atomic() commits on success. Domain errors roll back and propagate
      unchanged; IntegrityError becomes ConflictError; any other
      SQLAlchemyError is logged and re-raised as StorageError.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    StorageError,
)
from app.models import db
from app.models.workflow import WorkflowAssignment, WorkflowInstance

logger = logging.getLogger(__name__)


@contextmanager
def atomic(operation: str, resource_id=None, conflict: ConflictError | None = None):
    """Run the body as one unit of work; commit on exit, roll back on any error.

    Args:
        operation: Short name used in logs and StorageError.
        resource_id: Instance/template id for log context.
        conflict: ConflictError to raise if the commit violates a unique
            constraint. Defaults to a generic conflict on ``operation``.
    """
    try:
        yield
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning(
            "Unique constraint rejected %s",
            operation,
            extra={"operation": operation, "resource_id": resource_id, "error": str(exc.orig)},
        )
        if conflict is None:
            conflict = ConflictError(
                operation, "id", str(resource_id),
                message=f"{operation} conflicts with existing data (id={resource_id})",
            )
        raise conflict from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception(
            "Storage failure during %s",
            operation,
            extra={"operation": operation, "resource_id": resource_id},
        )
        raise StorageError(operation, exc) from exc
    except Exception:
        db.session.rollback()
        raise


def lock_instance(instance_id: int) -> WorkflowInstance:
    """Load an instance with a row lock and fresh column values.

    Raises:
        NotFoundError: no such instance.
    """
    stmt = (
        select(WorkflowInstance)
        .where(WorkflowInstance.id == instance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    inst = db.session.execute(stmt).scalar_one_or_none()
    if inst is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return inst


def compare_and_swap(instance_id: int, expected_version: int, values: dict, *, bump: bool = True) -> None:
    """Write ``values`` to the instance only if its version is still ``expected_version``.

    Args:
        bump: Increment ``version``. The SLA sweep passes False so that
            flagging an instance overdue never invalidates a reviewer's
            in-flight transition.

    Raises:
        ConcurrentModificationError: the row changed since it was read.
    """
    values = dict(values)
    if bump:
        values["version"] = WorkflowInstance.version + 1
    stmt = (
        update(WorkflowInstance)
        .where(
            WorkflowInstance.id == instance_id,
            WorkflowInstance.version == expected_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        logger.warning(
            "Compare-and-swap lost on workflow instance",
            extra={"instance_id": instance_id, "expected_version": expected_version},
        )
        raise ConcurrentModificationError("WorkflowInstance", instance_id)


# ── Assignments ──────────────────────────────────────────────────────────────


def close_active_assignments(
    instance_id: int,
    stage_id: int | None,
    *,
    status: str,
    now,
    response_action: str | None = None,
    response_comments: str | None = None,
) -> int:
    """Move open assignments of a stage visit to ``status``. Returns rows touched.

    ``stage_id=None`` closes open assignments on every stage of the instance.
    """
    conditions = [
        WorkflowAssignment.instance_id == instance_id,
        WorkflowAssignment.status.in_(("pending", "active")),
    ]
    if stage_id is not None:
        conditions.append(WorkflowAssignment.stage_id == stage_id)
    values = {"status": status, "responded_at": now}
    if response_action is not None:
        values["response_action"] = response_action
    if response_comments is not None:
        values["response_comments"] = response_comments
    stmt = (
        update(WorkflowAssignment)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount


def open_assignment(
    instance_id: int,
    stage_id: int,
    *,
    assignee_type: str,
    assignee_id: int | None,
    assignee_role: str | None,
    now,
    due_at=None,
) -> WorkflowAssignment:
    """Create the single active assignment for a stage visit."""
    assignment = WorkflowAssignment(
        instance_id=instance_id,
        stage_id=stage_id,
        assignee_type=assignee_type,
        assignee_id=assignee_id,
        assignee_role=assignee_role,
        status="active",
        assigned_at=now,
        due_at=due_at,
    )
    db.session.add(assignment)
    db.session.flush()
    return assignment


def list_assignments(instance_id: int) -> list[WorkflowAssignment]:
    stmt = (
        select(WorkflowAssignment)
        .where(WorkflowAssignment.instance_id == instance_id)
        .order_by(WorkflowAssignment.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(db.session.execute(stmt).scalars())
