"""
Tests: workflow engine lifecycle (start, transition, cancel) and read models.

Covers:
    - Start at the first stage with role-resolved assignee and due date
    - Approve forwards the document and closes the prior assignment
    - Terminal edges (reject → rejected, approve/complete → completed)
    - Self-loop revise restarts the stage clock
    - Error taxonomy: not found, duplicate active, invalid state/transition, bad template
    - Concurrency: a transition that loses the version race rolls back entirely
    - A storage failure mid-transition leaves no partial write
    - Available transitions, user task list, project listing and stats

All test data created via ORM helpers and the template service.
The `session` autouse fixture rolls back after every test.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

import app.services.workflow_engine as engine
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
from app.models import db as _db
from app.models.workflow import WorkflowAssignment, WorkflowInstance, WorkflowStage
from app.services.workflow_history import get_history, replay
from app.services.workflow_store import list_assignments
from app.services.workflow_template_service import create_template


def _dt(value):
    return datetime.fromisoformat(value)


@pytest.fixture()
def started(project, submittal_template):
    return engine.start_workflow("submittal", "S-001", project_id=project.id, actor_id=99)


@pytest.fixture()
def drawing_template():
    """Single review stage that loops back on revise."""
    return create_template({
        "name": "Drawing Check",
        "entity_type": "drawing",
        "is_default": True,
        "stages": [
            {"stage_number": 1, "stage_name": "Discipline Review", "stage_type": "review",
             "sla_hours": 24, "assignment_rule": {"type": "user", "user_id": 7}},
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 1, "action": "revise"},
            {"from_stage": 1, "to_stage": None, "action": "approve"},
        ],
    })


# ═════════════════════════════════════════════════════════════════════════════
# Start
# ═════════════════════════════════════════════════════════════════════════════


class TestStartWorkflow:
    def test_starts_at_first_stage_with_due_date(self, started, users):
        assert started["status"] == "active"
        assert started["current_stage"]["stage_name"] == "GC Review"
        assert started["assignee_id"] == users["superintendent"]
        assert started["version"] == 1
        assert started["is_terminal"] is False
        assert started["is_overdue"] is False
        started_at = _dt(started["stage_started_at"])
        assert _dt(started["stage_due_at"]) - started_at == timedelta(hours=48)

    def test_opens_one_active_assignment(self, started, users):
        rows = list_assignments(started["id"])
        assert len(rows) == 1
        assert rows[0].status == "active"
        assert rows[0].assignee_type == "role"
        assert rows[0].assignee_role == "superintendent"
        assert rows[0].assignee_id == users["superintendent"]

    def test_start_writes_history(self, started):
        history = get_history(started["id"])
        assert len(history) == 1
        assert history[0]["action_type"] == "start"
        assert history[0]["sequence"] == 1
        assert history[0]["from_stage_id"] is None
        assert history[0]["to_stage_id"] == started["current_stage_id"]
        assert history[0]["actor_id"] == 99

    def test_duplicate_active_instance_conflicts(self, started, project):
        with pytest.raises(ConflictError):
            engine.start_workflow("submittal", "S-001", project_id=project.id)
        count = _db.session.query(WorkflowInstance).filter_by(entity_id="S-001").count()
        assert count == 1

    def test_restart_allowed_after_terminal(self, started, project):
        engine.transition(started["id"], "reject", actor_id=1, comment="incomplete")
        second = engine.start_workflow("submittal", "S-001", project_id=project.id)
        assert second["id"] != started["id"]
        assert second["status"] == "active"
        latest = engine.get_instance_for_entity("submittal", "S-001")
        assert latest["id"] == second["id"]

    def test_integer_entity_id_is_stored_as_string(self, project, submittal_template):
        inst = engine.start_workflow("submittal", 42, project_id=project.id)
        assert inst["entity_id"] == "42"

    def test_no_default_template(self, project):
        with pytest.raises(NotFoundError):
            engine.start_workflow("rfi", "R-1", project_id=project.id)

    def test_inactive_default_is_not_used(self, project, submittal_template):
        from app.services.workflow_template_service import deactivate_template
        deactivate_template(submittal_template["id"])
        with pytest.raises(NotFoundError):
            engine.start_workflow("submittal", "S-009", project_id=project.id)

    def test_template_without_stages(self, project):
        create_template({"name": "Empty", "entity_type": "rfi", "is_default": True,
                         "stages": [], "transitions": []})
        with pytest.raises(InvalidTemplateError):
            engine.start_workflow("rfi", "R-1", project_id=project.id)
        assert _db.session.query(WorkflowInstance).count() == 0

    def test_unknown_entity_type(self):
        with pytest.raises(ValidationError):
            engine.start_workflow("invoice", "X-1")

    def test_blank_entity_id(self, submittal_template):
        with pytest.raises(ValidationError):
            engine.start_workflow("submittal", "  ")

    @pytest.mark.parametrize("entity_type, entity_id", [
        (3, "S-1"),
        (["submittal"], "S-1"),
        ("submittal", {"id": 1}),
        ("submittal", True),
    ])
    def test_non_scalar_entity_fields(self, submittal_template, entity_type, entity_id):
        with pytest.raises(ValidationError):
            engine.start_workflow(entity_type, entity_id)
        assert _db.session.query(WorkflowInstance).count() == 0

    def test_unknown_project(self, submittal_template):
        with pytest.raises(NotFoundError):
            engine.start_workflow("submittal", "S-001", project_id=9999)

    def test_role_without_project_leaves_unassigned(self, submittal_template):
        inst = engine.start_workflow("submittal", "S-002")
        assert inst["assignee_id"] is None
        assert inst["assigned_at"] is None
        assert list_assignments(inst["id"]) == []


# ═════════════════════════════════════════════════════════════════════════════
# Transition
# ═════════════════════════════════════════════════════════════════════════════


class TestTransition:
    def test_approve_moves_to_next_stage(self, started, users):
        result = engine.transition(started["id"], "approve", actor_id=users["superintendent"],
                                   comment="looks good")
        assert result["status"] == "active"
        assert result["current_stage"]["stage_name"] == "Architect Review"
        assert result["assignee_id"] == users["architect"]
        assert result["version"] == 2
        assert _dt(result["stage_due_at"]) - _dt(result["stage_started_at"]) == timedelta(hours=72)

    def test_prior_assignment_closed_with_response(self, started, users):
        engine.transition(started["id"], "approve", actor_id=users["superintendent"],
                          comment="looks good")
        rows = list_assignments(started["id"])
        assert [r.status for r in rows] == ["completed", "active"]
        assert rows[0].response_action == "approve"
        assert rows[0].response_comments == "looks good"
        assert rows[0].responded_at is not None
        assert rows[1].assignee_id == users["architect"]

    def test_reject_on_terminal_edge(self, started):
        result = engine.transition(started["id"], "reject", actor_id=1)
        assert result["status"] == "rejected"
        assert result["current_stage_id"] is None
        assert result["current_stage"] is None
        assert result["assignee_id"] is None
        assert result["completed_at"] is not None
        assert result["is_terminal"] is True

    def test_full_approval_path_completes(self, started, users):
        iid = started["id"]
        engine.transition(iid, "approve", actor_id=users["superintendent"])
        engine.transition(iid, "approve", actor_id=users["architect"])
        at_distribution = engine.transition(iid, "approve", actor_id=users["engineer"])
        assert at_distribution["current_stage"]["stage_name"] == "Distribution"
        assert at_distribution["current_stage"]["requires_response"] is False
        assert at_distribution["assignee_id"] is None

        done = engine.transition(iid, "complete")
        assert done["status"] == "completed"
        assert done["completed_at"] is not None

    def test_revise_returns_to_first_stage(self, started, users):
        iid = started["id"]
        engine.transition(iid, "approve", actor_id=users["superintendent"])
        back = engine.transition(iid, "revise", actor_id=users["architect"], comment="resubmit")
        assert back["current_stage"]["stage_name"] == "GC Review"
        assert back["assignee_id"] == users["superintendent"]

    def test_self_loop_resets_stage_clock(self, drawing_template):
        inst = engine.start_workflow("drawing", "D-100")
        stage_id = inst["current_stage_id"]
        _db.session.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == inst["id"])
            .values(stage_started_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
                    stage_due_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
                    is_overdue=True)
        )
        _db.session.commit()

        result = engine.transition(inst["id"], "revise", actor_id=7, comment="fix grid lines")
        assert result["current_stage_id"] == stage_id
        assert result["is_overdue"] is False
        started_at = _dt(result["stage_started_at"])
        assert started_at > datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert _dt(result["stage_due_at"]) - started_at == timedelta(hours=24)

        history = get_history(inst["id"])
        assert len(history) == 2
        assert history[1]["transition_action"] == "revise"
        assert history[1]["from_stage_id"] == history[1]["to_stage_id"] == stage_id

        rows = list_assignments(inst["id"])
        assert [r.status for r in rows] == ["completed", "active"]

    def test_action_without_edge(self, started):
        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.transition(started["id"], "revise")
        assert exc_info.value.stage_name == "GC Review"
        assert engine.get_instance(started["id"])["version"] == 1

    def test_unknown_action(self, started):
        with pytest.raises(InvalidTransitionError):
            engine.transition(started["id"], "teleport")

    def test_non_string_action_or_comment(self, started):
        with pytest.raises(ValidationError):
            engine.transition(started["id"], ["approve"])
        with pytest.raises(ValidationError):
            engine.transition(started["id"], "approve", comment={"note": "ok"})
        assert engine.get_instance(started["id"])["version"] == 1

    def test_terminal_instance_rejects_transition(self, started):
        engine.transition(started["id"], "reject")
        with pytest.raises(InvalidStateError):
            engine.transition(started["id"], "approve")

    def test_unknown_instance(self):
        with pytest.raises(NotFoundError):
            engine.transition(12345, "approve")

    def test_non_assignee_transition_is_logged(self, started, caplog):
        with caplog.at_level("WARNING", logger="app.services.workflow_engine"):
            result = engine.transition(started["id"], "approve", actor_id=424242)
        assert result["current_stage"]["stage_name"] == "Architect Review"
        assert any("other than the current assignee" in r.getMessage() for r in caplog.records)

    def test_corrupt_assignment_rule_rolls_back(self, started):
        architect_stage = _db.session.execute(
            select(WorkflowStage).where(WorkflowStage.stage_name == "Architect Review")
        ).scalar_one()
        architect_stage.assignment_rule = {"type": "committee"}
        _db.session.commit()

        with pytest.raises(InvalidTemplateError):
            engine.transition(started["id"], "approve")
        inst = engine.get_instance(started["id"])
        assert inst["current_stage"]["stage_name"] == "GC Review"
        assert inst["version"] == 1
        assert len(get_history(started["id"])) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Cancel
# ═════════════════════════════════════════════════════════════════════════════


class TestCancel:
    def test_cancel_keeps_stage_and_skips_assignments(self, started):
        result = engine.cancel(started["id"], actor_id=5, reason="withdrawn by subcontractor")
        assert result["status"] == "cancelled"
        assert result["current_stage_id"] == started["current_stage_id"]
        assert result["assignee_id"] is None
        assert result["completed_at"] is not None
        assert [r.status for r in list_assignments(started["id"])] == ["skipped"]

        last = get_history(started["id"])[-1]
        assert last["action_type"] == "cancel"
        assert last["comments"] == "withdrawn by subcontractor"

    def test_cancel_requires_reason(self, started):
        with pytest.raises(ValidationError):
            engine.cancel(started["id"], actor_id=5, reason="  ")
        with pytest.raises(ValidationError):
            engine.cancel(started["id"], actor_id=5, reason=7)

    def test_cancel_twice(self, started):
        engine.cancel(started["id"], actor_id=5, reason="dup")
        with pytest.raises(InvalidStateError):
            engine.cancel(started["id"], actor_id=5, reason="again")


# ═════════════════════════════════════════════════════════════════════════════
# Invariants
# ═════════════════════════════════════════════════════════════════════════════


class TestInvariants:
    def test_no_active_assignment_once_terminal(self, project, submittal_template, users):
        a = engine.start_workflow("submittal", "S-A", project_id=project.id)
        b = engine.start_workflow("submittal", "S-B", project_id=project.id)
        c = engine.start_workflow("submittal", "S-C", project_id=project.id)
        engine.transition(a["id"], "reject")
        engine.transition(b["id"], "approve")
        engine.transition(b["id"], "reject")
        engine.cancel(c["id"], actor_id=1, reason="duplicate")

        for iid in (a["id"], b["id"], c["id"]):
            active = _db.session.query(WorkflowAssignment).filter_by(
                instance_id=iid, status="active",
            ).count()
            assert active == 0

    def test_replay_reconstructs_current_state(self, started, users):
        iid = started["id"]
        engine.transition(iid, "approve", actor_id=users["superintendent"])
        engine.transition(iid, "revise", actor_id=users["architect"])
        engine.transition(iid, "approve", actor_id=users["superintendent"])

        inst = engine.get_instance(iid)
        state = replay(get_history(iid))
        assert state == {
            "current_stage_id": inst["current_stage_id"],
            "status": inst["status"],
            "assignee_id": inst["assignee_id"],
        }

    def test_history_sequence_is_contiguous(self, started, users):
        iid = started["id"]
        engine.transition(iid, "approve")
        engine.transition(iid, "approve")
        engine.transition(iid, "reject")
        assert [h["sequence"] for h in get_history(iid)] == [1, 2, 3, 4]


class TestConcurrency:
    def test_losing_transition_rolls_back(self, started, users, monkeypatch):
        """A competing approve lands between the read and the write."""
        iid = started["id"]
        real_resolve = engine.resolve_assignee
        raced = {"done": False}

        def racing_resolve(rule, project_id):
            if not raced["done"]:
                raced["done"] = True
                engine.transition(iid, "approve", actor_id=users["superintendent"])
            return real_resolve(rule, project_id)

        monkeypatch.setattr(engine, "resolve_assignee", racing_resolve)

        with pytest.raises(ConcurrentModificationError):
            engine.transition(iid, "approve", actor_id=users["superintendent"])

        inst = engine.get_instance(iid)
        assert inst["current_stage"]["stage_name"] == "Architect Review"
        assert inst["version"] == 2
        history = get_history(iid)
        assert len(history) == 2
        assert sum(1 for h in history if h["action_type"] == "transition") == 1
        active = [r for r in list_assignments(iid) if r.status == "active"]
        assert len(active) == 1
        engine.transition(iid, "reject")
        with pytest.raises(InvalidStateError):
            engine.transition(iid, "approve")

    def test_storage_failure_mid_transition_leaves_no_partial_write(self, started, users, monkeypatch):
        """The store fails after the instance row and assignments were written."""
        iid = started["id"]

        def failing_history(*args, **kwargs):
            raise OperationalError("INSERT INTO workflow_history", {}, Exception("disk I/O error"))

        monkeypatch.setattr(engine, "append_history", failing_history)

        with pytest.raises(StorageError) as exc_info:
            engine.transition(iid, "approve", actor_id=users["superintendent"])
        assert exc_info.value.operation == "transition"

        inst = engine.get_instance(iid)
        assert inst["current_stage"]["stage_name"] == "GC Review"
        assert inst["assignee_id"] == users["superintendent"]
        assert inst["version"] == 1
        assert len(get_history(iid)) == 1
        rows = list_assignments(iid)
        assert [(r.stage_id, r.status) for r in rows] == [(started["current_stage_id"], "active")]


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


class TestReads:
    def test_get_instance_not_found(self):
        with pytest.raises(NotFoundError):
            engine.get_instance(777)

    def test_instance_for_unknown_entity_is_none(self, submittal_template):
        assert engine.get_instance_for_entity("submittal", "nope") is None

    def test_available_transitions_ordered(self, started, users):
        engine.transition(started["id"], "approve")
        items = engine.list_available_transitions(started["id"])
        assert [t["action"] for t in items] == ["approve", "revise", "reject"]
        reject = items[2]
        assert reject["is_terminal"] is True
        assert reject["resulting_status"] == "rejected"
        assert items[0]["to_stage_name"] == "Engineer Review"

    def test_available_transitions_empty_when_terminal(self, started):
        engine.transition(started["id"], "reject")
        assert engine.list_available_transitions(started["id"]) == []

    def test_user_tasks_overdue_first(self, project, submittal_template, users):
        gc = users["superintendent"]
        first = engine.start_workflow("submittal", "S-10", project_id=project.id)
        second = engine.start_workflow("submittal", "S-11", project_id=project.id)
        third = engine.start_workflow("submittal", "S-12", project_id=project.id)

        now = datetime.now(timezone.utc)
        _db.session.execute(
            update(WorkflowInstance).where(WorkflowInstance.id == third["id"])
            .values(stage_due_at=now - timedelta(hours=2))
        )
        _db.session.execute(
            update(WorkflowInstance).where(WorkflowInstance.id == second["id"])
            .values(stage_due_at=now + timedelta(hours=3))
        )
        _db.session.commit()

        tasks = engine.list_user_tasks(gc, now=now)
        assert [t["id"] for t in tasks] == [third["id"], second["id"], first["id"]]
        assert [t["urgency"] for t in tasks] == ["overdue", "due_soon", "on_track"]

    def test_user_tasks_filters(self, project, submittal_template, users):
        engine.start_workflow("submittal", "S-20", project_id=project.id)
        assert engine.list_user_tasks(users["superintendent"], entity_type="rfi") == []
        assert engine.list_user_tasks(users["superintendent"], project_id=project.id + 1) == []
        assert engine.list_user_tasks(users["architect"]) == []
        with pytest.raises(ValidationError):
            engine.list_user_tasks(users["architect"], entity_type="invoice")

    def test_project_workflows_and_stats(self, project, submittal_template):
        a = engine.start_workflow("submittal", "S-30", project_id=project.id)
        engine.start_workflow("submittal", "S-31", project_id=project.id)
        engine.transition(a["id"], "reject")

        listed = engine.list_project_workflows(project.id)
        assert len(listed) == 2
        assert len(engine.list_project_workflows(project.id, status="rejected")) == 1
        with pytest.raises(ValidationError):
            engine.list_project_workflows(project.id, status="archived")

        stats = engine.get_project_stats(project.id)
        assert stats["totals"]["total"] == 2
        assert stats["totals"]["active"] == 1
        assert stats["totals"]["rejected"] == 1
        row = stats["by_entity_type"][0]
        assert row["entity_type"] == "submittal"
        assert row["unique_assignees"] == 1
