"""
Tests: two callers racing on the same workflow from separate threads.

Each test builds its own app bound to a SQLite file under tmp_path, so the
two threads hold separate connections and separate sessions. A barrier
holds both callers after they have read the instance (or passed the
duplicate pre-check) and before either one writes.

Covers:
    - Two approvals of one stage: one succeeds, one gets ConcurrentModificationError
    - Two starts for one entity: one succeeds, one gets ConflictError
    - History advances by exactly one entry per successful call
"""

import threading

import pytest
from sqlalchemy import func, select

import app.services.workflow_engine as engine
from app import create_app
from app.config import TestingConfig
from app.core.exceptions import ConcurrentModificationError, ConflictError
from app.models import db as _db
from app.models.auth import ProjectMember, User
from app.models.project import Project
from app.models.workflow import WorkflowAssignment, WorkflowInstance
from app.models.workflow import WorkflowHistoryEntry as WorkflowHistory
from app.services.scheduler_service import SchedulerService
from app.services.workflow_template_service import create_template


@pytest.fixture()
def race_app(tmp_path, monkeypatch):
    """App on a database file that both threads can open."""
    monkeypatch.setattr(
        TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'race.db'}"
    )
    # create_app rebinds the scheduler; restore the session app afterwards
    monkeypatch.setattr(SchedulerService, "_app", SchedulerService._app)
    application = create_app("testing")
    yield application
    with application.app_context():
        _db.engine.dispose()


@pytest.fixture()
def race_project(race_app, submittal_definition):
    """Project with the four review roles plus the default submittal template."""
    with race_app.app_context():
        proj = Project(code="PRJ-RACE", name="Race Tower", status="active")
        _db.session.add(proj)
        _db.session.flush()
        for email, role in (
            ("gc@example.com", "superintendent"),
            ("arch@example.com", "architect"),
            ("eng@example.com", "engineer"),
            ("pm@example.com", "project_manager"),
        ):
            user = User(email=email, full_name=email.split("@")[0], status="active")
            _db.session.add(user)
            _db.session.flush()
            _db.session.add(ProjectMember(project_id=proj.id, user_id=user.id, role_in_project=role))
        _db.session.commit()
        create_template(submittal_definition)
        return proj.id


def _run_together(app, *calls):
    """Run each call in its own thread and app context; return outcomes in call order."""
    outcomes = [None] * len(calls)

    def worker(index, call):
        with app.app_context():
            try:
                call()
                outcomes[index] = "ok"
            except Exception as exc:
                outcomes[index] = exc

    threads = [threading.Thread(target=worker, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert not any(t.is_alive() for t in threads)
    return outcomes


def _count(model, *criteria):
    return _db.session.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


class TestTransitionRace:
    def test_one_approval_wins(self, race_app, race_project, monkeypatch):
        with race_app.app_context():
            iid = engine.start_workflow("submittal", "S-RACE", project_id=race_project)["id"]

        barrier = threading.Barrier(2, timeout=10)
        real_lock = engine.lock_instance

        def lock_then_wait(instance_id):
            inst = real_lock(instance_id)
            barrier.wait()
            return inst

        monkeypatch.setattr(engine, "lock_instance", lock_then_wait)

        outcomes = _run_together(
            race_app,
            lambda: engine.transition(iid, "approve", actor_id=1),
            lambda: engine.transition(iid, "approve", actor_id=1),
        )

        assert outcomes.count("ok") == 1
        losers = [o for o in outcomes if o != "ok"]
        assert len(losers) == 1
        assert isinstance(losers[0], ConcurrentModificationError)

        with race_app.app_context():
            inst = engine.get_instance(iid)
            assert inst["current_stage"]["stage_name"] == "Architect Review"
            assert inst["version"] == 2
            assert _count(WorkflowHistory, WorkflowHistory.instance_id == iid) == 2
            assert _count(
                WorkflowAssignment,
                WorkflowAssignment.instance_id == iid,
                WorkflowAssignment.status == "active",
            ) == 1


class TestStartRace:
    def test_one_start_wins(self, race_app, race_project, monkeypatch):
        barrier = threading.Barrier(2, timeout=10)
        real_check = engine._active_instance_for

        def check_then_wait(entity_type, entity_id):
            found = real_check(entity_type, entity_id)
            barrier.wait()
            return found

        monkeypatch.setattr(engine, "_active_instance_for", check_then_wait)

        outcomes = _run_together(
            race_app,
            lambda: engine.start_workflow("submittal", "S-TWIN", project_id=race_project),
            lambda: engine.start_workflow("submittal", "S-TWIN", project_id=race_project),
        )

        assert outcomes.count("ok") == 1
        losers = [o for o in outcomes if o != "ok"]
        assert len(losers) == 1
        assert type(losers[0]) is ConflictError
        assert losers[0].field == "entity"

        with race_app.app_context():
            assert _count(
                WorkflowInstance,
                WorkflowInstance.entity_id == "S-TWIN",
                WorkflowInstance.status == "active",
            ) == 1
            assert _count(WorkflowHistory) == 1
