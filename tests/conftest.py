"""
Shared pytest fixtures for the workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project: Pre-created Project with superintendent/architect/engineer/PM members
    - submittal_template: Default submittal template (GC → Architect → Engineer → Distribution)
"""

import copy

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import ProjectMember, User
from app.models.project import Project


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM helpers ──────────────────────────────────────────────────────────


def make_user(email, status="active", full_name=None):
    """Create a user directly in the DB."""
    u = User(email=email, full_name=full_name or email.split("@")[0], status=status)
    _db.session.add(u)
    _db.session.commit()
    return u


def make_project(code="PRJ-001", name="Harbor Tower"):
    p = Project(code=code, name=name, status="active")
    _db.session.add(p)
    _db.session.commit()
    return p


def make_member(project_id, user_id, role):
    m = ProjectMember(project_id=project_id, user_id=user_id, role_in_project=role)
    _db.session.add(m)
    _db.session.commit()
    return m


SUBMITTAL_DEFINITION = {
    "name": "Submittal Review",
    "entity_type": "submittal",
    "is_default": True,
    "stages": [
        {"stage_number": 1, "stage_name": "GC Review", "stage_type": "review",
         "sla_hours": 48, "escalation_hours": 60,
         "assignment_rule": {"type": "role", "role": "superintendent"},
         "escalation_rule": {"type": "role", "role": "project_manager"}},
        {"stage_number": 2, "stage_name": "Architect Review", "stage_type": "approval",
         "sla_hours": 72, "assignment_rule": {"type": "role", "role": "architect"},
         "escalation_rule": {"type": "role", "role": "project_manager"}},
        {"stage_number": 3, "stage_name": "Engineer Review", "stage_type": "approval",
         "sla_hours": 72, "assignment_rule": {"type": "role", "role": "engineer"}},
        {"stage_number": 4, "stage_name": "Distribution", "stage_type": "action",
         "assignment_rule": {"type": "auto", "action": "distribute"}},
    ],
    "transitions": [
        {"from_stage": 1, "to_stage": 2, "action": "approve"},
        {"from_stage": 1, "to_stage": None, "action": "reject"},
        {"from_stage": 2, "to_stage": 3, "action": "approve"},
        {"from_stage": 2, "to_stage": 1, "action": "revise"},
        {"from_stage": 2, "to_stage": None, "action": "reject"},
        {"from_stage": 3, "to_stage": 4, "action": "approve"},
        {"from_stage": 3, "to_stage": 1, "action": "revise"},
        {"from_stage": 3, "to_stage": None, "action": "reject"},
        {"from_stage": 4, "to_stage": None, "action": "complete"},
    ],
}


@pytest.fixture()
def project():
    """Project with one active member per review role.

    Members (user ids in creation order):
        superintendent → gc@example.com
        architect      → arch@example.com
        engineer       → eng@example.com
        project_manager → pm@example.com
    """
    proj = make_project()
    for email, role in (
        ("gc@example.com", "superintendent"),
        ("arch@example.com", "architect"),
        ("eng@example.com", "engineer"),
        ("pm@example.com", "project_manager"),
    ):
        user = make_user(email)
        make_member(proj.id, user.id, role)
    return proj


@pytest.fixture()
def users(project):
    """Map role → user id for the ``project`` fixture members."""
    return {m.role_in_project: m.user_id for m in project.members}


@pytest.fixture()
def submittal_template():
    from app.services.workflow_template_service import create_template
    return create_template(SUBMITTAL_DEFINITION)


@pytest.fixture()
def submittal_definition():
    """Fresh copy of the submittal template payload for tests that mutate it."""
    return copy.deepcopy(SUBMITTAL_DEFINITION)
