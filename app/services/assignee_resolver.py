"""
Assignee Resolver: maps a stage's assignment rule to a concrete user.

Rules are a closed tagged variant stored as JSON on the stage:

    {"type": "user", "user_id": 7}          → that user
    {"type": "role", "role": "architect"}    → a project member holding the role
    {"type": "auto", "action": "distribute"} → nobody (the system owns the stage)

Role resolution picks, among project members with the role whose user is
active, the one with the lowest user id. The choice is deterministic so
replays and tests agree.

resolve_assignee is a pure read and is safe to call inside an open
transaction; it never writes.

Usage:
    from app.services.assignee_resolver import parse_rule, resolve_assignee

    rule = parse_rule(stage.assignment_rule)
    user_id = resolve_assignee(rule, project_id=instance.project_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.auth import ProjectMember, User

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Rule variants
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class UserRule:
    """Assign a fixed user."""
    user_id: int

    type = "user"

    def to_dict(self) -> dict:
        return {"type": self.type, "user_id": self.user_id}


@dataclass(frozen=True)
class RoleRule:
    """Assign whichever active project member holds ``role``."""
    role: str

    type = "role"

    def to_dict(self) -> dict:
        return {"type": self.type, "role": self.role}


@dataclass(frozen=True)
class AutoRule:
    """System-owned stage; ``action`` names what the actions executor does."""
    action: str

    type = "auto"

    def to_dict(self) -> dict:
        return {"type": self.type, "action": self.action}


AssignmentRule = UserRule | RoleRule | AutoRule


def parse_rule(data: dict | None) -> AssignmentRule | None:
    """Build a rule from its JSON form.

    ``None`` and ``{}`` mean "no rule" and return None.

    Raises:
        ValidationError: unknown type or missing/ill-typed field.
    """
    if data is None or data == {}:
        return None
    if isinstance(data, (UserRule, RoleRule, AutoRule)):
        return data
    if not isinstance(data, dict):
        raise ValidationError("Assignment rule must be an object", {"rule": repr(data)})

    rule_type = data.get("type")
    if rule_type == "user":
        user_id = data.get("user_id")
        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise ValidationError("user rule requires a positive integer user_id", {"rule": data})
        return UserRule(user_id=user_id)
    if rule_type == "role":
        role = data.get("role")
        if not isinstance(role, str) or not role.strip():
            raise ValidationError("role rule requires a non-empty role", {"rule": data})
        return RoleRule(role=role.strip())
    if rule_type == "auto":
        action = data.get("action")
        if not isinstance(action, str) or not action.strip():
            raise ValidationError("auto rule requires a non-empty action", {"rule": data})
        return AutoRule(action=action.strip())

    raise ValidationError(
        f"Unknown assignment rule type: {rule_type!r}. Expected one of: user, role, auto",
        {"rule": data},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Resolution
# ═════════════════════════════════════════════════════════════════════════════


def resolve_assignee(rule: AssignmentRule | dict | None, project_id: int | None) -> int | None:
    """Return the user id a stage should be assigned to, or None.

    Args:
        rule: A parsed rule, its JSON form, or None.
        project_id: Project context for role lookup; without it a role
            rule cannot resolve.

    Returns:
        The user id, or None when the rule is absent, auto, or unmatched.
    """
    rule = parse_rule(rule) if not isinstance(rule, (UserRule, RoleRule, AutoRule)) else rule

    if rule is None or isinstance(rule, AutoRule):
        return None
    if isinstance(rule, UserRule):
        return rule.user_id

    if project_id is None:
        return None

    stmt = (
        select(ProjectMember.user_id)
        .join(User, User.id == ProjectMember.user_id)
        .where(
            ProjectMember.project_id == project_id,
            ProjectMember.role_in_project == rule.role,
            User.status == "active",
        )
        .order_by(ProjectMember.user_id.asc())
        .limit(1)
    )
    user_id = db.session.execute(stmt).scalar_one_or_none()
    if user_id is None:
        logger.info(
            "No active member holds role in project",
            extra={"role": rule.role, "project_id": project_id},
        )
    return user_id


def assignee_type(rule: AssignmentRule | None) -> str | None:
    """Assignment record type for a rule: user | role | auto."""
    return rule.type if rule is not None else None


def assignee_role(rule: AssignmentRule | None) -> str | None:
    return rule.role if isinstance(rule, RoleRule) else None
