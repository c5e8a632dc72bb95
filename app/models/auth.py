"""
Auth Models: users and project memberships.

Authentication itself lives outside the workflow engine; these tables only
carry what the assignee resolver needs: who is active, and which role each
user holds inside a project.
"""

from datetime import datetime, timezone

from app.models import db

USER_STATUSES = frozenset({"active", "invited", "inactive", "suspended"})


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), nullable=False, default="active")  # active, invited, inactive, suspended
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_users_status", "status"),
    )

    project_memberships = db.relationship(
        "ProjectMember", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="ProjectMember.user_id",
    )

    @property
    def is_active(self):
        return self.status == "active"

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 2. PROJECT_MEMBERS
# ═══════════════════════════════════════════════════════════════
class ProjectMember(db.Model):
    __tablename__ = "project_members"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_in_project = db.Column(
        db.String(100),
        comment="Project role: superintendent, architect, engineer, project_manager, owner, ...",
    )
    joined_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        db.Index("ix_project_members_project_role", "project_id", "role_in_project"),
        db.Index("ix_project_members_user", "user_id"),
    )

    user = db.relationship("User", back_populates="project_memberships", foreign_keys=[user_id])

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role_in_project": self.role_in_project,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "user": self.user.to_dict() if self.user else None,
        }

    def __repr__(self):
        return f"<ProjectMember project={self.project_id} user={self.user_id} role={self.role_in_project}>"
