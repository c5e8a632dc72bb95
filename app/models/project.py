"""Construction project: the scope every workflow instance runs inside."""

from datetime import datetime, timezone

from app.models import db

PROJECT_STATUSES = frozenset({"planning", "active", "on_hold", "closed"})


class Project(db.Model):
    """A construction job whose documents flow through review workflows."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="active")
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    members = db.relationship(
        "ProjectMember", lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "status": self.status,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.code}>"
