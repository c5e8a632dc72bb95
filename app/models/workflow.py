"""
Workflow Engine models: templates, stages, transitions, instances and the
audit/SLA records they produce.

A template is a directed graph: ordered stages connected by transitions
labelled with an action. An instance walks one entity (a submittal, an RFI,
...) through that graph, one stage at a time.

Business rules:
- At most one default template per entity_type; (entity_type, name) unique.
- Stage numbers are positive and unique within a template.
- At most one transition per (template, from_stage, action).
  from_stage NULL = start edge, to_stage NULL = terminal edge.
- At most one *active* instance per (entity_type, entity_id). Terminal
  instances stay as history and a new one may start afterwards.
- Instances are never deleted. Their ``version`` column guards every write.
- At most one active assignment per (instance, stage).
- History is append-only; ``sequence`` is monotonic per instance.
- One SLA violation per overrun stage visit (instance, stage, due_at).

Polymorphic entity pattern:
    entity_type + entity_id identify the governed document. entity_id is
    stored as String(64) so both UUID and integer document keys fit.

Actor and assignee columns hold identities from the external auth layer
and are deliberately not foreign keys.
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

ENTITY_TYPES = frozenset({"submittal", "rfi", "change_order", "drawing", "punch_item"})

STAGE_TYPES = frozenset({"approval", "review", "notification", "action"})

TRANSITION_ACTIONS = frozenset({
    "approve", "reject", "revise", "skip", "complete", "request_changes",
})

# Capability tags consumed by the external actions executor.
STAGE_ACTION_TAGS = frozenset({
    "send_notification",
    "update_entity_status",
    "create_audit_log",
    "trigger_webhook",
    "auto_distribute",
})

INSTANCE_STATUSES = frozenset({"active", "completed", "rejected", "cancelled", "paused"})
TERMINAL_STATUSES = frozenset({"completed", "rejected", "cancelled"})

ASSIGNEE_TYPES = frozenset({"user", "role", "auto"})
ASSIGNMENT_STATUSES = frozenset({"pending", "active", "completed", "skipped", "delegated"})

HISTORY_ACTION_TYPES = frozenset({"start", "transition", "assign", "escalate", "cancel"})

ESCALATION_TRIGGERS = frozenset({"overdue", "manual", "no_response", "sla_violation"})
ESCALATION_RESOLUTIONS = frozenset({"reassigned", "approved", "cancelled", "completed"})


def _iso(dt):
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


# ═════════════════════════════════════════════════════════════════════════════
# Template graph
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    """Named, reusable approval graph for one entity type."""

    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    entity_type = db.Column(
        db.String(30), nullable=False, index=True,
        comment="submittal | rfi | change_order | drawing | punch_item",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Template used by StartWorkflow for this entity_type",
    )
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    stages = db.relationship(
        "WorkflowStage",
        back_populates="template",
        order_by="WorkflowStage.stage_number",
        cascade="all, delete-orphan",
    )
    transitions = db.relationship(
        "WorkflowTransition",
        back_populates="template",
        order_by="WorkflowTransition.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("entity_type", "name", name="uq_workflow_templates_entity_name"),
        db.Index(
            "uq_workflow_templates_default_per_entity",
            "entity_type",
            unique=True,
            postgresql_where=db.text("is_default IS TRUE"),
            sqlite_where=db.text("is_default = 1"),
        ),
    )

    def to_dict(self, include_graph=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "entity_type": self.entity_type,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "created_by": self.created_by,
            "stage_count": len(self.stages),
            "transition_count": len(self.transitions),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_graph:
            d["stages"] = [s.to_dict() for s in self.stages]
            d["transitions"] = [t.to_dict() for t in self.transitions]
        return d

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.entity_type}/{self.name}>"


class WorkflowStage(db.Model):
    """One step of a template: who acts, of what kind, and how long they have."""

    __tablename__ = "workflow_stages"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_number = db.Column(db.Integer, nullable=False, comment="Order within the template, > 0")
    stage_name = db.Column(db.String(200), nullable=False)
    stage_type = db.Column(
        db.String(20), nullable=False, default="approval",
        comment="approval | review | notification | action",
    )
    sla_hours = db.Column(db.Integer, nullable=True, comment="Due date offset from stage entry")
    escalation_hours = db.Column(db.Integer, nullable=True, comment=">= sla_hours when both set")
    assignment_rule = db.Column(
        db.JSON, nullable=False, default=dict,
        comment='{"type": "user", "user_id": 1} | {"type": "role", "role": "architect"} '
                '| {"type": "auto", "action": "distribute"}',
    )
    escalation_rule = db.Column(db.JSON, nullable=True, comment="Secondary target, user or role")
    actions = db.Column(db.JSON, nullable=False, default=list, comment="Capability tags")

    template = db.relationship("WorkflowTemplate", back_populates="stages")

    __table_args__ = (
        db.UniqueConstraint("template_id", "stage_number", name="uq_workflow_stages_template_number"),
        db.CheckConstraint("stage_number > 0", name="ck_workflow_stages_number_positive"),
        db.CheckConstraint(
            "stage_type IN ('approval','review','notification','action')",
            name="ck_workflow_stages_type",
        ),
    )

    @property
    def requires_response(self):
        """Auto-owned, notification and action stages need no human decision."""
        if self.stage_type in ("notification", "action"):
            return False
        return (self.assignment_rule or {}).get("type") != "auto"

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "stage_type": self.stage_type,
            "sla_hours": self.sla_hours,
            "escalation_hours": self.escalation_hours,
            "assignment_rule": self.assignment_rule or {},
            "escalation_rule": self.escalation_rule,
            "actions": list(self.actions or []),
            "requires_response": self.requires_response,
        }

    def __repr__(self):
        return f"<WorkflowStage {self.id}: #{self.stage_number} {self.stage_name}>"


class WorkflowTransition(db.Model):
    """Directed edge between two stages, labelled by the action that fires it."""

    __tablename__ = "workflow_transitions"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_stage_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_stages.id", ondelete="CASCADE"),
        nullable=True,
        comment="NULL = start edge",
    )
    to_stage_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_stages.id", ondelete="CASCADE"),
        nullable=True,
        comment="NULL = terminal edge (reject → rejected, otherwise completed)",
    )
    action = db.Column(db.String(30), nullable=False)
    name = db.Column(db.String(200), nullable=True)

    template = db.relationship("WorkflowTemplate", back_populates="transitions")
    from_stage = db.relationship("WorkflowStage", foreign_keys=[from_stage_id])
    to_stage = db.relationship("WorkflowStage", foreign_keys=[to_stage_id])

    __table_args__ = (
        db.UniqueConstraint(
            "template_id", "from_stage_id", "action",
            name="uq_workflow_transitions_from_action",
        ),
        db.CheckConstraint(
            "action IN ('approve','reject','revise','skip','complete','request_changes')",
            name="ck_workflow_transitions_action",
        ),
    )

    @property
    def is_terminal(self):
        return self.to_stage_id is None

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "action": self.action,
            "name": self.name,
        }

    def __repr__(self):
        return f"<WorkflowTransition {self.id}: {self.from_stage_id} --{self.action}--> {self.to_stage_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# Execution state
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    """
    One execution thread of a template over a single entity.

    ``version`` is bumped by every state-changing write and is compared on
    update; see workflow_store.compare_and_swap.
    """

    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    current_stage_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_stages.id", ondelete="RESTRICT"),
        nullable=True,
        comment="NULL only once the instance is terminal",
    )
    status = db.Column(db.String(20), nullable=False, default="active")

    assignee_id = db.Column(db.Integer, nullable=True, index=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    stage_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stage_due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_overdue = db.Column(db.Boolean, nullable=False, default=False)

    started_by = db.Column(db.Integer, nullable=True)
    started_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1, comment="Compare-and-swap counter")

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    template = db.relationship("WorkflowTemplate")
    current_stage = db.relationship("WorkflowStage", foreign_keys=[current_stage_id])

    __table_args__ = (
        db.Index(
            "uq_workflow_instances_active_entity",
            "entity_type",
            "entity_id",
            unique=True,
            postgresql_where=db.text("status = 'active'"),
            sqlite_where=db.text("status = 'active'"),
        ),
        db.Index("ix_workflow_instances_entity", "entity_type", "entity_id"),
        db.Index("ix_workflow_instances_status_due", "status", "stage_due_at"),
        db.CheckConstraint(
            "status IN ('active','completed','rejected','cancelled','paused')",
            name="ck_workflow_instances_status",
        ),
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        stage = self.current_stage
        return {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template.name if self.template else None,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "project_id": self.project_id,
            "current_stage_id": self.current_stage_id,
            "current_stage": {
                "id": stage.id,
                "stage_number": stage.stage_number,
                "stage_name": stage.stage_name,
                "stage_type": stage.stage_type,
                "requires_response": stage.requires_response,
            } if stage else None,
            "status": self.status,
            "is_terminal": self.is_terminal,
            "assignee_id": self.assignee_id,
            "assigned_at": _iso(self.assigned_at),
            "stage_started_at": _iso(self.stage_started_at),
            "stage_due_at": _iso(self.stage_due_at),
            "is_overdue": bool(self.is_overdue),
            "started_by": self.started_by,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "version": self.version,
        }

    def __repr__(self):
        return f"<WorkflowInstance {self.id}: {self.entity_type}/{self.entity_id} [{self.status}]>"


class WorkflowAssignment(db.Model):
    """Who was asked to act on a stage visit, and how they answered."""

    __tablename__ = "workflow_assignments"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_stages.id", ondelete="RESTRICT"),
        nullable=False,
    )
    assignee_type = db.Column(db.String(10), nullable=False, comment="user | role | auto")
    assignee_id = db.Column(db.Integer, nullable=True)
    assignee_role = db.Column(db.String(100), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    assigned_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    response_action = db.Column(db.String(30), nullable=True)
    response_comments = db.Column(db.Text, nullable=True)

    __table_args__ = (
        db.Index(
            "uq_workflow_assignments_active_stage",
            "instance_id",
            "stage_id",
            unique=True,
            postgresql_where=db.text("status = 'active'"),
            sqlite_where=db.text("status = 'active'"),
        ),
        db.Index("ix_workflow_assignments_assignee_status", "assignee_id", "status"),
        db.CheckConstraint(
            "status IN ('pending','active','completed','skipped','delegated')",
            name="ck_workflow_assignments_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "stage_id": self.stage_id,
            "assignee_type": self.assignee_type,
            "assignee_id": self.assignee_id,
            "assignee_role": self.assignee_role,
            "status": self.status,
            "assigned_at": _iso(self.assigned_at),
            "due_at": _iso(self.due_at),
            "responded_at": _iso(self.responded_at),
            "response_action": self.response_action,
            "response_comments": self.response_comments,
        }

    def __repr__(self):
        return f"<WorkflowAssignment {self.id}: instance={self.instance_id} stage={self.stage_id} [{self.status}]>"


class WorkflowHistoryEntry(db.Model):
    """
    Append-only audit trail of an instance.

    Never updated or deleted. Replaying entries in ``sequence`` order
    reproduces the instance's stage, status and assignee.
    """

    __tablename__ = "workflow_history"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence = db.Column(db.Integer, nullable=False, comment="Monotonic per instance, from 1")
    action_type = db.Column(
        db.String(20), nullable=False,
        comment="start | transition | assign | escalate | cancel",
    )
    transition_action = db.Column(db.String(30), nullable=True)
    from_stage_id = db.Column(db.Integer, nullable=True)
    to_stage_id = db.Column(db.Integer, nullable=True)
    status_after = db.Column(db.String(20), nullable=False)
    actor_id = db.Column(db.Integer, nullable=True)
    assigned_from = db.Column(db.Integer, nullable=True)
    assigned_to = db.Column(db.Integer, nullable=True)
    comments = db.Column(db.Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("instance_id", "sequence", name="uq_workflow_history_instance_sequence"),
        db.CheckConstraint(
            "action_type IN ('start','transition','assign','escalate','cancel')",
            name="ck_workflow_history_action_type",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "sequence": self.sequence,
            "action_type": self.action_type,
            "transition_action": self.transition_action,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "status_after": self.status_after,
            "actor_id": self.actor_id,
            "assigned_from": self.assigned_from,
            "assigned_to": self.assigned_to,
            "comments": self.comments,
            "metadata": self.details or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<WorkflowHistoryEntry {self.instance_id}#{self.sequence} {self.action_type}>"


# ═════════════════════════════════════════════════════════════════════════════
# SLA tracking
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowSLAViolation(db.Model):
    """A stage visit that ran past its due date, recorded once by the sweep."""

    __tablename__ = "workflow_sla_violations"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_stages.id", ondelete="RESTRICT"),
        nullable=False,
    )
    due_at = db.Column(db.DateTime(timezone=True), nullable=False)
    violated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    hours_overdue = db.Column(db.Integer, nullable=False, default=0)
    assigned_to = db.Column(db.Integer, nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)

    __table_args__ = (
        db.UniqueConstraint(
            "instance_id", "stage_id", "due_at",
            name="uq_workflow_sla_violations_visit",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "stage_id": self.stage_id,
            "due_at": _iso(self.due_at),
            "violated_at": _iso(self.violated_at),
            "hours_overdue": self.hours_overdue,
            "assigned_to": self.assigned_to,
            "resolved_at": _iso(self.resolved_at),
            "resolution_notes": self.resolution_notes,
        }

    def __repr__(self):
        return f"<WorkflowSLAViolation {self.id}: instance={self.instance_id} +{self.hours_overdue}h>"


class WorkflowEscalation(db.Model):
    """Notice routed to a secondary user/role when a stage stalls or on demand."""

    __tablename__ = "workflow_escalations"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_stages.id", ondelete="RESTRICT"),
        nullable=False,
    )
    violation_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_sla_violations.id", ondelete="SET NULL"),
        nullable=True,
    )
    escalate_to_user_id = db.Column(db.Integer, nullable=True)
    escalate_to_role = db.Column(db.String(100), nullable=True)
    trigger_reason = db.Column(
        db.String(20), nullable=False,
        comment="overdue | manual | no_response | sla_violation",
    )
    hours_overdue = db.Column(db.Integer, nullable=True)
    triggered_by = db.Column(db.Integer, nullable=True, comment="NULL when raised by the sweep")
    triggered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_action = db.Column(
        db.String(20), nullable=True,
        comment="reassigned | approved | cancelled | completed",
    )
    resolution_notes = db.Column(db.Text, nullable=True)

    violation = db.relationship("WorkflowSLAViolation")

    __table_args__ = (
        db.Index("ix_workflow_escalations_unresolved", "resolved_at"),
        db.CheckConstraint(
            "trigger_reason IN ('overdue','manual','no_response','sla_violation')",
            name="ck_workflow_escalations_trigger",
        ),
    )

    @property
    def is_resolved(self):
        return self.resolved_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "stage_id": self.stage_id,
            "violation_id": self.violation_id,
            "escalate_to_user_id": self.escalate_to_user_id,
            "escalate_to_role": self.escalate_to_role,
            "trigger_reason": self.trigger_reason,
            "hours_overdue": self.hours_overdue,
            "triggered_by": self.triggered_by,
            "triggered_at": _iso(self.triggered_at),
            "notes": self.notes,
            "resolved_at": _iso(self.resolved_at),
            "resolution_action": self.resolution_action,
            "resolution_notes": self.resolution_notes,
        }

    def __repr__(self):
        return f"<WorkflowEscalation {self.id}: instance={self.instance_id} [{self.trigger_reason}]>"
