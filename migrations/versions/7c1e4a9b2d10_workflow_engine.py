"""workflow_engine

Create users, projects, project_members, scheduled_jobs and the workflow
engine tables (templates, stages, transitions, instances, assignments,
history, SLA violations, escalations).

Revision ID: 7c1e4a9b2d10
Revises:
Create Date: 2026-10-12 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e4a9b2d10"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    # ── Identity & projects ──────────────────────────────────────────────
    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_status", "users", ["status"])

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("description", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "project_members" not in existing_tables:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_in_project", sa.String(length=100), nullable=True),
            sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        )
        op.create_index("ix_project_members_project_role", "project_members", ["project_id", "role_in_project"])
        op.create_index("ix_project_members_user", "project_members", ["user_id"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )

    # ── Template graph ───────────────────────────────────────────────────
    if "workflow_templates" not in existing_tables:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entity_type", "name", name="uq_workflow_templates_entity_name"),
        )
        op.create_index("ix_workflow_templates_entity_type", "workflow_templates", ["entity_type"])
        op.create_index(
            "uq_workflow_templates_default_per_entity",
            "workflow_templates",
            ["entity_type"],
            unique=True,
            postgresql_where=sa.text("is_default IS TRUE"),
            sqlite_where=sa.text("is_default = 1"),
        )

    if "workflow_stages" not in existing_tables:
        op.create_table(
            "workflow_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("stage_number", sa.Integer(), nullable=False),
            sa.Column("stage_name", sa.String(length=200), nullable=False),
            sa.Column("stage_type", sa.String(length=20), nullable=False, server_default="approval"),
            sa.Column("sla_hours", sa.Integer(), nullable=True),
            sa.Column("escalation_hours", sa.Integer(), nullable=True),
            sa.Column("assignment_rule", sa.JSON(), nullable=False),
            sa.Column("escalation_rule", sa.JSON(), nullable=True),
            sa.Column("actions", sa.JSON(), nullable=False),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("template_id", "stage_number", name="uq_workflow_stages_template_number"),
            sa.CheckConstraint("stage_number > 0", name="ck_workflow_stages_number_positive"),
            sa.CheckConstraint(
                "stage_type IN ('approval','review','notification','action')",
                name="ck_workflow_stages_type",
            ),
        )
        op.create_index("ix_workflow_stages_template_id", "workflow_stages", ["template_id"])

    if "workflow_transitions" not in existing_tables:
        op.create_table(
            "workflow_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("from_stage_id", sa.Integer(), nullable=True),
            sa.Column("to_stage_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["from_stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["to_stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("template_id", "from_stage_id", "action",
                                name="uq_workflow_transitions_from_action"),
            sa.CheckConstraint(
                "action IN ('approve','reject','revise','skip','complete','request_changes')",
                name="ck_workflow_transitions_action",
            ),
        )
        op.create_index("ix_workflow_transitions_template_id", "workflow_transitions", ["template_id"])

    # ── Execution state ──────────────────────────────────────────────────
    if "workflow_instances" not in existing_tables:
        op.create_table(
            "workflow_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("current_stage_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("assignee_id", sa.Integer(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stage_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stage_due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_overdue", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("started_by", sa.Integer(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["current_stage_id"], ["workflow_stages.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "status IN ('active','completed','rejected','cancelled','paused')",
                name="ck_workflow_instances_status",
            ),
        )
        op.create_index("ix_workflow_instances_template_id", "workflow_instances", ["template_id"])
        op.create_index("ix_workflow_instances_project_id", "workflow_instances", ["project_id"])
        op.create_index("ix_workflow_instances_assignee_id", "workflow_instances", ["assignee_id"])
        op.create_index("ix_workflow_instances_entity", "workflow_instances", ["entity_type", "entity_id"])
        op.create_index("ix_workflow_instances_status_due", "workflow_instances", ["status", "stage_due_at"])
        op.create_index(
            "uq_workflow_instances_active_entity",
            "workflow_instances",
            ["entity_type", "entity_id"],
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        )

    if "workflow_assignments" not in existing_tables:
        op.create_table(
            "workflow_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("assignee_type", sa.String(length=10), nullable=False),
            sa.Column("assignee_id", sa.Integer(), nullable=True),
            sa.Column("assignee_role", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("response_action", sa.String(length=30), nullable=True),
            sa.Column("response_comments", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["stage_id"], ["workflow_stages.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "status IN ('pending','active','completed','skipped','delegated')",
                name="ck_workflow_assignments_status",
            ),
        )
        op.create_index("ix_workflow_assignments_instance_id", "workflow_assignments", ["instance_id"])
        op.create_index("ix_workflow_assignments_assignee_status", "workflow_assignments", ["assignee_id", "status"])
        op.create_index(
            "uq_workflow_assignments_active_stage",
            "workflow_assignments",
            ["instance_id", "stage_id"],
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        )

    if "workflow_history" not in existing_tables:
        op.create_table(
            "workflow_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("action_type", sa.String(length=20), nullable=False),
            sa.Column("transition_action", sa.String(length=30), nullable=True),
            sa.Column("from_stage_id", sa.Integer(), nullable=True),
            sa.Column("to_stage_id", sa.Integer(), nullable=True),
            sa.Column("status_after", sa.String(length=20), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("assigned_from", sa.Integer(), nullable=True),
            sa.Column("assigned_to", sa.Integer(), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "sequence", name="uq_workflow_history_instance_sequence"),
            sa.CheckConstraint(
                "action_type IN ('start','transition','assign','escalate','cancel')",
                name="ck_workflow_history_action_type",
            ),
        )

    # ── SLA tracking ─────────────────────────────────────────────────────
    if "workflow_sla_violations" not in existing_tables:
        op.create_table(
            "workflow_sla_violations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("violated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("hours_overdue", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("assigned_to", sa.Integer(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["stage_id"], ["workflow_stages.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "stage_id", "due_at", name="uq_workflow_sla_violations_visit"),
        )
        op.create_index("ix_workflow_sla_violations_instance_id", "workflow_sla_violations", ["instance_id"])

    if "workflow_escalations" not in existing_tables:
        op.create_table(
            "workflow_escalations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.Integer(), nullable=False),
            sa.Column("violation_id", sa.Integer(), nullable=True),
            sa.Column("escalate_to_user_id", sa.Integer(), nullable=True),
            sa.Column("escalate_to_role", sa.String(length=100), nullable=True),
            sa.Column("trigger_reason", sa.String(length=20), nullable=False),
            sa.Column("hours_overdue", sa.Integer(), nullable=True),
            sa.Column("triggered_by", sa.Integer(), nullable=True),
            sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolution_action", sa.String(length=20), nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["stage_id"], ["workflow_stages.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["violation_id"], ["workflow_sla_violations.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "trigger_reason IN ('overdue','manual','no_response','sla_violation')",
                name="ck_workflow_escalations_trigger",
            ),
        )
        op.create_index("ix_workflow_escalations_instance_id", "workflow_escalations", ["instance_id"])
        op.create_index("ix_workflow_escalations_unresolved", "workflow_escalations", ["resolved_at"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "workflow_escalations",
        "workflow_sla_violations",
        "workflow_history",
        "workflow_assignments",
        "workflow_instances",
        "workflow_transitions",
        "workflow_stages",
        "workflow_templates",
        "scheduled_jobs",
        "project_members",
        "projects",
        "users",
    ):
        if table in existing_tables:
            op.drop_table(table)
