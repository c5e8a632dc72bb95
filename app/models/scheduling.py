"""
Construction Document Workflow Engine
Scheduled job registry.

Models:
    - ScheduledJob: Persisted schedule registry (run history + config)
"""

from datetime import datetime, timezone

from app.models import db


JOB_STATUSES = frozenset({"active", "paused", "completed", "failed"})
RUN_STATUSES = frozenset({"success", "failed", "skipped"})


class ScheduledJob(db.Model):
    """
    Registry of periodic background jobs (the SLA sweep among them).

    Tracks job configuration, last run time, and run history. The actual
    trigger (cron, APScheduler, a platform timer) lives outside the app.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="Unique job identifier: workflow_sla_sweep, ...")
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval",
                              comment="cron, interval, once")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment="Cron expression or interval config")
    status = db.Column(db.String(20), default="active",
                       comment="active, paused, completed, failed")
    is_enabled = db.Column(db.Boolean, default=True)

    # Execution tracking
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True,
                                comment="Summary of last execution")
    run_count = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record one execution of the job."""
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_type": self.schedule_type,
            "schedule_config": self.schedule_config,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
