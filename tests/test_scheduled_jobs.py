"""
Tests: scheduler registry, job records and the workflow SLA sweep job.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from app.models import db as _db
from app.models.scheduling import ScheduledJob
from app.models.workflow import WorkflowInstance
from app.services.scheduler_service import SchedulerService, get_registered_jobs
from app.utils.helpers import utcnow


def _backdate(instance_id, hours):
    _db.session.execute(
        update(WorkflowInstance)
        .where(WorkflowInstance.id == instance_id)
        .values(stage_due_at=utcnow() - timedelta(hours=hours))
    )
    _db.session.commit()


class TestRegistry:
    def test_sweep_job_registered(self):
        assert "workflow_sla_sweep" in get_registered_jobs()

    def test_ensure_jobs_registered_creates_record_once(self):
        assert SchedulerService.ensure_jobs_registered() == ["workflow_sla_sweep"]
        assert SchedulerService.ensure_jobs_registered() == []
        status = SchedulerService.get_job_status("workflow_sla_sweep")
        assert status["schedule_type"] == "interval"
        assert status["schedule_config"]["minutes"] == 15

    def test_unknown_job(self):
        result = SchedulerService.run_job("nightly_report")
        assert result["status"] == "error"


class TestSweepJob:
    def test_run_records_outcome(self, project, submittal_template):
        from app.services.workflow_engine import start_workflow

        SchedulerService.ensure_jobs_registered()
        inst = start_workflow("submittal", "S-JOB", project_id=project.id)
        _backdate(inst["id"], hours=3)

        result = SchedulerService.run_job("workflow_sla_sweep")
        assert result["status"] == "success"
        assert result["result"]["flagged"] == 1
        assert result["result"]["instance_ids"] == [inst["id"]]
        assert result["result"]["escalations_created"] == 1

        record = _db.session.execute(
            select(ScheduledJob).where(ScheduledJob.job_name == "workflow_sla_sweep")
        ).scalar_one()
        assert record.run_count == 1
        assert record.last_run_status == "success"

    def test_disabled_job_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("workflow_sla_sweep", False)
        result = SchedulerService.run_job("workflow_sla_sweep")
        assert result["status"] == "skipped"

    def test_failure_is_recorded(self, monkeypatch):
        import app.services.scheduled_jobs as jobs

        def boom(now=None):
            raise RuntimeError("database went away")

        monkeypatch.setattr(jobs, "sweep_overdue", boom)
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("workflow_sla_sweep")
        assert result["status"] == "failed"
        assert "database went away" in result["error"]
        assert SchedulerService.get_job_status("workflow_sla_sweep")["last_run_status"] == "failed"


def test_toggle_unknown_job_returns_none():
    assert SchedulerService.toggle_job("nope", True) is None


@pytest.mark.parametrize("name", ["workflow_sla_sweep"])
def test_list_jobs_includes_db_record(name):
    SchedulerService.ensure_jobs_registered()
    jobs = {j["job_name"]: j for j in SchedulerService.list_jobs()}
    assert jobs[name]["db_record"]["is_enabled"] is True
