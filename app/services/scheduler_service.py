"""
Construction Document Workflow Engine
Scheduler Service: periodic job registry and runner.

The engine does not own a clock. Something outside the process (cron, a
platform timer, APScheduler in a worker) calls ``SchedulerService.run_job``
or the matching CLI command; this module records what happened.

Architecture:
    - register_job decorator: name → function(app) registry
    - ScheduledJob rows persist config and run history per job
    - run_job executes inside an app context, logs and records failures,
      and returns a run summary. It is the only place in the codebase
      where a job failure is caught rather than propagated.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("workflow_sla_sweep")
        def sweep_workflow_sla(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


def _job_record(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


class SchedulerService:
    """
    Job registration, persistence and execution.

    Jobs are executed within a Flask app context.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to the Flask app."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[str]:
        """
        Ensure every registered job has a ScheduledJob row.
        Returns the names of the rows created.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                if _job_record(name) is None:
                    db.session.add(ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_type="interval",
                        schedule_config=_get_default_schedule(cls._app, name),
                        status="active",
                        is_enabled=True,
                    ))
                    created.append(name)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        A job whose record is disabled is not executed and is reported as
        ``skipped``.

        Returns:
            Dict with job_name, status, duration_ms, result, error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with cls._app.app_context():
            record = _job_record(job_name)
            if record is not None and not record.is_enabled:
                logger.info("Job %s is disabled; skipped", job_name)
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        with cls._app.app_context():
            try:
                record = _job_record(job_name)
                if record:
                    record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            record = _job_record(name)
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        record = _job_record(job_name)
        return record.to_dict() if record else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        record = _job_record(job_name)
        if not record:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        return record.to_dict()


def _get_default_schedule(app: Flask, job_name: str) -> dict:
    """Return default schedule config for known job types."""
    minutes = int(app.config.get("WORKFLOW_SWEEP_INTERVAL_MINUTES", 15))
    defaults = {
        "workflow_sla_sweep": {"minutes": minutes, "description": f"Every {minutes} minutes"},
    }
    return defaults.get(job_name, {"minutes": 60, "description": "Hourly"})
