"""
Construction Document Workflow Engine
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy.exc import SQLAlchemyError

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.timing import init_request_timing
from app.middleware.rate_limiter import init_rate_limits

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        # Content-Type validation for mutating methods
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import auth as _auth_models               # noqa: F401
    from app.models import project as _project_models         # noqa: F401
    from app.models import scheduling as _scheduling_models   # noqa: F401
    from app.models import workflow as _workflow_models       # noqa: F401

    # ── Auto-create tables outside production (migrations own prod schema) ──
    if config_name != "production":
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except SQLAlchemyError as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-templates")
    def seed_workflow_templates_cmd():
        """Install the standard submittal/RFI/change order/drawing/punch templates."""
        from app.services.workflow_template_service import seed_default_templates
        result = seed_default_templates()
        click.echo(f"Seeded {len(result['created'])} workflow templates "
                   f"({len(result['skipped'])} already present).")

    @app.cli.command("sweep-workflow-sla")
    @click.option("--now", "now_value", default=None,
                  help="ISO-8601 timestamp to sweep at (default: current UTC time).")
    def sweep_workflow_sla_cmd(now_value):
        """Flag overdue workflow stages and record SLA violations."""
        from app.services.scheduler_service import SchedulerService as _Scheduler
        from app.services.sla_tracker import sweep_overdue
        from app.utils.helpers import parse_datetime

        if now_value is None:
            outcome = _Scheduler.run_job("workflow_sla_sweep")
            if outcome["status"] == "failed":
                raise click.ClickException(outcome["error"])
            click.echo(f"workflow_sla_sweep: {outcome['status']} {outcome.get('result')}")
            return
        try:
            now = parse_datetime(now_value)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--now")
        summary = sweep_overdue(now=now)
        click.echo(f"Checked {summary['checked']}, flagged {summary['flagged']}, "
                   f"escalated {len(summary['escalations'])}.")

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Construction Document Workflow Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("app.services.scheduled_jobs")  # registers @register_job handlers
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
