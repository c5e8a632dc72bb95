"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Workflow state changes (start, transition, cancel, escalate, sweep)
WORKFLOW_LIMIT = "120/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow endpoints: 120/minute
        - Health check:       exempt (registered on the app, not a blueprint)

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(WORKFLOW_LIMIT)(bp)

    app.logger.info("Rate limiter configured: workflow: %s", WORKFLOW_LIMIT)
