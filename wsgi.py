"""
WSGI entry point for the workflow engine.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflow-templates
    flask --app wsgi sweep-workflow-sla
"""

from app import create_app

app = create_app()
