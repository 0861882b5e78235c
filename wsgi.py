"""
WSGI entry point for the Parallel Workflow Platform.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade     # apply migrations/versions
"""

from app import create_app

app = create_app()
