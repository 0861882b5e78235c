"""
Parallel Workflow Platform
SQLAlchemy models package.

The shared ``db`` handle lives here so that every model module, service
and the application factory import the same extension instance:

    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
