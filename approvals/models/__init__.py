"""
Bank Approval Workflow Service
Model package: shared SQLAlchemy handle.

Usage:
    from approvals.models import db

Model modules are imported by ``approvals.create_app`` so every table is
registered on ``db.metadata`` before ``create_all`` / migrations run.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
