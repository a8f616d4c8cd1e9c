"""
Bank Approval Workflow Service
Flask Application Factory.

Usage:
    from approvals import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from approvals.config import config
from approvals.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RuntimeUnavailableError,
    ValidationError,
    WorkflowStateError,
)
from approvals.middleware.logging_config import configure_logging
from approvals.middleware.timing import init_request_timing
from approvals.models import db
from approvals.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────

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
    default_limits=[],                     # per-route limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _import_models():
    # registers every table on db.metadata
    for name in ("template", "workflow", "audit", "outbox", "scheduling"):
        importlib.import_module(f"approvals.models.{name}")


def _init_workflow_services(app):
    """Build the long-lived collaborators and park them on ``app.extensions``."""
    from approvals.callbacks.handlers import build_callback_registry
    from approvals.integrations.event_bus import build_event_bus
    from approvals.integrations.service_gateway import ServiceGateway
    from approvals.services.orchestrator import WorkflowOrchestrator
    from approvals.validation.pipeline import ValidatorPipeline

    gateway = ServiceGateway(timeout=app.config["SERVICE_CALL_TIMEOUT"])
    registry = build_callback_registry(app.config, gateway)
    pipeline = ValidatorPipeline.from_config(app.config, gateway)

    app.extensions["service_gateway"] = gateway
    app.extensions["callback_registry"] = registry
    app.extensions["validator_pipeline"] = pipeline
    app.extensions["event_bus"] = build_event_bus(app.config.get("EVENT_BUS_URL"))
    app.extensions["orchestrator"] = WorkflowOrchestrator(app.config, pipeline, registry)


def _register_error_handlers(app):
    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ConfigurationError)
    def handle_configuration(e):
        return api_error(E.CONFIGURATION, str(e), details=e.details)

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return api_error(E.VALIDATION_RULE, str(e), details=e.details)

    @app.errorhandler(ConflictError)
    def handle_conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e),
                         details={"field": e.field, "value": e.value})

    @app.errorhandler(WorkflowStateError)
    def handle_workflow_state(e):
        details = {k: v for k, v in (("workflow_id", e.workflow_id), ("task_id", e.task_id)) if v}
        return api_error(e.code, str(e), details=details)

    @app.errorhandler(RuntimeUnavailableError)
    def handle_runtime_unavailable(e):
        return api_error(E.UPSTREAM, str(e))

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


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
    app.config.from_object(config[config_name])

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

    init_request_timing(app)

    # ── Database tables ──────────────────────────────────────────────────
    _import_models()
    # the development SQLite file lives under instance/
    os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        db.create_all()

    # ── Workflow services ────────────────────────────────────────────────
    _init_workflow_services(app)

    # ── Blueprints & error handlers ──────────────────────────────────────
    from approvals.blueprints import register_blueprints
    register_blueprints(app)
    _register_error_handlers(app)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("approvals.services.scheduled_jobs")  # registers @register_job handlers
    from approvals.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        SchedulerService.start()

    logger.info("Approval workflow service ready (%s)", config_name)
    return app
