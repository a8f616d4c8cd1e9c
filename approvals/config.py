"""
Bank Approval Workflow Service
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'approvals_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Workflow defaults ────────────────────────────────────────────────
    WORKFLOW_DEFAULT_SLA_HOURS = float(os.getenv("WORKFLOW_DEFAULT_SLA_HOURS", "24"))
    WORKFLOW_WAIT_SLA_HOURS = float(os.getenv("WORKFLOW_WAIT_SLA_HOURS", "48"))
    WORKFLOW_FALLBACK_APPROVER_ROLE = os.getenv("WORKFLOW_FALLBACK_APPROVER_ROLE", "APPROVER")
    WORKFLOW_DEFAULT_PRIORITY = os.getenv("WORKFLOW_DEFAULT_PRIORITY", "MEDIUM")

    # ── Background jobs ──────────────────────────────────────────────────
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")
    SCHEDULER_TICK_SECONDS = int(os.getenv("SCHEDULER_TICK_SECONDS", "15"))
    ESCALATION_INTERVAL_SECONDS = int(os.getenv("ESCALATION_INTERVAL_SECONDS", "300"))
    TIMEOUT_INTERVAL_SECONDS = int(os.getenv("TIMEOUT_INTERVAL_SECONDS", "300"))
    OUTBOX_DISPATCH_INTERVAL_SECONDS = int(os.getenv("OUTBOX_DISPATCH_INTERVAL_SECONDS", "30"))
    EVENT_CONSUMER_INTERVAL_SECONDS = int(os.getenv("EVENT_CONSUMER_INTERVAL_SECONDS", "10"))

    # ── Validators ───────────────────────────────────────────────────────
    # LLM validator is only enabled when a key is present; otherwise the
    # rules-based validator is substituted at startup.
    ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
    LLM_VALIDATOR_MODEL = os.getenv("LLM_VALIDATOR_MODEL", "claude-sonnet-4-5-20250929")
    GRAPH_SERVICE_URL = os.getenv("GRAPH_SERVICE_URL", "")

    # ── Collaborating services (callback targets) ────────────────────────
    PRODUCT_SERVICE_URL = os.getenv("PRODUCT_SERVICE_URL", "http://localhost:8082")
    PARTY_SERVICE_URL = os.getenv("PARTY_SERVICE_URL", "http://localhost:8083")
    SERVICE_CALL_TIMEOUT = int(os.getenv("SERVICE_CALL_TIMEOUT", "30"))

    # ── Event bus ────────────────────────────────────────────────────────
    EVENT_BUS_URL = os.getenv("EVENT_BUS_URL", "memory://")
    EVENT_TOPIC_APPROVED = os.getenv("EVENT_TOPIC_APPROVED", "workflow.approved")
    EVENT_TOPIC_REJECTED = os.getenv("EVENT_TOPIC_REJECTED", "workflow.rejected")
    EVENT_TOPIC_COMPLETED = os.getenv("EVENT_TOPIC_COMPLETED", "workflow.completed")
    SOLUTION_CREATED_TOPIC = os.getenv("SOLUTION_CREATED_TOPIC", "solution.created")
    PARTY_CHANGE_TOPIC = os.getenv("PARTY_CHANGE_TOPIC", "party.changes")
    EVENT_CONSUMER_GROUP = os.getenv("EVENT_CONSUMER_GROUP", "workflow-service")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    # Deterministic validator selection regardless of the developer's shell
    ANTHROPIC_API_KEY = ""
    GRAPH_SERVICE_URL = ""
    EVENT_BUS_URL = "memory://"
    PRODUCT_SERVICE_URL = "http://product-service.test"
    PARTY_SERVICE_URL = "http://party-service.test"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Heroku-style postgres:// URLs need the SQLAlchemy 2.0 scheme
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
