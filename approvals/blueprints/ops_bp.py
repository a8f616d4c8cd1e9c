"""
Operations blueprint.

Endpoints:
    GET  /api/v1/health               — database, event bus and outbox status
    GET  /api/v1/jobs                 — registered background jobs
    POST /api/v1/jobs/<name>/run      — run one job now
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from approvals.models import db
from approvals.services.event_publisher import outbox_summary
from approvals.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

ops_bp = Blueprint("ops_bp", __name__, url_prefix="/api/v1")


@ops_bp.route("/health", methods=["GET"])
def health():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
        checks["outbox"] = {"status": "ok", **outbox_summary()}
    except SQLAlchemyError as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Event bus ────────────────────────────────────────────────────
    bus = current_app.extensions["event_bus"]
    try:
        t0 = time.perf_counter()
        bus.ping()
        bus_ms = (time.perf_counter() - t0) * 1000
        checks["event_bus"] = {"status": "ok", "backend": type(bus).__name__,
                               "latency_ms": round(bus_ms, 1)}
    except Exception as exc:
        # outbox rows wait for the bus; not fatal for the API
        checks["event_bus"] = {"status": "error", "detail": str(exc)}
        logger.warning("Health check — event bus unreachable: %s", exc)

    checks["app"] = {
        "name": "Bank Approval Workflow Service",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code


@ops_bp.route("/jobs", methods=["GET"])
def list_jobs():
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@ops_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Manually trigger a scheduled job."""
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in (result.get("error") or ""):
        return jsonify(result), 404
    return jsonify(result)
