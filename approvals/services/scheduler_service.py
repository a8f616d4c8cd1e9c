"""
Bank Approval Workflow Service
Scheduler Service.

Lightweight interval scheduler for the background sweeps (escalation,
SLA timeout, outbox dispatch, inbound event polling).  A single daemon thread
wakes every ``SCHEDULER_TICK_SECONDS`` and runs whichever jobs are due.

Architecture:
    - register_job: decorator that adds a job function to the registry
    - SchedulerService: persists job records and runs jobs in app context
    - Jobs can also be triggered manually via ``POST /api/v1/jobs/<name>/run``
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from approvals.models import db
from approvals.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, str] = {}


def register_job(name: str, *, interval_config: str | None = None):
    """Decorator to register a job function.

    ``interval_config`` names the app config key holding the run interval
    in seconds.

    Usage:
        @register_job("approval_escalation", interval_config="ESCALATION_INTERVAL_SECONDS")
        def sweep_escalations(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if interval_config:
            _job_intervals[name] = interval_config
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Interval scheduler.

    Jobs are executed within Flask app context, one at a time.
    """

    _app: Flask | None = None
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a DB record for every registered job that has none."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                if ScheduledJob.query.filter_by(job_name=name).first():
                    continue
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip()[:500],
                    interval_seconds=_default_interval(cls._app, name),
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

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

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except SQLAlchemyError:
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
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        db.session.commit()
        return job_record.to_dict()

    # ── Background loop ──────────────────────────────────────────────────────

    @classmethod
    def due_jobs(cls, now: datetime | None = None) -> list[str]:
        now = now or datetime.now(timezone.utc)
        return [
            job.job_name
            for job in ScheduledJob.query.filter_by(is_enabled=True).all()
            if job.job_name in _job_registry and job.is_due(now)
        ]

    @classmethod
    def tick(cls) -> list[dict]:
        """Run every due job once."""
        with cls._app.app_context():
            names = cls.due_jobs()
        return [cls.run_job(name) for name in names]

    @classmethod
    def start(cls) -> None:
        """Start the daemon thread (no-op if already running)."""
        if cls._running or not cls._app:
            return
        cls.ensure_jobs_registered()
        cls._stop_event = threading.Event()
        interval = int(cls._app.config.get("SCHEDULER_TICK_SECONDS", 15))

        def loop():
            logger.info("Scheduler loop started (tick=%ds)", interval)
            while not cls._stop_event.wait(interval):
                try:
                    cls.tick()
                except SQLAlchemyError:
                    logger.exception("Scheduler tick failed")

        cls._thread = threading.Thread(target=loop, name="approval-scheduler", daemon=True)
        cls._running = True
        cls._thread.start()

    @classmethod
    def stop(cls) -> None:
        if cls._stop_event:
            cls._stop_event.set()
        cls._running = False
        cls._thread = None


def _default_interval(app: Flask, job_name: str) -> int:
    key = _job_intervals.get(job_name)
    return int(app.config.get(key, 300)) if key else 300
