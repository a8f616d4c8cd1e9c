"""
Operations API and scheduler tests.

Tests cover:
  - GET /api/v1/health: database, outbox and event bus checks
  - GET /api/v1/jobs and POST /api/v1/jobs/<name>/run
  - SchedulerService job records, due jobs and toggling
  - approval_timeout job entry point
"""
from approvals.integrations.event_bus import MemoryBus
from approvals.models import db
from approvals.models.scheduling import ScheduledJob
from approvals.services.scheduled_jobs import sweep_timeouts
from approvals.services.scheduler_service import SchedulerService

JOB_NAMES = {"approval_escalation", "approval_timeout", "outbox_dispatch", "event_consumer_poll"}


class UnreachableBus(MemoryBus):
    def ping(self):
        raise ConnectionError("connection refused")


def _auto_approved(orchestrator):
    return orchestrator.submit("SOLUTION_CONFIGURATION", "sol-1", {"solutionId": "sol-1"},
                               {"pricingVariance": 0}, "alice")["workflow_id"]


# ═════════════════════════════════════════════════════════════════════════
# HEALTH
# ═════════════════════════════════════════════════════════════════════════

class TestHealth:
    def test_healthy(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["event_bus"]["backend"] == "MemoryBus"
        assert data["checks"]["app"]["testing"] is True

    def test_outbox_counts(self, client, orchestrator, solution_template):
        _auto_approved(orchestrator)
        outbox = client.get("/api/v1/health").get_json()["checks"]["outbox"]
        assert (outbox["PENDING"], outbox["PUBLISHED"], outbox["FAILED"]) == (2, 0, 0)

    def test_bus_down_is_not_fatal(self, app, client):
        app.extensions["event_bus"] = UnreachableBus()
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["checks"]["event_bus"] == {"status": "error",
                                                         "detail": "connection refused"}


# ═════════════════════════════════════════════════════════════════════════
# JOBS API
# ═════════════════════════════════════════════════════════════════════════

class TestJobsAPI:
    def test_list(self, client):
        data = client.get("/api/v1/jobs").get_json()
        assert data["total"] == len(JOB_NAMES)
        assert {j["job_name"] for j in data["jobs"]} == JOB_NAMES

    def test_unknown_job(self, client):
        res = client.post("/api/v1/jobs/nightly_report/run")
        assert res.status_code == 404
        assert res.get_json()["error"] == "Unknown job: nightly_report"

    def test_run_outbox_dispatch(self, client, orchestrator, solution_template, bus):
        _auto_approved(orchestrator)
        res = client.post("/api/v1/jobs/outbox_dispatch/run")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "success"
        assert data["result"] == {"published": 2, "failed": 0, "given_up": 0}
        assert len(bus.messages("workflow.approved")) == 1

    def test_run_is_recorded(self, client):
        SchedulerService.ensure_jobs_registered()
        client.post("/api/v1/jobs/approval_timeout/run")
        jobs = {j["job_name"]: j for j in client.get("/api/v1/jobs").get_json()["jobs"]}
        record = jobs["approval_timeout"]["db_record"]
        assert record["run_count"] == 1
        assert record["last_run_status"] == "success"
        assert record["last_run_result"]["timed_out"] == 0
        assert jobs["outbox_dispatch"]["db_record"]["run_count"] == 0


# ═════════════════════════════════════════════════════════════════════════
# SCHEDULER
# ═════════════════════════════════════════════════════════════════════════

class TestScheduler:
    def test_records_created_once(self):
        assert len(SchedulerService.ensure_jobs_registered()) == len(JOB_NAMES)
        assert {j.job_name for j in ScheduledJob.query.all()} == JOB_NAMES
        assert SchedulerService.ensure_jobs_registered() == []

    def test_due_jobs(self):
        SchedulerService.ensure_jobs_registered()
        assert set(SchedulerService.due_jobs()) == JOB_NAMES
        SchedulerService.run_job("outbox_dispatch")
        db.session.expire_all()
        assert set(SchedulerService.due_jobs()) == JOB_NAMES - {"outbox_dispatch"}

    def test_toggle(self):
        SchedulerService.ensure_jobs_registered()
        assert SchedulerService.toggle_job("event_consumer_poll", False)["is_enabled"] is False
        assert "event_consumer_poll" not in SchedulerService.due_jobs()
        assert SchedulerService.toggle_job("nightly_report", True) is None

    def test_failing_job_reported(self, app, monkeypatch):
        monkeypatch.setitem(app.extensions, "orchestrator", None)
        result = SchedulerService.run_job("approval_timeout")
        assert result["status"] == "failed"
        assert "NoneType" in result["error"]


class TestTimeoutJob:
    def test_empty_sweep(self, app):
        result = sweep_timeouts(app)
        assert result["checked"] == 0
        assert result["timed_out"] == 0
        assert result["resumed"] == 0
