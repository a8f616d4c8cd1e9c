"""
Approval escalation sweep tests.

Tests cover:
  - Age / hours conditions against a task's SLA window
  - SEND_REMINDER, ESCALATE_TO_ROLE, AUTO_APPROVE, AUTO_REJECT
  - A rule fires once per task across sweeps
  - Escalated copies share their original's slot
  - A lost claim counts as a lost race
  - The approval_escalation job entry point
"""
from datetime import timedelta
from types import SimpleNamespace

import pytest

from approvals.services import task_manager
from approvals.services.escalation import EscalationService, NotificationHook, condition_holds
from approvals.services.scheduled_jobs import sweep_escalations
from approvals.utils.helpers import utcnow


class RecordingNotifier(NotificationHook):
    def __init__(self):
        self.sent = []

    def notify(self, subject, task, rule):
        self.sent.append((subject.workflow_id, task.task_id, rule.condition))


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def escalations(orchestrator, notifier):
    return EscalationService(orchestrator, notifier)


@pytest.fixture()
def with_rules(make_template, publish_template):
    def publish(*rules):
        return publish_template(make_template(escalation_rules=list(rules)))
    return publish


def _submit(orchestrator, variance=15, entity_id="sol-1"):
    return orchestrator.submit("SOLUTION_CONFIGURATION", entity_id, {"solutionId": entity_id},
                               {"pricingVariance": variance}, "alice")["workflow_id"]


def _later(hours):
    return utcnow() + timedelta(hours=hours)


# ═════════════════════════════════════════════════════════════════════════
# CONDITIONS
# ═════════════════════════════════════════════════════════════════════════

class TestConditions:
    START = utcnow()
    TASK = SimpleNamespace(created_at=START, due_date=START + timedelta(hours=10))

    @pytest.mark.parametrize("condition, hours, expected", [
        ("age > 0.5", 4, False),
        ("age > 0.5", 6, True),
        ("AGE >= 1", 10, True),
        ("hours >= 12", 11, False),
        ("hours >= 12", 12, True),
        ("hours > 1", 2, True),
        ("minutes > 1", 2, False),
        ("age", 20, False),
        ("", 20, False),
    ])
    def test_condition(self, condition, hours, expected):
        assert condition_holds(condition, self.TASK, self.START + timedelta(hours=hours)) is expected

    def test_age_without_due_date_never_fires(self):
        task = SimpleNamespace(created_at=self.START, due_date=None)
        assert condition_holds("age > 0", task, self.START + timedelta(hours=1)) is False
        assert condition_holds("hours > 0", task, self.START + timedelta(hours=1)) is True


# ═════════════════════════════════════════════════════════════════════════
# ACTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestReminder:
    def test_fires_once(self, orchestrator, escalations, notifier, with_rules):
        with_rules({"condition": "age > 0.5", "action": "SEND_REMINDER"})
        wid = _submit(orchestrator)

        assert escalations.sweep(now=_later(6))["fired"] == 0
        stats = escalations.sweep(now=_later(13))
        assert stats["workflows"] == 1
        assert stats["fired"] == 1
        assert stats["reminders"] == 1
        # sequential plan: only the level-1 task is actionable
        level_one = task_manager.workflow_tasks(wid)[0]
        assert notifier.sent == [(wid, level_one.task_id, "age > 0.5")]

        assert escalations.sweep(now=_later(20))["fired"] == 0
        assert len(notifier.sent) == 1

        status = orchestrator.status(wid)
        assert status["state"] == "PENDING_APPROVAL"
        assert status["escalations"][0]["action"] == "SEND_REMINDER"

    def test_audited(self, orchestrator, escalations, with_rules):
        with_rules({"condition": "hours >= 1", "action": "SEND_REMINDER"})
        wid = _submit(orchestrator)
        escalations.sweep(now=_later(2))
        rows = [a for a in orchestrator.audit_trail(wid) if a["action"] == "ESCALATION"]
        assert len(rows) == 1
        assert rows[0]["details"]["condition"] == "hours >= 1"

    def test_next_level_gets_its_own_reminder(self, orchestrator, escalations, notifier, with_rules):
        with_rules({"condition": "hours >= 1", "action": "SEND_REMINDER"})
        wid = _submit(orchestrator)
        escalations.sweep(now=_later(2))
        orchestrator.approve(wid, "pm-1")
        escalations.sweep(now=_later(3))
        assert len(notifier.sent) == 2

    def test_no_rules(self, orchestrator, escalations, solution_template):
        _submit(orchestrator)
        stats = escalations.sweep(now=_later(100))
        assert stats["workflows"] == 1
        assert stats["fired"] == 0


class TestEscalateToRole:
    def test_creates_escalated_task(self, orchestrator, escalations, with_rules):
        with_rules({"condition": "hours >= 20", "action": "ESCALATE_TO_ROLE",
                    "escalate_to_role": "HEAD_OF_PRODUCT"})
        wid = _submit(orchestrator)
        stats = escalations.sweep(now=_later(21))
        assert stats["escalated"] == 1

        tasks = task_manager.workflow_tasks(wid)
        original = tasks[0]
        escalated = next(t for t in tasks if t.escalated_from)
        assert escalated.escalated_from == original.task_id
        assert escalated.required_role == "HEAD_OF_PRODUCT"
        assert escalated.approval_level == 1
        assert original.status == "PENDING"

        assert escalations.sweep(now=_later(21))["fired"] == 0

    def test_fires_once_per_slot(self, orchestrator, escalations, with_rules):
        with_rules({"condition": "hours >= 20", "action": "ESCALATE_TO_ROLE",
                    "escalate_to_role": "HEAD_OF_PRODUCT"})
        wid = _submit(orchestrator)
        assert escalations.sweep(now=_later(21))["escalated"] == 1
        assert escalations.sweep(now=_later(42))["escalated"] == 0

        heads = [t for t in task_manager.workflow_tasks(wid) if t.required_role == "HEAD_OF_PRODUCT"]
        assert len(heads) == 1
        assert heads[0].fired_escalations == task_manager.workflow_tasks(wid)[0].fired_escalations

    def test_escalated_approver_closes_slot(self, orchestrator, escalations, with_rules):
        with_rules({"condition": "hours >= 20", "action": "ESCALATE_TO_ROLE",
                    "escalate_to_role": "HEAD_OF_PRODUCT"})
        wid = _submit(orchestrator)
        escalations.sweep(now=_later(21))
        escalated = next(t for t in task_manager.workflow_tasks(wid) if t.escalated_from)

        status = orchestrator.approve(wid, "head-1", task_id=escalated.task_id)
        assert status["state"] == "PENDING_APPROVAL"
        by_level = {(t.approval_level, t.required_role): t.status
                    for t in task_manager.workflow_tasks(wid)}
        assert by_level == {
            (1, "PRODUCT_MANAGER"): "CANCELLED",
            (1, "HEAD_OF_PRODUCT"): "COMPLETED",
            (2, "RISK_MANAGER"): "PENDING",
        }
        assert orchestrator.approve(wid, "risk-1")["state"] == "COMPLETED"


class TestClaimRace:
    def test_lost_claim_counted(self, orchestrator, escalations, notifier, with_rules, monkeypatch):
        with_rules({"condition": "hours >= 1", "action": "SEND_REMINDER"})
        _submit(orchestrator)
        monkeypatch.setattr(task_manager, "claim_escalation", lambda task, key: False)
        stats = escalations.sweep(now=_later(2))
        assert stats["lost_races"] == 1
        assert stats["fired"] == 0
        assert notifier.sent == []


class TestAutoDecisions:
    def test_auto_approve(self, orchestrator, escalations, with_rules, http):
        with_rules({"condition": "age > 1", "action": "AUTO_APPROVE"})
        wid = _submit(orchestrator, variance=5)
        stats = escalations.sweep(now=_later(25))
        assert stats["auto_decisions"] == 1

        status = orchestrator.status(wid)
        assert status["state"] == "COMPLETED"
        assert status["decisions"][0]["approver_id"] == "system:escalation"
        assert len(http.calls_to("/activate")) == 1

    def test_auto_reject(self, orchestrator, escalations, with_rules):
        with_rules({"condition": "age >= 1", "action": "AUTO_REJECT",
                    "description": "No response within SLA"})
        wid = _submit(orchestrator)
        escalations.sweep(now=_later(24))

        status = orchestrator.status(wid)
        assert status["state"] == "REJECTED"
        assert status["result"]["message"] == "No response within SLA"
        assert {t.status for t in task_manager.workflow_tasks(wid)} == {"COMPLETED", "CANCELLED"}

    def test_decided_workflow_is_not_swept(self, orchestrator, escalations, with_rules):
        with_rules({"condition": "age > 1", "action": "AUTO_APPROVE"})
        wid = _submit(orchestrator, variance=5)
        orchestrator.reject(wid, "pm-1")
        stats = escalations.sweep(now=_later(25))
        assert stats["workflows"] == 0
        assert orchestrator.status(wid)["state"] == "REJECTED"

    def test_escalated_copy_decided_then_original_stays_closed(self, orchestrator, escalations,
                                                               with_rules):
        with_rules(
            {"condition": "hours >= 1", "action": "ESCALATE_TO_ROLE", "escalate_to_role": "HEAD"},
            {"condition": "age > 2", "action": "AUTO_REJECT"},
        )
        wid = _submit(orchestrator, variance=5)
        escalations.sweep(now=_later(2))
        escalated = next(t for t in task_manager.workflow_tasks(wid) if t.escalated_from)
        assert orchestrator.approve(wid, "head-1", task_id=escalated.task_id)["state"] == "COMPLETED"
        assert escalations.sweep(now=_later(100))["workflows"] == 0


class TestEscalationJob:
    def test_job_runs_sweep(self, app, orchestrator, with_rules):
        with_rules({"condition": "hours >= 0", "action": "SEND_REMINDER"})
        _submit(orchestrator)
        result = sweep_escalations(app)
        assert result["fired"] == 1
        assert result["reminders"] == 1
