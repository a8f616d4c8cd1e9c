"""
Approval escalation sweep.

Checks every actionable open task of every pending workflow against its
plan's escalation rules.  A rule fires at most once per task: its key is
claimed in ``ApprovalTask.fired_escalations`` by a compare-and-set update
before the action runs, so overlapping sweeps cannot both act on it.

Rule conditions read the task's age:

    "age > 0.8"    fraction of the task's SLA window (created_at → due_date)
    "hours >= 12"  hours since the task was created

The comparison part is the regular condition grammar; anything that does not
parse never fires.

Usage:
    from approvals.services.escalation import EscalationService
    stats = EscalationService(get_orchestrator()).sweep()
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from approvals.core.exceptions import WorkflowStateError
from approvals.engine.conditions import evaluate
from approvals.engine.plan import ComputedApprovalPlan, EscalationAction, EscalationRule
from approvals.models import db
from approvals.models.workflow import WorkflowSubject
from approvals.services import task_manager
from approvals.services.workflow_runtime import EventType
from approvals.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_CONDITION = re.compile(r"^\s*(age|hours)\s*(.+)$", re.IGNORECASE)


def rule_key(index: int, rule: EscalationRule) -> str:
    return f"{index}:{rule.action.value}:{rule.condition}"


def task_age(task, now: datetime) -> tuple[float | None, float]:
    """(fraction of SLA window elapsed, hours elapsed) for *task* at *now*."""
    created = as_utc(task.created_at)
    due = as_utc(task.due_date)
    elapsed = (now - created).total_seconds()
    hours = elapsed / 3600
    if due is None:
        return None, hours
    window = (due - created).total_seconds()
    if window <= 0:
        return None, hours
    return elapsed / window, hours


def condition_holds(condition: str, task, now: datetime) -> bool:
    match = _CONDITION.match(condition or "")
    if not match:
        return False
    fraction, hours = task_age(task, now)
    value = fraction if match.group(1).lower() == "age" else hours
    return evaluate(value, match.group(2))


class NotificationHook:
    """Reminder delivery point.  Only logs; delivery mechanics live elsewhere."""

    def notify(self, subject, task, rule: EscalationRule) -> None:
        logger.info(
            "Reminder: task %s (%s, level %d) on workflow %s is due %s",
            task.task_id, task.assigned_to or task.required_role, task.approval_level,
            subject.workflow_id, task.due_date,
            extra={"workflow_id": subject.workflow_id, "task_id": task.task_id},
        )


class EscalationService:
    def __init__(self, orchestrator, notifier: NotificationHook | None = None):
        self.orchestrator = orchestrator
        self.notifier = notifier or NotificationHook()

    def sweep(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        stats = {"workflows": 0, "fired": 0, "reminders": 0, "escalated": 0,
                 "auto_decisions": 0, "lost_races": 0}
        workflow_ids = [s.workflow_id for s in
                        WorkflowSubject.query.filter_by(state="PENDING_APPROVAL").all()]
        for workflow_id in workflow_ids:
            stats["workflows"] += 1
            self._sweep_workflow(workflow_id, now, stats)
        if stats["fired"]:
            logger.info("Escalation sweep fired %d rule(s) across %d workflow(s)",
                        stats["fired"], stats["workflows"])
        return stats

    def _sweep_workflow(self, workflow_id: str, now: datetime, stats: dict) -> None:
        subject = WorkflowSubject.query.filter_by(workflow_id=workflow_id).first()
        if subject is None or subject.state != "PENDING_APPROVAL":
            return
        plan = ComputedApprovalPlan.from_dict(subject.approval_plan)
        if not plan.escalation_rules:
            return

        for task in task_manager.actionable_tasks(workflow_id, plan.sequential):
            for index, rule in enumerate(plan.escalation_rules):
                key = rule_key(index, rule)
                if key in (task.fired_escalations or []):
                    continue
                if not condition_holds(rule.condition, task, now):
                    continue
                if not task_manager.claim_escalation(task, key):
                    stats["lost_races"] += 1
                    continue
                if self._fire(subject, task, index, rule, key, now, stats):
                    # the workflow was decided; its other tasks are closed
                    return

    def _fire(self, subject, task, index: int, rule: EscalationRule, key: str,
              now: datetime, stats: dict) -> bool:
        """Run one claimed rule.  True when it decided the workflow."""
        details = {"task_id": task.task_id, "rule_index": index, "rule_key": key,
                   "condition": rule.condition, "action": rule.action.value,
                   "escalate_to_role": rule.escalate_to_role}

        if rule.action is EscalationAction.ESCALATE_TO_ROLE:
            escalated = task_manager.create_escalated_task(task, rule.escalate_to_role, now)
            details["escalated_task_id"] = escalated.task_id
        try:
            self.orchestrator.runtime.record(subject, EventType.ESCALATION_FIRED, details,
                                             audit_action="ESCALATION", audit_details=details)
        except WorkflowStateError:
            # decided since the scan; the claim rolls back with the event
            db.session.rollback()
            return True
        db.session.commit()
        stats["fired"] += 1

        if rule.action is EscalationAction.SEND_REMINDER:
            self.notifier.notify(subject, task, rule)
            stats["reminders"] += 1
            return False
        if rule.action is EscalationAction.ESCALATE_TO_ROLE:
            stats["escalated"] += 1
            return False

        decision = "APPROVE" if rule.action is EscalationAction.AUTO_APPROVE else "REJECT"
        reason = rule.description or f"{rule.action.value} by escalation rule '{rule.condition}'"
        try:
            self.orchestrator.apply_escalation_decision(task, decision, reason)
        except WorkflowStateError as exc:
            if exc.code not in (WorkflowStateError.TASK_ALREADY_RESOLVED,
                                WorkflowStateError.ILLEGAL_STATE):
                raise
            # an approver got there first
            stats["lost_races"] += 1
            logger.info("Escalation %s on task %s lost to a concurrent decision: %s",
                        rule.action.value, task.task_id, exc,
                        extra={"workflow_id": subject.workflow_id, "task_id": task.task_id})
            return False
        stats["auto_decisions"] += 1
        db.session.refresh(subject)
        return subject.state != "PENDING_APPROVAL"
