"""
Approval Task Manager.

Creates a subject's approval tasks from its plan, decides which ones are
actionable, and moves task status with compare-and-set updates:

    UPDATE approval_tasks SET status = 'COMPLETED', decision = …
     WHERE task_id = :id AND status IN ('PENDING', 'IN_PROGRESS')

An explicit approval and a timer-driven auto-decision can race for the same
task; the update's rowcount tells the loser, which gets TASK_ALREADY_RESOLVED.

Gating:
    parallel    every open task is actionable
    sequential  a level-N task is actionable once a level-(N-1) task is
                COMPLETED with APPROVE (level 1 always is)

An escalation copy shares its original's level and slot; when either one is
resolved, the other open tasks of the slot are cancelled.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update

from approvals.core.exceptions import NotFoundError, WorkflowStateError
from approvals.engine.plan import ComputedApprovalPlan
from approvals.models import db
from approvals.models.workflow import OPEN_TASK_STATUSES, ApprovalTask, WorkflowSubject
from approvals.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── Creation ─────────────────────────────────────────────────────────────────

def create_tasks(
    subject: WorkflowSubject,
    plan: ComputedApprovalPlan,
    *,
    fallback_role: str,
    now: datetime | None = None,
) -> list[ApprovalTask]:
    """One task per approver slot.

    Slots = max(required approvals, number of roles).  Slots beyond the role
    list reuse the last role, or *fallback_role* when the plan names none.
    Sequential plans put slot *i* on level *i + 1*; parallel plans put every
    slot on level 1.
    """
    if not plan.approval_required:
        return []

    now = now or utcnow()
    roles = list(plan.approver_roles)
    approvers = list(plan.specific_approvers)
    slots = max(plan.required_approvals, len(roles), 1)
    due = now + timedelta(hours=float(plan.sla_hours))

    tasks = []
    for i in range(slots):
        if i < len(roles):
            role = roles[i]
        else:
            role = roles[-1] if roles else fallback_role
        task = ApprovalTask(
            workflow_id=subject.workflow_id,
            required_role=role,
            assigned_to=approvers[i] if i < len(approvers) and approvers[i] else None,
            approval_level=i + 1 if plan.sequential else 1,
            status="PENDING",
            priority=subject.priority,
            due_date=due,
            fired_escalations=[],
            tenant_id=subject.tenant_id,
            created_at=now,
        )
        db.session.add(task)
        tasks.append(task)
    db.session.flush()
    logger.info("Created %d approval task(s) for %s (sequential=%s)",
                len(tasks), subject.workflow_id, plan.sequential,
                extra={"workflow_id": subject.workflow_id})
    return tasks


def create_escalated_task(task: ApprovalTask, role: str, now: datetime | None = None) -> ApprovalTask:
    """New PENDING task at *task*'s level, owned by *role*, same due date.

    The copy inherits the fired rule keys so a rule fires once per slot.
    """
    now = now or utcnow()
    escalated = ApprovalTask(
        workflow_id=task.workflow_id,
        required_role=role,
        assigned_to=None,
        approval_level=task.approval_level,
        status="PENDING",
        priority=task.priority,
        due_date=task.due_date,
        fired_escalations=list(task.fired_escalations or []),
        escalated_from=task.escalated_from or task.task_id,
        tenant_id=task.tenant_id,
        created_at=now,
    )
    db.session.add(escalated)
    db.session.flush()
    logger.info("Escalated task %s to role %s → %s", task.task_id, role, escalated.task_id,
                extra={"workflow_id": task.workflow_id, "task_id": task.task_id})
    return escalated


# ── Queries ──────────────────────────────────────────────────────────────────

def workflow_tasks(workflow_id: str) -> list[ApprovalTask]:
    return (ApprovalTask.query.filter_by(workflow_id=workflow_id)
            .order_by(ApprovalTask.approval_level, ApprovalTask.id).all())


def get_task(task_id: str) -> ApprovalTask:
    task = ApprovalTask.query.filter_by(task_id=task_id).first()
    if task is None:
        raise NotFoundError(resource="ApprovalTask", resource_id=task_id)
    return task


def list_tasks(assignee: str | None = None, role: str | None = None, status: str | None = None):
    """Query of tasks for an inbox view, oldest due first."""
    q = ApprovalTask.query
    if assignee:
        q = q.filter(ApprovalTask.assigned_to == assignee)
    if role:
        q = q.filter(ApprovalTask.required_role == role)
    if status:
        q = q.filter(ApprovalTask.status == status.upper())
    return q.order_by(ApprovalTask.due_date.asc(), ApprovalTask.id.asc())


def approved_levels(tasks: list[ApprovalTask]) -> set[int]:
    return {
        t.approval_level for t in tasks
        if t.status == "COMPLETED" and (t.decision or {}).get("decision") == "APPROVE"
    }


def approval_count(tasks: list[ApprovalTask]) -> int:
    return sum(
        1 for t in tasks
        if t.status == "COMPLETED" and (t.decision or {}).get("decision") == "APPROVE"
    )


def is_actionable(task: ApprovalTask, tasks: list[ApprovalTask], sequential: bool) -> bool:
    if not task.is_open:
        return False
    if not sequential or task.approval_level <= 1:
        return True
    return (task.approval_level - 1) in approved_levels(tasks)


def actionable_tasks(workflow_id: str, sequential: bool) -> list[ApprovalTask]:
    tasks = workflow_tasks(workflow_id)
    return [t for t in tasks if is_actionable(t, tasks, sequential)]


def select_task(
    workflow_id: str,
    approver_id: str,
    *,
    sequential: bool,
    task_id: str | None = None,
    system_actor: bool = False,
) -> ApprovalTask:
    """Task the approver is acting on.

    With *task_id*, that task must belong to the workflow, be open,
    actionable and (unless *system_actor*) assigned to the approver or to no
    one.  Without it, the approver's lowest-level actionable task is chosen,
    preferring tasks assigned to them over unassigned ones.

    Raises:
        NotFoundError, WorkflowStateError (TASK_ALREADY_RESOLVED,
        TASK_NOT_ACTIONABLE, NOT_AN_APPROVER).
    """
    tasks = workflow_tasks(workflow_id)

    if task_id:
        task = next((t for t in tasks if t.task_id == task_id), None)
        if task is None:
            raise NotFoundError(resource="ApprovalTask", resource_id=task_id)
        if not task.is_open:
            raise WorkflowStateError(
                WorkflowStateError.TASK_ALREADY_RESOLVED,
                f"Task {task_id} is already {task.status}",
                workflow_id=workflow_id, task_id=task_id,
            )
        if not is_actionable(task, tasks, sequential):
            raise WorkflowStateError(
                WorkflowStateError.TASK_NOT_ACTIONABLE,
                f"Task {task_id} at level {task.approval_level} is waiting for the previous level",
                workflow_id=workflow_id, task_id=task_id,
            )
        if not system_actor and task.assigned_to and task.assigned_to != approver_id:
            raise WorkflowStateError(
                WorkflowStateError.NOT_AN_APPROVER,
                f"Task {task_id} is assigned to another approver",
                workflow_id=workflow_id, task_id=task_id,
            )
        return task

    actionable = [t for t in tasks if is_actionable(t, tasks, sequential)]
    if not actionable:
        raise WorkflowStateError(
            WorkflowStateError.TASK_NOT_ACTIONABLE,
            "No approval task is currently actionable",
            workflow_id=workflow_id,
        )
    mine = [t for t in actionable if t.assigned_to == approver_id]
    unassigned = [t for t in actionable if not t.assigned_to]
    candidates = mine or unassigned
    if not candidates:
        raise WorkflowStateError(
            WorkflowStateError.NOT_AN_APPROVER,
            f"{approver_id} has no actionable task on this workflow",
            workflow_id=workflow_id,
        )
    return candidates[0]


# ── Compare-and-set transitions ──────────────────────────────────────────────

def complete_task(task: ApprovalTask, decision: dict, now: datetime | None = None) -> ApprovalTask:
    """Close an open task with *decision*.

    Raises:
        WorkflowStateError(TASK_ALREADY_RESOLVED): someone else closed it first.
    """
    now = now or utcnow()
    result = db.session.execute(
        update(ApprovalTask)
        .where(ApprovalTask.task_id == task.task_id,
               ApprovalTask.status.in_(OPEN_TASK_STATUSES))
        .values(status="COMPLETED", decision=decision, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.refresh(task)
        raise WorkflowStateError(
            WorkflowStateError.TASK_ALREADY_RESOLVED,
            f"Task {task.task_id} was already resolved ({task.status})",
            workflow_id=task.workflow_id, task_id=task.task_id,
        )
    db.session.refresh(task)
    return task


def close_open_tasks(workflow_id: str, status: str = "CANCELLED",
                     now: datetime | None = None, *, exclude: str | None = None,
                     slot: str | None = None) -> int:
    """Move every open task of a workflow (or of one escalation *slot*) to *status*."""
    now = now or utcnow()
    stmt = (
        update(ApprovalTask)
        .where(ApprovalTask.workflow_id == workflow_id,
               ApprovalTask.status.in_(OPEN_TASK_STATUSES))
        .values(status=status, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if exclude:
        stmt = stmt.where(ApprovalTask.task_id != exclude)
    if slot:
        stmt = stmt.where((ApprovalTask.task_id == slot) | (ApprovalTask.escalated_from == slot))
    count = db.session.execute(stmt).rowcount
    _expire_loaded_tasks(workflow_id)
    if count:
        logger.info("Moved %d open task(s) of %s to %s", count, workflow_id, status,
                    extra={"workflow_id": workflow_id})
    return count


def close_slot_siblings(task: ApprovalTask, now: datetime | None = None) -> int:
    """Cancel the other open tasks of *task*'s escalation slot."""
    slot = task.escalated_from or task.task_id
    return close_open_tasks(task.workflow_id, "CANCELLED", now, exclude=task.task_id, slot=slot)


def claim_escalation(task: ApprovalTask, key: str) -> bool:
    """Record *key* in the task's fired set; False if it was already there
    or another sweep changed the set first."""
    fired = list(task.fired_escalations or [])
    if key in fired:
        return False
    version = task.escalation_version or 0
    result = db.session.execute(
        update(ApprovalTask)
        .where(ApprovalTask.task_id == task.task_id,
               ApprovalTask.escalation_version == version,
               ApprovalTask.status.in_(OPEN_TASK_STATUSES))
        .values(fired_escalations=fired + [key], escalation_version=version + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(task)
    return result.rowcount == 1


def _expire_loaded_tasks(workflow_id: str) -> None:
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, ApprovalTask) and obj.workflow_id == workflow_id:
            db.session.expire(obj)
