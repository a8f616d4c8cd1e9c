"""
Approval task manager tests.

Tests cover:
  - Task creation from a plan (slots, levels, roles, fallback role, assignees)
  - Sequential vs parallel gating
  - Task selection rules and their errors
  - Compare-and-set completion (a lost race surfaces TASK_ALREADY_RESOLVED)
  - Escalation copies, slot siblings, fired-escalation claims
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from approvals.core.exceptions import NotFoundError, WorkflowStateError
from approvals.engine.plan import ComputedApprovalPlan
from approvals.models import db
from approvals.models.workflow import ApprovalTask, WorkflowSubject
from approvals.services import task_manager
from approvals.utils.helpers import as_utc, utcnow


@pytest.fixture()
def subject():
    s = WorkflowSubject(workflow_instance_id="approval-sol-1", entity_type="SOLUTION_CONFIGURATION",
                        entity_id="sol-1", state="PENDING_APPROVAL", priority="HIGH", tenant_id="t1")
    db.session.add(s)
    db.session.flush()
    return s


def _plan(**kw):
    kw.setdefault("approver_roles", ("PRODUCT_MANAGER", "RISK_MANAGER"))
    kw.setdefault("required_approvals", 2)
    return ComputedApprovalPlan(**kw)


def _approve(task, approver="bob"):
    return task_manager.complete_task(task, {"decision": "APPROVE", "approver_id": approver})


# ═════════════════════════════════════════════════════════════════════════
# CREATION
# ═════════════════════════════════════════════════════════════════════════

class TestCreateTasks:
    def test_sequential_levels(self, subject):
        now = utcnow()
        tasks = task_manager.create_tasks(subject, _plan(sequential=True, sla_hours=8),
                                          fallback_role="APPROVER", now=now)
        assert [(t.approval_level, t.required_role) for t in tasks] == [
            (1, "PRODUCT_MANAGER"), (2, "RISK_MANAGER")]
        assert all(t.status == "PENDING" for t in tasks)
        assert as_utc(tasks[0].due_date) == now + timedelta(hours=8)
        assert tasks[0].priority == "HIGH"
        assert tasks[0].tenant_id == "t1"

    def test_parallel_reuses_last_role(self, subject):
        tasks = task_manager.create_tasks(
            subject, _plan(approver_roles=("CREDIT_OFFICER",), required_approvals=3),
            fallback_role="APPROVER")
        assert [(t.approval_level, t.required_role) for t in tasks] == [(1, "CREDIT_OFFICER")] * 3

    def test_fallback_role(self, subject):
        tasks = task_manager.create_tasks(subject, _plan(approver_roles=(), required_approvals=1),
                                          fallback_role="APPROVER")
        assert [t.required_role for t in tasks] == ["APPROVER"]

    def test_more_roles_than_approvals(self, subject):
        tasks = task_manager.create_tasks(
            subject, _plan(approver_roles=("A", "B", "C"), required_approvals=1),
            fallback_role="APPROVER")
        assert len(tasks) == 3

    def test_specific_approvers(self, subject):
        tasks = task_manager.create_tasks(subject, _plan(specific_approvers=("carol",)),
                                          fallback_role="APPROVER")
        assert [t.assigned_to for t in tasks] == ["carol", None]

    def test_no_approval_required(self, subject):
        plan = ComputedApprovalPlan(approval_required=False, required_approvals=0)
        assert task_manager.create_tasks(subject, plan, fallback_role="APPROVER") == []


# ═════════════════════════════════════════════════════════════════════════
# GATING & SELECTION
# ═════════════════════════════════════════════════════════════════════════

class TestGating:
    def test_sequential_level_two_waits(self, subject):
        first, second = task_manager.create_tasks(subject, _plan(sequential=True),
                                                  fallback_role="APPROVER")
        wid = subject.workflow_id
        assert task_manager.actionable_tasks(wid, sequential=True) == [first]
        _approve(first)
        assert task_manager.actionable_tasks(wid, sequential=True) == [second]

    def test_parallel_all_actionable(self, subject):
        tasks = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        assert task_manager.actionable_tasks(subject.workflow_id, sequential=False) == tasks

    def test_rejected_level_does_not_unlock_next(self, subject):
        first, second = task_manager.create_tasks(subject, _plan(sequential=True),
                                                  fallback_role="APPROVER")
        task_manager.complete_task(first, {"decision": "REJECT", "approver_id": "bob"})
        tasks = task_manager.workflow_tasks(subject.workflow_id)
        assert task_manager.is_actionable(second, tasks, sequential=True) is False


class TestSelectTask:
    def test_prefers_assigned_task(self, subject):
        tasks = task_manager.create_tasks(subject, _plan(specific_approvers=("", "carol")),
                                          fallback_role="APPROVER")
        picked = task_manager.select_task(subject.workflow_id, "carol", sequential=False)
        assert picked is tasks[1]

    def test_unassigned_for_anyone(self, subject):
        tasks = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        assert task_manager.select_task(subject.workflow_id, "dave", sequential=False) is tasks[0]

    def test_not_an_approver(self, subject):
        task_manager.create_tasks(subject, _plan(specific_approvers=("carol", "erin")),
                                  fallback_role="APPROVER")
        with pytest.raises(WorkflowStateError) as exc:
            task_manager.select_task(subject.workflow_id, "mallory", sequential=False)
        assert exc.value.code == WorkflowStateError.NOT_AN_APPROVER

    def test_explicit_task_assigned_to_other(self, subject):
        tasks = task_manager.create_tasks(subject, _plan(specific_approvers=("carol",)),
                                          fallback_role="APPROVER")
        with pytest.raises(WorkflowStateError) as exc:
            task_manager.select_task(subject.workflow_id, "mallory", sequential=False,
                                     task_id=tasks[0].task_id)
        assert exc.value.code == WorkflowStateError.NOT_AN_APPROVER
        # escalation actor may act on any task
        assert task_manager.select_task(subject.workflow_id, "system:escalation", sequential=False,
                                        task_id=tasks[0].task_id, system_actor=True) is tasks[0]

    def test_explicit_task_not_yet_actionable(self, subject):
        _, second = task_manager.create_tasks(subject, _plan(sequential=True),
                                              fallback_role="APPROVER")
        with pytest.raises(WorkflowStateError) as exc:
            task_manager.select_task(subject.workflow_id, "bob", sequential=True,
                                     task_id=second.task_id)
        assert exc.value.code == WorkflowStateError.TASK_NOT_ACTIONABLE

    def test_explicit_task_already_resolved(self, subject):
        first, _ = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        _approve(first)
        with pytest.raises(WorkflowStateError) as exc:
            task_manager.select_task(subject.workflow_id, "bob", sequential=False,
                                     task_id=first.task_id)
        assert exc.value.code == WorkflowStateError.TASK_ALREADY_RESOLVED

    def test_unknown_task(self, subject):
        task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        with pytest.raises(NotFoundError):
            task_manager.select_task(subject.workflow_id, "bob", sequential=False, task_id="nope")

    def test_nothing_actionable(self, subject):
        with pytest.raises(WorkflowStateError) as exc:
            task_manager.select_task(subject.workflow_id, "bob", sequential=False)
        assert exc.value.code == WorkflowStateError.TASK_NOT_ACTIONABLE


# ═════════════════════════════════════════════════════════════════════════
# COMPARE-AND-SET
# ═════════════════════════════════════════════════════════════════════════

class TestCompareAndSet:
    def test_complete_once(self, subject):
        first, _ = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        _approve(first, "bob")
        assert first.status == "COMPLETED"
        assert first.decision["approver_id"] == "bob"

        with pytest.raises(WorkflowStateError) as exc:
            _approve(first, "carol")
        assert exc.value.code == WorkflowStateError.TASK_ALREADY_RESOLVED
        assert first.decision["approver_id"] == "bob"

    def test_stale_copy_loses_race(self, subject):
        first, _ = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        # another writer closes the task behind this session's back
        db.session.execute(update(ApprovalTask)
                           .where(ApprovalTask.task_id == first.task_id)
                           .values(status="TIMEOUT")
                           .execution_options(synchronize_session=False))
        assert first.status == "PENDING"
        with pytest.raises(WorkflowStateError) as exc:
            _approve(first)
        assert exc.value.code == WorkflowStateError.TASK_ALREADY_RESOLVED
        assert first.status == "TIMEOUT"

    def test_close_open_tasks(self, subject):
        first, second = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        _approve(first)
        assert task_manager.close_open_tasks(subject.workflow_id, "CANCELLED") == 1
        assert second.status == "CANCELLED"
        assert first.status == "COMPLETED"
        assert task_manager.close_open_tasks(subject.workflow_id, "CANCELLED") == 0

    def test_approval_count(self, subject):
        first, second = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        _approve(first)
        task_manager.complete_task(second, {"decision": "REJECT", "approver_id": "x"})
        tasks = task_manager.workflow_tasks(subject.workflow_id)
        assert task_manager.approval_count(tasks) == 1
        assert task_manager.approved_levels(tasks) == {1}


class TestEscalationSlots:
    def test_escalated_copy_shares_slot(self, subject):
        first, second = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        copy = task_manager.create_escalated_task(first, "HEAD_OF_PRODUCT")
        again = task_manager.create_escalated_task(copy, "CEO")
        assert copy.escalated_from == first.task_id
        assert again.escalated_from == first.task_id
        assert copy.approval_level == first.approval_level
        assert copy.due_date == first.due_date

        _approve(copy)
        assert task_manager.close_slot_siblings(copy) == 2
        assert first.status == "CANCELLED"
        assert again.status == "CANCELLED"
        assert second.status == "PENDING"

    def test_claim_escalation_once(self, subject):
        first, _ = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        assert task_manager.claim_escalation(first, "0:SEND_REMINDER:age > 0.5") is True
        assert task_manager.claim_escalation(first, "0:SEND_REMINDER:age > 0.5") is False
        assert task_manager.claim_escalation(first, "1:AUTO_APPROVE:age > 1") is True
        assert first.fired_escalations == ["0:SEND_REMINDER:age > 0.5", "1:AUTO_APPROVE:age > 1"]
        assert first.escalation_version == 2

    def test_claim_on_closed_task_fails(self, subject):
        first, _ = task_manager.create_tasks(subject, _plan(), fallback_role="APPROVER")
        _approve(first)
        assert task_manager.claim_escalation(first, "k") is False


class TestInbox:
    def test_list_tasks_filters(self, subject):
        task_manager.create_tasks(subject, _plan(specific_approvers=("carol",)),
                                  fallback_role="APPROVER")
        assert task_manager.list_tasks(assignee="carol").count() == 1
        assert task_manager.list_tasks(role="RISK_MANAGER").count() == 1
        assert task_manager.list_tasks(status="pending").count() == 2
        assert task_manager.list_tasks(status="COMPLETED").count() == 0
