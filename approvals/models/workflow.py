"""
Bank Approval Workflow Service
Workflow runtime models.

Models:
    - WorkflowSubject: one approval-workflow instance (projection of its event log).
    - WorkflowEvent: append-only event log; the source of truth for replay.
    - ApprovalTask: one approver slot of a subject's approval plan.

JSON columns are always reassigned, never mutated in place, so SQLAlchemy
change tracking picks every update up.
"""

import uuid
from datetime import datetime, timezone

from approvals.models import db

# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_STATES = (
    "INITIATED",
    "VALIDATION",
    "PENDING_APPROVAL",
    "APPROVED",
    "COMPLETED",
    "REJECTED",
    "CANCELLED",
    "FAILED",
    "TIMEOUT",
)

TERMINAL_STATES = frozenset({"COMPLETED", "REJECTED", "CANCELLED", "FAILED", "TIMEOUT"})
CANCELLABLE_STATES = frozenset({"INITIATED", "VALIDATION", "PENDING_APPROVAL"})

TASK_STATUSES = ("PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED", "TIMEOUT")
OPEN_TASK_STATUSES = ("PENDING", "IN_PROGRESS")

DECISIONS = frozenset({"APPROVE", "REJECT"})
PRIORITIES = frozenset({"LOW", "MEDIUM", "HIGH", "CRITICAL"})

# PENDING: terminal decision recorded, callback not yet dispatched
CALLBACK_STATUSES = frozenset({"NONE", "PENDING", "SUCCEEDED", "FAILED", "SKIPPED"})


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class WorkflowSubject(db.Model):
    """
    Persisted record of one approval workflow.

    Created at submission, mutated only by the orchestrator, terminal once
    ``state`` is in TERMINAL_STATES.  ``workflow_instance_id`` is derived from
    the entity id so redelivered submission events resolve to the same row.
    """

    __tablename__ = "workflow_subjects"
    __table_args__ = (
        db.Index("idx_wfs_entity", "entity_type", "entity_id"),
        db.Index("idx_wfs_state", "state"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.String(64), unique=True, nullable=False, default=_uuid)
    workflow_instance_id = db.Column(
        db.String(150), unique=True, nullable=False,
        comment="Runtime correlation id, e.g. approval-<entityId>",
    )

    entity_type = db.Column(db.String(60), nullable=False)
    entity_id = db.Column(db.String(100), nullable=False)
    entity_data = db.Column(db.JSON, default=dict, comment="Snapshot at submission")
    entity_metadata = db.Column(db.JSON, default=dict,
                                comment="Rule inputs, after validator enrichment")

    template_id = db.Column(db.String(100), nullable=True, index=True)
    template_version = db.Column(db.String(30), nullable=True)

    state = db.Column(db.String(30), nullable=False, default="INITIATED")
    approval_plan = db.Column(db.JSON, nullable=True)
    result = db.Column(db.JSON, nullable=True,
                       comment="{success, resultCode, message, timestamp, data}")
    validation_results = db.Column(db.JSON, default=list)
    callback_status = db.Column(db.String(20), nullable=False, default="NONE")
    error_message = db.Column(db.Text, nullable=True)

    tenant_id = db.Column(db.String(64), nullable=True, index=True)
    initiated_by = db.Column(db.String(150), nullable=False, default="system", index=True)
    priority = db.Column(db.String(20), nullable=False, default="MEDIUM")
    business_justification = db.Column(db.Text, nullable=True)

    initiated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    approval_deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self, include_data: bool = True):
        d = {
            "workflow_id": self.workflow_id,
            "workflow_instance_id": self.workflow_instance_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "template_id": self.template_id,
            "template_version": self.template_version,
            "state": self.state,
            "approval_plan": self.approval_plan,
            "result": self.result,
            "callback_status": self.callback_status,
            "error_message": self.error_message,
            "tenant_id": self.tenant_id,
            "initiated_by": self.initiated_by,
            "priority": self.priority,
            "business_justification": self.business_justification,
            "initiated_at": _iso(self.initiated_at),
            "approval_deadline": _iso(self.approval_deadline),
            "completed_at": _iso(self.completed_at),
        }
        if include_data:
            d["entity_data"] = self.entity_data or {}
            d["entity_metadata"] = self.entity_metadata or {}
            d["validation_results"] = self.validation_results or []
        return d

    def __repr__(self):
        return f"<WorkflowSubject {self.workflow_id} {self.entity_type}/{self.entity_id} [{self.state}]>"


class WorkflowEvent(db.Model):
    """
    Append-only event log of a workflow.

    ``(workflow_id, sequence)`` is unique: when two writers race to append
    the same sequence number, exactly one insert succeeds.
    """

    __tablename__ = "workflow_events"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "sequence", name="uq_wfe_workflow_sequence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.String(64), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    event_type = db.Column(db.String(40), nullable=False,
                           comment="WORKFLOW_STARTED | DECISION_RECORDED | …")
    payload = db.Column(db.JSON, default=dict)
    actor = db.Column(db.String(150), nullable=False, default="system")
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "sequence": self.sequence,
            "event_type": self.event_type,
            "payload": self.payload or {},
            "actor": self.actor,
            "recorded_at": _iso(self.recorded_at),
        }

    def __repr__(self):
        return f"<WorkflowEvent {self.workflow_id}#{self.sequence} {self.event_type}>"


class ApprovalTask(db.Model):
    """
    One approver slot.

    ``status`` only moves through ``task_manager`` compare-and-set updates;
    ``decision`` is written in the same statement that closes the task and
    is never changed afterwards.
    """

    __tablename__ = "approval_tasks"
    __table_args__ = (
        db.Index("idx_task_workflow_level", "workflow_id", "approval_level"),
        db.Index("idx_task_status_due", "status", "due_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.String(64), unique=True, nullable=False, default=_uuid)
    workflow_id = db.Column(db.String(64), nullable=False, index=True)
    assigned_to = db.Column(db.String(150), nullable=True, index=True)
    required_role = db.Column(db.String(100), nullable=True)
    approval_level = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    priority = db.Column(db.String(20), nullable=False, default="MEDIUM")
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    decision = db.Column(db.JSON, nullable=True,
                         comment="{approver_id, decision, comments, conditions, timestamp}")
    fired_escalations = db.Column(db.JSON, default=list,
                                  comment="Escalation rule keys already fired for this task")
    escalation_version = db.Column(db.Integer, nullable=False, default=0,
                                   comment="Bumped on every fired_escalations write (CAS guard)")
    escalated_from = db.Column(db.String(64), nullable=True,
                               comment="task_id this task was escalated from")
    tenant_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    def to_dict(self):
        return {
            "task_id": self.task_id,
            "workflow_id": self.workflow_id,
            "assigned_to": self.assigned_to,
            "required_role": self.required_role,
            "approval_level": self.approval_level,
            "status": self.status,
            "priority": self.priority,
            "due_date": _iso(self.due_date),
            "decision": self.decision,
            "fired_escalations": self.fired_escalations or [],
            "escalated_from": self.escalated_from,
            "tenant_id": self.tenant_id,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<ApprovalTask {self.task_id} L{self.approval_level} {self.required_role} [{self.status}]>"
