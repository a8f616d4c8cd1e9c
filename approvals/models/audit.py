"""
Bank Approval Workflow Service
Audit domain model.

Models:
    - WorkflowAuditLog: immutable, append-only trail of workflow state changes.
"""

from datetime import UTC, datetime

from sqlalchemy import event

from approvals.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    "STATE_CHANGE",
    "DECISION",
    "ESCALATION",
    "CALLBACK",
    "TEMPLATE_PUBLISH",
    "TEMPLATE_DEACTIVATE",
}


class WorkflowAuditLog(db.Model):
    """
    Immutable audit trail for workflow activity.

    One row per state transition (``previous_state`` → ``new_state``); the
    decision, escalation and callback rows carry ``previous_state ==
    new_state``.  Rows are never updated or deleted: the ORM listeners below
    refuse both.
    """

    __tablename__ = "workflow_audit_logs"
    __table_args__ = (
        db.Index("idx_wfaudit_workflow", "workflow_id"),
        db.Index("idx_wfaudit_ts", "timestamp"),
        db.Index("idx_wfaudit_actor", "actor"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(60), nullable=True)
    entity_id = db.Column(db.String(100), nullable=True)
    tenant_id = db.Column(db.String(64), nullable=True)

    action = db.Column(
        db.String(40), nullable=False, default="STATE_CHANGE",
        comment="STATE_CHANGE | DECISION | ESCALATION | CALLBACK | …",
    )
    previous_state = db.Column(db.String(30), nullable=True)
    new_state = db.Column(db.String(30), nullable=True)
    actor = db.Column(db.String(150), nullable=False, default="system")
    details = db.Column(db.JSON, default=dict,
                        comment="Reason, decision, escalation rule, callback error, …")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "tenant_id": self.tenant_id,
            "action": self.action,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "actor": self.actor,
            "details": self.details or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return (f"<WorkflowAuditLog {self.id}: {self.workflow_id} "
                f"{self.previous_state}->{self.new_state}>")


@event.listens_for(WorkflowAuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"audit row {target.id} is immutable")


@event.listens_for(WorkflowAuditLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"audit row {target.id} cannot be deleted")


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    workflow_id: str,
    previous_state: str | None,
    new_state: str | None,
    action: str = "STATE_CHANGE",
    actor: str = "system",
    entity_type: str | None = None,
    entity_id: str | None = None,
    tenant_id: str | None = None,
    details: dict | None = None,
) -> WorkflowAuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: the row commits or rolls back together with
    the state change it records.

    Returns the (flushed) WorkflowAuditLog instance.
    """
    log = WorkflowAuditLog(
        workflow_id=workflow_id,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        tenant_id=tenant_id,
        action=action,
        previous_state=previous_state,
        new_state=new_state,
        actor=actor or "system",
        details=details or {},
    )
    db.session.add(log)
    db.session.flush()
    return log
