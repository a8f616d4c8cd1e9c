"""
Bank Approval Workflow Service
Outbound event outbox.

Models:
    - OutboxEvent: workflow event waiting for (or done with) publication.

Rows are inserted in the transaction that finishes a workflow's terminal
processing (after its callback ran), so an event is never published for a
state that was rolled back, and never lost for one that was committed.
"""

from datetime import datetime, timezone

from approvals.models import db

OUTBOX_STATUSES = frozenset({"PENDING", "PUBLISHED", "FAILED"})
MAX_PUBLISH_ATTEMPTS = 5


class OutboxEvent(db.Model):
    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("idx_outbox_status_created", "status", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    topic = db.Column(db.String(100), nullable=False)
    key = db.Column(db.String(150), nullable=True, comment="Partition key (workflow id)")
    workflow_id = db.Column(db.String(64), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def record_failure(self, error: str) -> None:
        self.attempts = (self.attempts or 0) + 1
        self.last_error = error[:2000]
        if self.attempts >= MAX_PUBLISH_ATTEMPTS:
            self.status = "FAILED"

    def mark_published(self) -> None:
        self.status = "PUBLISHED"
        self.published_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "topic": self.topic,
            "key": self.key,
            "workflow_id": self.workflow_id,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }

    def __repr__(self):
        return f"<OutboxEvent {self.id} {self.topic} [{self.status}]>"
