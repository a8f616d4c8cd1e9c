"""
Outbound workflow events (outbox).

The orchestrator calls ``enqueue_terminal_events`` in the transaction that
finishes a workflow's terminal processing; ``dispatch_pending`` (run by the
``outbox_dispatch`` job) publishes the rows to the event bus afterwards.

Topics (names from config):
    EVENT_TOPIC_APPROVED   workflow approved (including auto-approval)
    EVENT_TOPIC_REJECTED   workflow rejected (approver or red flag)
    EVENT_TOPIC_COMPLETED  every terminal state
"""

from __future__ import annotations

import logging

from approvals.models import db
from approvals.models.outbox import OutboxEvent
from approvals.utils.helpers import iso

logger = logging.getLogger(__name__)


def enqueue(topic: str, key: str | None, payload: dict, workflow_id: str | None = None) -> OutboxEvent:
    row = OutboxEvent(topic=topic, key=key, payload=payload, workflow_id=workflow_id, status="PENDING")
    db.session.add(row)
    db.session.flush()
    return row


# ── Payloads ─────────────────────────────────────────────────────────────────

def envelope(subject) -> dict:
    return {
        "workflowId": subject.workflow_id,
        "workflowInstanceId": subject.workflow_instance_id,
        "entityType": subject.entity_type,
        "entityId": subject.entity_id,
        "tenantId": subject.tenant_id,
        "entityData": subject.entity_data or {},
        "entityMetadata": subject.entity_metadata or {},
        "initiatedBy": subject.initiated_by,
        "submittedAt": iso(subject.initiated_at),
    }


def approved_payload(subject, decisions: list[dict]) -> dict:
    approvals = [
        {
            "approverId": d.get("approver_id"),
            "approverRole": d.get("approver_role"),
            "comments": d.get("comments"),
            "approvedAt": d.get("timestamp"),
        }
        for d in decisions if d.get("decision") == "APPROVE"
    ]
    return {**envelope(subject), "approvedAt": iso(subject.completed_at), "approvals": approvals}


def rejected_payload(subject, decisions: list[dict]) -> dict:
    rejection = next((d for d in reversed(decisions) if d.get("decision") == "REJECT"), None)
    result = subject.result or {}
    if rejection:
        rejected_by = rejection.get("approver_id")
        reason = rejection.get("comments") or result.get("message")
        comments = rejection.get("required_changes")
    else:
        # red-flag rejection: no approver acted
        rejected_by = "system:validation"
        reason = result.get("message")
        comments = None
    return {
        **envelope(subject),
        "rejectedBy": rejected_by,
        "rejectionReason": reason,
        "rejectionComments": comments,
        "rejectedAt": iso(subject.completed_at),
        "decisions": decisions,
    }


def completed_payload(subject, decisions: list[dict]) -> dict:
    result = subject.result or {}
    return {
        **envelope(subject),
        "finalState": subject.state,
        "resultCode": result.get("resultCode"),
        "callbackStatus": subject.callback_status,
        "completedAt": iso(subject.completed_at),
        "decisions": decisions,
    }


def enqueue_terminal_events(subject, config, decisions: list[dict]) -> list[OutboxEvent]:
    """Rows for a workflow whose terminal processing just finished."""
    rows = []
    code = (subject.result or {}).get("resultCode")
    if code in ("APPROVED", "AUTO_APPROVED"):
        rows.append(enqueue(config.get("EVENT_TOPIC_APPROVED"), subject.workflow_id,
                            approved_payload(subject, decisions), subject.workflow_id))
    elif code in ("REJECTED", "VALIDATION_RED_FLAG"):
        rows.append(enqueue(config.get("EVENT_TOPIC_REJECTED"), subject.workflow_id,
                            rejected_payload(subject, decisions), subject.workflow_id))
    rows.append(enqueue(config.get("EVENT_TOPIC_COMPLETED"), subject.workflow_id,
                        completed_payload(subject, decisions), subject.workflow_id))
    return rows


# ── Dispatch ─────────────────────────────────────────────────────────────────

def dispatch_pending(bus, limit: int = 100) -> dict:
    """Publish PENDING rows oldest first; a failing row is retried on the next run."""
    rows = (OutboxEvent.query.filter_by(status="PENDING")
            .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
            .limit(limit).all())
    stats = {"published": 0, "failed": 0, "given_up": 0}
    for row in rows:
        try:
            bus.publish(row.topic, row.key, row.payload)
        except Exception as exc:
            row.record_failure(str(exc))
            stats["failed"] += 1
            if row.status == "FAILED":
                stats["given_up"] += 1
                logger.error("Outbox event %s gave up after %d attempts: %s", row.id, row.attempts, exc,
                             extra={"workflow_id": row.workflow_id})
            else:
                logger.warning("Outbox event %s publish failed (attempt %d): %s", row.id, row.attempts, exc,
                               extra={"workflow_id": row.workflow_id})
            continue
        row.mark_published()
        stats["published"] += 1
    db.session.commit()
    if rows:
        logger.info("Outbox dispatch published=%d failed=%d", stats["published"], stats["failed"])
    return stats


def outbox_summary() -> dict:
    """Row counts per status, for the health endpoint."""
    counts = dict(
        db.session.query(OutboxEvent.status, db.func.count(OutboxEvent.id))
        .group_by(OutboxEvent.status).all()
    )
    return {status: counts.get(status, 0) for status in ("PENDING", "PUBLISHED", "FAILED")}
