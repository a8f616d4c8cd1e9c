"""
Inbound submission triggers.

Maps bus events onto ``WorkflowOrchestrator.submit``:

    SOLUTION_CREATED_TOPIC  → SOLUTION_CONFIGURATION, instance "solution-approval-<solutionId>"
    PARTY_CHANGE_TOPIC      → PARTY_CHANGE for material changes only

A message is acknowledged only after its handler returned: a new workflow, a
duplicate of an existing one, or a decision that no workflow is needed.  A
handler exception leaves it pending for redelivery; after
``MAX_DELIVERY_ATTEMPTS`` failed deliveries it is dropped with an error log.
Malformed events are dropped on first sight.
"""

from __future__ import annotations

import logging
import socket

from approvals.core.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 5

# event type → workflow priority / change severity
PARTY_CHANGE_SEVERITY = {
    "PARTY_STATUS_CHANGED": "HIGH",
    "PARTY_CONTROL_CHANGE": "HIGH",
    "PARTY_RISK_RATING_CHANGED": "MEDIUM",
    "PARTY_LEI_CHANGED": "MEDIUM",
    "PARTY_JURISDICTION_CHANGED": "LOW",
}
_APPROVAL_STATUSES = frozenset({"SUSPENDED", "TERMINATED"})


def handle_solution_created(orchestrator, event: dict) -> dict:
    """Raises ValidationError when the event carries no solutionId."""
    solution_id = str(event.get("solutionId") or "").strip()
    if not solution_id:
        raise ValidationError("solution.created event without solutionId")

    return orchestrator.submit(
        "SOLUTION_CONFIGURATION",
        solution_id,
        entity_data={
            "solutionId": solution_id,
            "solutionName": event.get("solutionName"),
            "catalogProductId": event.get("catalogProductId"),
            "category": event.get("category"),
        },
        entity_metadata={
            "solutionType": event.get("category"),
            "pricingVariance": event.get("pricingVariance"),
            "riskLevel": event.get("riskLevel"),
            "tenantTier": "STANDARD",
        },
        initiated_by=event.get("createdBy") or "system",
        tenant_id=event.get("tenantId"),
        priority=event.get("priority"),
        business_justification=event.get("businessJustification"),
        workflow_instance_id=f"solution-approval-{solution_id}",
    )


def requires_approval(event_type: str, changes: dict) -> bool:
    if event_type not in PARTY_CHANGE_SEVERITY:
        return False
    if event_type == "PARTY_STATUS_CHANGED":
        return str((changes or {}).get("newStatus") or "").upper() in _APPROVAL_STATUSES
    return True


def handle_party_change(orchestrator, event: dict) -> dict | None:
    """Submit a change-in-circumstance workflow; None when the change is not material."""
    event_type = str(event.get("eventType") or "").upper()
    party_id = str(event.get("partyId") or "").strip()
    if not event_type or not party_id:
        raise ValidationError("party change event needs eventType and partyId")

    changes = event.get("changes") or {}
    if not requires_approval(event_type, changes):
        logger.info("Party change %s for %s needs no approval", event_type, party_id)
        return None

    source_system = event.get("sourceSystem") or "UNKNOWN"
    severity = PARTY_CHANGE_SEVERITY[event_type]
    change_ref = event.get("eventId") or event_type
    return orchestrator.submit(
        "PARTY_CHANGE",
        party_id,
        entity_data={
            "partyId": party_id,
            "sourceSystem": source_system,
            "eventType": event_type,
            "changes": changes,
        },
        entity_metadata={
            "changeType": event_type,
            "sourceSystem": source_system,
            "changeSeverity": severity,
        },
        initiated_by="system",
        tenant_id=event.get("tenantId") or "system",
        priority=severity,
        business_justification=f"Change in circumstance detected in source system: {event_type}",
        workflow_instance_id=f"party-change-{party_id}-{change_ref}",
    )


class EventConsumer:
    """Polls the bus consumer group and hands each message to its handler."""

    def __init__(self, orchestrator, bus, *, group: str, topics: dict, consumer_name: str | None = None):
        self.orchestrator = orchestrator
        self.bus = bus
        self.group = group
        self.handlers = topics
        self.consumer_name = consumer_name or f"{socket.gethostname()}-workflow"
        self._failures: dict[str, int] = {}

    @classmethod
    def from_app(cls, app) -> "EventConsumer":
        consumer = app.extensions.get("event_consumer")
        if consumer is None:
            consumer = cls(
                app.extensions["orchestrator"],
                app.extensions["event_bus"],
                group=app.config["EVENT_CONSUMER_GROUP"],
                topics={
                    app.config["SOLUTION_CREATED_TOPIC"]: handle_solution_created,
                    app.config["PARTY_CHANGE_TOPIC"]: handle_party_change,
                },
            )
            app.extensions["event_consumer"] = consumer
        return consumer

    def poll_once(self, count: int = 10) -> dict:
        stats = {"received": 0, "submitted": 0, "duplicates": 0, "ignored": 0,
                 "dropped": 0, "failed": 0}
        for topic, handler in self.handlers.items():
            for message in self.bus.read(topic, self.group, self.consumer_name, count=count):
                stats["received"] += 1
                self._process(topic, handler, message, stats)
        return stats

    def _process(self, topic: str, handler, message, stats: dict) -> None:
        try:
            response = handler(self.orchestrator, message.payload)
        except ConfigurationError as exc:
            self._record_failure(topic, message, exc, stats)
            return
        except ValidationError as exc:
            logger.error("Dropping malformed %s message %s: %s", topic, message.id, exc)
            self.bus.ack(topic, self.group, message.id)
            stats["dropped"] += 1
            return
        except Exception as exc:
            logger.exception("Handler for %s message %s raised", topic, message.id)
            self._record_failure(topic, message, exc, stats)
            return

        self.bus.ack(topic, self.group, message.id)
        self._failures.pop(message.id, None)
        if response is None:
            stats["ignored"] += 1
        elif response.get("duplicate"):
            stats["duplicates"] += 1
        else:
            stats["submitted"] += 1
            logger.info("Workflow %s started from %s message %s", response["workflow_id"], topic,
                        message.id, extra={"workflow_id": response["workflow_id"]})

    def _record_failure(self, topic: str, message, exc: Exception, stats: dict) -> None:
        attempts = self._failures.get(message.id, 0) + 1
        if attempts >= MAX_DELIVERY_ATTEMPTS:
            logger.error("Giving up on %s message %s after %d attempts: %s",
                         topic, message.id, attempts, exc)
            self.bus.ack(topic, self.group, message.id)
            self._failures.pop(message.id, None)
            stats["dropped"] += 1
            return
        self._failures[message.id] = attempts
        logger.warning("%s message %s left for redelivery (attempt %d): %s",
                       topic, message.id, attempts, exc)
        stats["failed"] += 1
