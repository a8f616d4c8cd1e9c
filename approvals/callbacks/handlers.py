"""
Entity-specific callback handlers.

Handlers run once after a workflow's terminal decision is recorded.  They call
the product and party services through ``ServiceGateway`` and report a
``CallbackOutcome``; they never raise for an HTTP failure.

Registered by default (``build_callback_registry``):

    onApprove:SOLUTION_CONFIGURATION  PUT  {product}/api/v1/solutions/{id}/activate
    onReject:SOLUTION_CONFIGURATION   PUT  {product}/api/v1/solutions/{id}/reject
    onApprove:PARTY_CHANGE            POST {party}/api/v1/parties/sync
    onReject:PARTY_CHANGE             log only, nothing is synced
    onApprove:RELATIONSHIP            POST {party}/api/v1/relationships/{type}/{id}/activate
    onReject:RELATIONSHIP             POST {party}/api/v1/relationships/{type}/{id}/reject
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from approvals.callbacks.registry import CallbackRegistry, handler_key
from approvals.integrations.service_gateway import GatewayResult, ServiceGateway
from approvals.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallbackOutcome:
    ok: bool
    error: str | None = None
    retryable: bool = False

    @classmethod
    def success(cls) -> "CallbackOutcome":
        return cls(ok=True)

    @classmethod
    def fatal(cls, error: str) -> "CallbackOutcome":
        return cls(ok=False, error=error, retryable=False)

    @classmethod
    def from_result(cls, result: GatewayResult) -> "CallbackOutcome":
        if result.ok:
            return cls.success()
        return cls(ok=False, error=result.error, retryable=result.retryable)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "error": self.error, "retryable": self.retryable}


class WorkflowCallbackHandler(ABC):
    """Side effect for one (event, entity type) pair."""

    @abstractmethod
    def handle(self, subject) -> CallbackOutcome:
        ...


def _rejection_reason(subject) -> str:
    result = subject.result or {}
    return (
        (subject.entity_metadata or {}).get("rejectionReason")
        or result.get("message")
        or subject.error_message
        or "Workflow approval rejected"
    )


# ── Solution configuration ───────────────────────────────────────────────────

class SolutionActivationHandler(WorkflowCallbackHandler):
    def __init__(self, gateway: ServiceGateway, product_service_url: str):
        self.gateway = gateway
        self.base_url = product_service_url.rstrip("/")

    def handle(self, subject) -> CallbackOutcome:
        solution_id = (subject.entity_data or {}).get("solutionId") or subject.entity_id
        result = self.gateway.put(f"{self.base_url}/api/v1/solutions/{solution_id}/activate",
                                  json_body={"workflowId": subject.workflow_id})
        if result.ok:
            logger.info("Solution %s activated", solution_id,
                        extra={"workflow_id": subject.workflow_id})
        return CallbackOutcome.from_result(result)


class SolutionRejectionHandler(WorkflowCallbackHandler):
    def __init__(self, gateway: ServiceGateway, product_service_url: str):
        self.gateway = gateway
        self.base_url = product_service_url.rstrip("/")

    def handle(self, subject) -> CallbackOutcome:
        solution_id = (subject.entity_data or {}).get("solutionId") or subject.entity_id
        result = self.gateway.put(f"{self.base_url}/api/v1/solutions/{solution_id}/reject",
                                  json_body={"reason": _rejection_reason(subject)})
        return CallbackOutcome.from_result(result)


# ── Party change (change in circumstance) ────────────────────────────────────

class PartySyncHandler(WorkflowCallbackHandler):
    """Re-sync an approved party change into the federated party system."""

    def __init__(self, gateway: ServiceGateway, party_service_url: str):
        self.gateway = gateway
        self.base_url = party_service_url.rstrip("/")

    def handle(self, subject) -> CallbackOutcome:
        data = subject.entity_data or {}
        party_id, source_system = data.get("partyId"), data.get("sourceSystem")
        if not party_id or not source_system:
            return CallbackOutcome.fatal("Party ID and source system are required")
        result = self.gateway.post(f"{self.base_url}/api/v1/parties/sync", json_body={
            "sourceSystem": source_system,
            "sourceId": party_id,
            "workflowId": subject.workflow_id,
            "forceSync": True,
            "changeEvent": data.get("eventType"),
        })
        return CallbackOutcome.from_result(result)


class PartyChangeRejectionHandler(WorkflowCallbackHandler):
    def handle(self, subject) -> CallbackOutcome:
        data = subject.entity_data or {}
        logger.warning("Party change rejected for party %s from %s (%s): %s; not synced",
                       data.get("partyId"), data.get("sourceSystem"), data.get("eventType"),
                       _rejection_reason(subject), extra={"workflow_id": subject.workflow_id})
        return CallbackOutcome.success()


# ── Party relationships ──────────────────────────────────────────────────────

class RelationshipHandler(WorkflowCallbackHandler):
    """Activate or reject a pending party relationship."""

    def __init__(self, gateway: ServiceGateway, party_service_url: str, action: str):
        if action not in ("activate", "reject"):
            raise ValueError(f"unknown relationship action {action!r}")
        self.gateway = gateway
        self.base_url = party_service_url.rstrip("/")
        self.action = action

    def handle(self, subject) -> CallbackOutcome:
        data = subject.entity_data or {}
        relationship_id = data.get("relationshipId")
        if not relationship_id:
            return CallbackOutcome.fatal("Relationship ID is required")
        body = {"workflowId": subject.workflow_id}
        if self.action == "activate":
            body["approvalTimestamp"] = utcnow().isoformat()
        else:
            body["rejectionReason"] = _rejection_reason(subject)
            body["rejectionTimestamp"] = utcnow().isoformat()
        url = (f"{self.base_url}/api/v1/relationships/"
               f"{data.get('relationshipType') or 'GENERIC'}/{relationship_id}/{self.action}")
        return CallbackOutcome.from_result(self.gateway.post(url, json_body=body))


def build_callback_registry(config, gateway: ServiceGateway) -> CallbackRegistry:
    """Registry with the built-in handlers wired to the configured services."""
    product_url = config.get("PRODUCT_SERVICE_URL")
    party_url = config.get("PARTY_SERVICE_URL")

    registry = CallbackRegistry()
    registry.register(handler_key("onApprove", "SOLUTION_CONFIGURATION"),
                      SolutionActivationHandler(gateway, product_url))
    registry.register(handler_key("onReject", "SOLUTION_CONFIGURATION"),
                      SolutionRejectionHandler(gateway, product_url))
    registry.register(handler_key("onApprove", "PARTY_CHANGE"),
                      PartySyncHandler(gateway, party_url))
    registry.register(handler_key("onReject", "PARTY_CHANGE"), PartyChangeRejectionHandler())
    registry.register(handler_key("onApprove", "RELATIONSHIP"),
                      RelationshipHandler(gateway, party_url, "activate"))
    registry.register(handler_key("onReject", "RELATIONSHIP"),
                      RelationshipHandler(gateway, party_url, "reject"))
    return registry
