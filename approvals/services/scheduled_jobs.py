"""
Bank Approval Workflow Service
Scheduled Jobs.

Concrete job implementations run by ``SchedulerService``.  Each takes the
Flask app (already inside its app context) and returns a summary dict that
is stored on the job record.

Jobs:
    - approval_escalation: fires due escalation rules on open tasks
    - approval_timeout: times out overdue workflows, finishes stuck callbacks
    - outbox_dispatch: publishes queued workflow events to the event bus
    - event_consumer_poll: starts workflows from inbound bus events
"""

from __future__ import annotations

import logging
from typing import Any

from approvals.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Escalation sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("approval_escalation", interval_config="ESCALATION_INTERVAL_SECONDS")
def sweep_escalations(app) -> dict[str, Any]:
    """Fire due escalation rules (reminder, re-route, auto-decision) on open tasks."""
    from approvals.services.escalation import EscalationService

    return EscalationService(app.extensions["orchestrator"]).sweep()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: SLA timeout
# ═══════════════════════════════════════════════════════════════════════════

@register_job("approval_timeout", interval_config="TIMEOUT_INTERVAL_SECONDS")
def sweep_timeouts(app) -> dict[str, Any]:
    """Time out workflows past their approval deadline; resume unfinished callbacks."""
    orchestrator = app.extensions["orchestrator"]
    results = orchestrator.timeout_sweep()
    results.update(orchestrator.resume_pending_callbacks())
    if results["timed_out"] or results["resumed"]:
        logger.info("Timeout sweep: %d timed out, %d callback(s) resumed",
                    results["timed_out"], results["resumed"])
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Outbox dispatch
# ═══════════════════════════════════════════════════════════════════════════

@register_job("outbox_dispatch", interval_config="OUTBOX_DISPATCH_INTERVAL_SECONDS")
def dispatch_outbox(app) -> dict[str, Any]:
    """Publish pending workflow events to the event bus."""
    from approvals.services.event_publisher import dispatch_pending

    return dispatch_pending(app.extensions["event_bus"])


# ═══════════════════════════════════════════════════════════════════════════
#  Job 4: Inbound event consumer
# ═══════════════════════════════════════════════════════════════════════════

@register_job("event_consumer_poll", interval_config="EVENT_CONSUMER_INTERVAL_SECONDS")
def poll_inbound_events(app) -> dict[str, Any]:
    """Submit workflows for solution-created and party-change events."""
    from approvals.services.event_consumers import EventConsumer

    return EventConsumer.from_app(app).poll_once()
