"""
Workflow runtime: event log, state transitions and replay.

A workflow is an event-sourced aggregate.  Every signal the orchestrator
accepts becomes one or more ``WorkflowEvent`` rows; ``WorkflowSubject`` is the
projection of that log that queries read.  ``replay`` folds a log back into a
``WorkflowView`` without touching the subject, which is what ``query`` (the
live read) serves.

Transitions (event → allowed source states → target state):

    WORKFLOW_STARTED      -                        INITIATED
    VALIDATION_STARTED    INITIATED                VALIDATION
    APPROVAL_PENDING      VALIDATION               PENDING_APPROVAL
    WORKFLOW_APPROVED     VALIDATION, PENDING_…    APPROVED
    WORKFLOW_COMPLETED    APPROVED                 COMPLETED
    WORKFLOW_REJECTED     VALIDATION, PENDING_…    REJECTED
    WORKFLOW_CANCELLED    INITIATED…PENDING_…      CANCELLED
    WORKFLOW_TIMED_OUT    PENDING_APPROVAL         TIMEOUT
    WORKFLOW_FAILED       any non-terminal         FAILED

The remaining event types record facts without changing state.

Usage:
    runtime = WorkflowRuntime()
    runtime.start(subject, actor="alice")
    runtime.record(subject, EventType.VALIDATION_STARTED)
    view = runtime.query(subject.workflow_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from approvals.core.exceptions import (
    RuntimeUnavailableError,
    WorkflowAlreadyStartedError,
    WorkflowStateError,
)
from approvals.models import db
from approvals.models.audit import write_audit
from approvals.models.workflow import (
    CANCELLABLE_STATES,
    TERMINAL_STATES,
    WorkflowEvent,
    WorkflowSubject,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    VALIDATION_STARTED = "VALIDATION_STARTED"
    VALIDATION_COMPLETED = "VALIDATION_COMPLETED"
    PLAN_COMPUTED = "PLAN_COMPUTED"
    APPROVAL_PENDING = "APPROVAL_PENDING"
    DECISION_RECORDED = "DECISION_RECORDED"
    ESCALATION_FIRED = "ESCALATION_FIRED"
    WORKFLOW_APPROVED = "WORKFLOW_APPROVED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_REJECTED = "WORKFLOW_REJECTED"
    WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"
    WORKFLOW_TIMED_OUT = "WORKFLOW_TIMED_OUT"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"
    CALLBACK_SUCCEEDED = "CALLBACK_SUCCEEDED"
    CALLBACK_FAILED = "CALLBACK_FAILED"
    CALLBACK_SKIPPED = "CALLBACK_SKIPPED"


_NON_TERMINAL = frozenset({"INITIATED", "VALIDATION", "PENDING_APPROVAL", "APPROVED"})

# event → (allowed source states, target state); None target = no state change
TRANSITIONS: dict[EventType, tuple[frozenset, str | None]] = {
    EventType.VALIDATION_STARTED: (frozenset({"INITIATED"}), "VALIDATION"),
    EventType.VALIDATION_COMPLETED: (frozenset({"VALIDATION"}), None),
    EventType.PLAN_COMPUTED: (frozenset({"VALIDATION"}), None),
    EventType.APPROVAL_PENDING: (frozenset({"VALIDATION"}), "PENDING_APPROVAL"),
    EventType.DECISION_RECORDED: (frozenset({"PENDING_APPROVAL"}), None),
    EventType.ESCALATION_FIRED: (frozenset({"PENDING_APPROVAL"}), None),
    EventType.WORKFLOW_APPROVED: (frozenset({"VALIDATION", "PENDING_APPROVAL"}), "APPROVED"),
    EventType.WORKFLOW_COMPLETED: (frozenset({"APPROVED"}), "COMPLETED"),
    EventType.WORKFLOW_REJECTED: (frozenset({"VALIDATION", "PENDING_APPROVAL"}), "REJECTED"),
    EventType.WORKFLOW_CANCELLED: (CANCELLABLE_STATES, "CANCELLED"),
    EventType.WORKFLOW_TIMED_OUT: (frozenset({"PENDING_APPROVAL"}), "TIMEOUT"),
    EventType.WORKFLOW_FAILED: (_NON_TERMINAL, "FAILED"),
    # callback outcomes land after the decision, terminal or not
    EventType.CALLBACK_SUCCEEDED: (_NON_TERMINAL | TERMINAL_STATES, None),
    EventType.CALLBACK_FAILED: (_NON_TERMINAL | TERMINAL_STATES, None),
    EventType.CALLBACK_SKIPPED: (_NON_TERMINAL | TERMINAL_STATES, None),
}


def next_state(current: str | None, event_type: EventType) -> str:
    """State after *event_type*; raises WorkflowStateError(ILLEGAL_STATE)."""
    if event_type is EventType.WORKFLOW_STARTED:
        if current is not None:
            raise WorkflowStateError(WorkflowStateError.ILLEGAL_STATE,
                                     "workflow already started")
        return "INITIATED"
    allowed, target = TRANSITIONS[event_type]
    if current not in allowed:
        raise WorkflowStateError(
            WorkflowStateError.ILLEGAL_STATE,
            f"{event_type.value} is not allowed in state {current}",
        )
    return target or current


# ═════════════════════════════════════════════════════════════════════════════
# Replay
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class WorkflowView:
    """State of a workflow as rebuilt from its event log."""
    workflow_id: str
    state: str | None = None
    plan: dict | None = None
    decisions: list[dict] = field(default_factory=list)
    escalations: list[dict] = field(default_factory=list)
    result: dict | None = None
    cancel_reason: str | None = None
    callback_status: str = "NONE"
    last_sequence: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "state": self.state,
            "approval_plan": self.plan,
            "decisions": self.decisions,
            "escalations": self.escalations,
            "result": self.result,
            "cancel_reason": self.cancel_reason,
            "callback_status": self.callback_status,
            "last_sequence": self.last_sequence,
        }


def apply(view: WorkflowView, event_type: str, payload: dict | None, sequence: int = 0) -> WorkflowView:
    """Fold one event into *view* (in place) and return it."""
    et = EventType(event_type)
    payload = payload or {}
    view.state = next_state(view.state, et)
    view.last_sequence = sequence or view.last_sequence + 1

    if et is EventType.PLAN_COMPUTED:
        view.plan = payload.get("plan")
    elif et is EventType.DECISION_RECORDED:
        view.decisions.append(payload)
    elif et is EventType.ESCALATION_FIRED:
        view.escalations.append(payload)
    elif et is EventType.WORKFLOW_CANCELLED:
        view.cancel_reason = payload.get("reason")
    elif et is EventType.CALLBACK_SUCCEEDED:
        view.callback_status = "SUCCEEDED"
    elif et is EventType.CALLBACK_FAILED:
        view.callback_status = "FAILED"
    elif et is EventType.CALLBACK_SKIPPED:
        view.callback_status = "SKIPPED"

    if "result" in payload:
        view.result = payload["result"]
    if et is EventType.CALLBACK_FAILED and view.result is not None:
        view.result = {**view.result, "callbackError": payload.get("error")}
    if "callback_status" in payload:
        view.callback_status = payload["callback_status"]
    return view


def replay(workflow_id: str, events) -> WorkflowView:
    """Pure fold of *events* (``WorkflowEvent`` rows or dicts) into a view."""
    view = WorkflowView(workflow_id=workflow_id)
    for ev in events:
        if isinstance(ev, dict):
            apply(view, ev["event_type"], ev.get("payload"), ev.get("sequence", 0))
        else:
            apply(view, ev.event_type, ev.payload, ev.sequence)
    return view


# ═════════════════════════════════════════════════════════════════════════════
# Runtime
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowRuntime:
    """Persists events and keeps the ``WorkflowSubject`` projection in step.

    Nothing here commits: the orchestrator owns transaction boundaries, so a
    signal's events, projection update and audit rows land together.
    """

    def start(self, subject: WorkflowSubject, *, actor: str = "system",
              payload: dict | None = None) -> WorkflowEvent:
        """Insert *subject* and its WORKFLOW_STARTED event.

        Raises:
            WorkflowAlreadyStartedError: the instance id is already in use.
        """
        existing = WorkflowSubject.query.filter_by(
            workflow_instance_id=subject.workflow_instance_id).first()
        if existing is not None:
            raise WorkflowAlreadyStartedError(subject.workflow_instance_id, existing.workflow_id)

        subject.state = next_state(None, EventType.WORKFLOW_STARTED)
        db.session.add(subject)
        try:
            db.session.flush()
        except IntegrityError:
            # lost the race against a concurrent start of the same instance
            db.session.rollback()
            winner = WorkflowSubject.query.filter_by(
                workflow_instance_id=subject.workflow_instance_id).first()
            raise WorkflowAlreadyStartedError(
                subject.workflow_instance_id, winner.workflow_id if winner else "unknown",
            ) from None

        event = self._append(subject.workflow_id, EventType.WORKFLOW_STARTED, payload or {}, actor)
        write_audit(
            workflow_id=subject.workflow_id, previous_state=None, new_state=subject.state,
            actor=actor, entity_type=subject.entity_type, entity_id=subject.entity_id,
            tenant_id=subject.tenant_id, details={"event": EventType.WORKFLOW_STARTED.value},
        )
        logger.info("Workflow started %s (%s)", subject.workflow_id, subject.workflow_instance_id,
                    extra={"workflow_id": subject.workflow_id, "entity_type": subject.entity_type,
                           "entity_id": subject.entity_id})
        return event

    def record(self, subject: WorkflowSubject, event_type: EventType, payload: dict | None = None,
               *, actor: str = "system", audit_action: str | None = None,
               audit_details: dict | None = None) -> WorkflowEvent:
        """Append one event and fold it into *subject*.

        A state change always writes a STATE_CHANGE audit row; pass
        *audit_action* to audit a fact event (decision, escalation, callback).

        Raises:
            WorkflowStateError(ILLEGAL_STATE): event not allowed in the current state.
        """
        previous = subject.state
        new = next_state(previous, event_type)
        event = self._append(subject.workflow_id, event_type, payload or {}, actor)
        subject.state = new

        if new != previous or audit_action:
            write_audit(
                workflow_id=subject.workflow_id, previous_state=previous, new_state=new,
                action=audit_action or "STATE_CHANGE", actor=actor,
                entity_type=subject.entity_type, entity_id=subject.entity_id,
                tenant_id=subject.tenant_id,
                details={"event": event_type.value, **(audit_details or {})},
            )
        if new != previous:
            logger.info("Workflow %s %s → %s", subject.workflow_id, previous, new,
                        extra={"workflow_id": subject.workflow_id, "event_type": event_type.value})
        return event

    def _append(self, workflow_id: str, event_type: EventType, payload: dict, actor: str) -> WorkflowEvent:
        current = db.session.query(func.max(WorkflowEvent.sequence)).filter(
            WorkflowEvent.workflow_id == workflow_id).scalar() or 0
        event = WorkflowEvent(
            workflow_id=workflow_id, sequence=current + 1,
            event_type=event_type.value, payload=payload, actor=actor or "system",
        )
        db.session.add(event)
        # unique (workflow_id, sequence): a concurrent writer makes this flush fail
        db.session.flush()
        return event

    def events(self, workflow_id: str) -> list[WorkflowEvent]:
        return (WorkflowEvent.query.filter_by(workflow_id=workflow_id)
                .order_by(WorkflowEvent.sequence.asc()).all())

    def query(self, workflow_id: str) -> WorkflowView:
        """Live state, rebuilt from the event log.

        Raises:
            RuntimeUnavailableError: the log cannot be read or does not replay.
        """
        try:
            events = self.events(workflow_id)
        except SQLAlchemyError as exc:
            raise RuntimeUnavailableError(f"event log unavailable: {exc}") from exc
        if not events:
            raise RuntimeUnavailableError(f"no events recorded for {workflow_id}")
        try:
            return replay(workflow_id, events)
        except (WorkflowStateError, ValueError, KeyError) as exc:
            raise RuntimeUnavailableError(f"event log for {workflow_id} does not replay: {exc}") from exc
