"""
Workflow Orchestrator.

Drives a ``WorkflowSubject`` from submission to a terminal state.  Every
public operation is one signal: load the subject, check the signal is legal,
append events through ``WorkflowRuntime`` (which keeps the subject projection
and the audit trail in step), commit.

    INITIATED → VALIDATION → PENDING_APPROVAL → APPROVED → COMPLETED
                                              ↘ REJECTED
    INITIATED/VALIDATION/PENDING_APPROVAL → CANCELLED
    any non-terminal → FAILED
    PENDING_APPROVAL → TIMEOUT

Terminal processing runs in two transactions.  The first records the decision
with ``callback_status = PENDING``; after it commits, the entity callback is
dispatched and a second transaction records the callback outcome (approvals
move on to COMPLETED, or FAILED when the callback failed) and queues the
outbound events.  A process that dies in between leaves the subject PENDING;
``resume_pending_callbacks`` finishes it.

Usage:
    orchestrator = get_orchestrator()
    response = orchestrator.submit("SOLUTION_CONFIGURATION", "sol-1", {...}, {...}, "alice")
    orchestrator.approve(response["workflow_id"], "bob", comments="ok")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from approvals.callbacks.handlers import CallbackOutcome
from approvals.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    RuntimeUnavailableError,
    ValidationError,
    WorkflowAlreadyStartedError,
    WorkflowStateError,
)
from approvals.engine.plan import ComputedApprovalPlan
from approvals.models import db
from approvals.models.audit import WorkflowAuditLog
from approvals.models.template import WorkflowTemplate
from approvals.models.workflow import DECISIONS, PRIORITIES, WorkflowSubject
from approvals.services import event_publisher, task_manager, template_service
from approvals.services.workflow_runtime import EventType, WorkflowRuntime
from approvals.utils.helpers import as_utc, iso, utcnow

logger = logging.getLogger(__name__)

ESCALATION_ACTOR = "system:escalation"
_SIGNAL_ATTEMPTS = 3
# a PENDING callback younger than this may still be running in a request
CALLBACK_RECOVERY_GRACE = timedelta(minutes=5)

_CALLBACK_EVENT_BY_CODE = {
    "APPROVED": "onApprove",
    "AUTO_APPROVED": "onApprove",
    "REJECTED": "onReject",
    "VALIDATION_RED_FLAG": "onReject",
    "TIMEOUT": "onTimeout",
    "CANCELLED": "onCancel",
}


@dataclass(frozen=True)
class _PendingCallback:
    """Terminal processing still owed once the decision has committed."""
    workflow_id: str
    callback_event: str | None


def _result(code: str, message: str, *, success: bool, data: dict | None = None) -> dict:
    return {
        "success": success,
        "resultCode": code,
        "message": message,
        "timestamp": utcnow().isoformat(),
        "data": data or {},
    }


def _slots(plan: ComputedApprovalPlan) -> int:
    return max(plan.required_approvals, len(plan.approver_roles), 1)


class WorkflowOrchestrator:
    """One instance per app, stored in ``app.extensions["orchestrator"]``."""

    def __init__(self, config, pipeline, callback_registry, runtime: WorkflowRuntime | None = None):
        self.config = config
        self.pipeline = pipeline
        self.callbacks = callback_registry
        self.runtime = runtime or WorkflowRuntime()

    # ═════════════════════════════════════════════════════════════════════════
    # Submission
    # ═════════════════════════════════════════════════════════════════════════

    def submit(
        self,
        entity_type: str,
        entity_id: str,
        entity_data: dict | None = None,
        entity_metadata: dict | None = None,
        initiated_by: str = "system",
        template_id: str | None = None,
        *,
        tenant_id: str | None = None,
        priority: str | None = None,
        business_justification: str | None = None,
        workflow_instance_id: str | None = None,
    ) -> dict:
        """Start (or find) the workflow for an entity.

        Re-submitting an entity whose instance id is already in use returns
        the existing workflow with ``duplicate=True``.

        Raises:
            ValidationError: missing entity type / id, unknown priority.
            ConfigurationError: no usable template; nothing is persisted.
        """
        entity_type = str(entity_type or "").strip()
        entity_id = str(entity_id or "").strip()
        if not entity_type or not entity_id:
            raise ValidationError("entity_type and entity_id are required")
        priority = str(priority or self.config.get("WORKFLOW_DEFAULT_PRIORITY") or "MEDIUM").upper()
        if priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority {priority}", details={"priority": priority})

        instance_id = workflow_instance_id or f"approval-{entity_id}"
        existing = WorkflowSubject.query.filter_by(workflow_instance_id=instance_id).first()
        if existing is not None:
            logger.info("Duplicate submission for %s ignored", instance_id,
                        extra={"workflow_id": existing.workflow_id, "entity_type": entity_type})
            return self._submission_response(existing, duplicate=True)

        template = self._resolve_template(entity_type, template_id)
        # fail on a broken template before anything is written
        template_service.load_tables(template)
        template_service.load_escalation_rules(template)
        validator_configs = template_service.load_validators(template)
        self.pipeline.check(validator_configs)

        subject = WorkflowSubject(
            workflow_instance_id=instance_id,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_data=dict(entity_data or {}),
            entity_metadata=dict(entity_metadata or {}),
            template_id=template.template_id,
            template_version=template.version,
            tenant_id=tenant_id,
            initiated_by=initiated_by or "system",
            priority=priority,
            business_justification=business_justification,
            initiated_at=utcnow(),
            callback_status="NONE",
            validation_results=[],
        )
        try:
            self.runtime.start(subject, actor=subject.initiated_by, payload={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "template_id": template.template_id,
                "template_version": template.version,
            })
            self.runtime.record(subject, EventType.VALIDATION_STARTED, actor=subject.initiated_by)
            db.session.commit()
        except WorkflowAlreadyStartedError as exc:
            db.session.rollback()
            winner = WorkflowSubject.query.filter_by(workflow_id=exc.workflow_id).first()
            if winner is None:
                raise
            return self._submission_response(winner, duplicate=True)

        try:
            pending = self._validate_and_plan(subject, template, validator_configs)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            logger.exception("Submission processing failed for %s", subject.workflow_id,
                             extra={"workflow_id": subject.workflow_id})
            pending = self._fail(subject.workflow_id, f"Submission processing failed: {exc}")

        if pending is not None:
            self._finish(pending)
        db.session.refresh(subject)
        return self._submission_response(subject, duplicate=False)

    def _resolve_template(self, entity_type: str, template_id: str | None) -> WorkflowTemplate:
        if not template_id:
            return template_service.get_active_template(entity_type)
        try:
            template = template_service.get_template(template_id)
        except NotFoundError as exc:
            raise ConfigurationError(f"Workflow template {template_id} not found",
                                     details={"template_id": template_id}) from exc
        if template.entity_type != entity_type:
            raise ConfigurationError(
                f"Template {template_id} is for {template.entity_type}, not {entity_type}",
                details={"template_id": template_id, "entity_type": entity_type},
            )
        if not template.active:
            raise ConfigurationError(f"Workflow template {template_id} is not active",
                                     details={"template_id": template_id})
        return template

    def _validate_and_plan(self, subject, template, validator_configs) -> _PendingCallback | None:
        """VALIDATION → PENDING_APPROVAL, or straight to a terminal decision."""
        outcome = self.pipeline.run(subject, validator_configs)
        subject.validation_results = [r.to_dict() for r in outcome.results]
        if outcome.enrichment:
            subject.entity_metadata = {**(subject.entity_metadata or {}), **outcome.enrichment}
        summary = {k: v for k, v in outcome.to_dict().items() if k != "results"}
        summary["validators"] = [r.validator_id for r in outcome.results]
        self.runtime.record(subject, EventType.VALIDATION_COMPLETED, {"validation": summary})

        if outcome.failed_required is not None:
            failed = outcome.failed_required
            return self._decide_terminal(
                subject, EventType.WORKFLOW_FAILED,
                _result("FAILED", f"Required validator {failed.validator_id} failed: "
                        f"{failed.error_message}", success=False,
                        data={"validationExecution": summary}),
                callback_event=None,
            )

        if outcome.terminating is not None:
            flag = outcome.terminating
            message = flag.red_flag_reason or f"Red flag raised by {flag.validator_id}"
            return self._decide_terminal(
                subject, EventType.WORKFLOW_REJECTED,
                _result("VALIDATION_RED_FLAG", message, success=False, data={
                    "validationExecution": summary,
                    "severity": flag.severity.value if flag.severity else None,
                }),
                callback_event="onReject",
            )

        plan, evaluation = template_service.compute_plan(
            template, subject.entity_metadata or {},
            sla_hours=self.config.get("WORKFLOW_DEFAULT_SLA_HOURS"),
        )
        plan = plan.with_additional_roles(outcome.additional_roles)
        subject.approval_plan = plan.to_dict()
        self.runtime.record(subject, EventType.PLAN_COMPUTED, {
            "plan": subject.approval_plan,
            "matched_rules": list(evaluation.matched_rules),
        })

        if not plan.approval_required:
            return self._decide_terminal(
                subject, EventType.WORKFLOW_APPROVED,
                _result("AUTO_APPROVED", "Auto-approved - no approval required", success=True,
                        data={"decisions": [], "validationExecution": summary}),
                callback_event="onApprove",
            )

        now = utcnow()
        subject.approval_deadline = now + timedelta(hours=self._wait_hours(plan))
        tasks = task_manager.create_tasks(
            subject, plan,
            fallback_role=self.config.get("WORKFLOW_FALLBACK_APPROVER_ROLE"), now=now,
        )
        self.runtime.record(subject, EventType.APPROVAL_PENDING, {
            "task_ids": [t.task_id for t in tasks],
            "approval_deadline": iso(subject.approval_deadline),
        })
        return None

    def _wait_hours(self, plan: ComputedApprovalPlan) -> float:
        """Overall approval window: the rule's SLA per level, else the configured wait."""
        if plan.additional_config.get("slaHours") is None:
            return float(self.config.get("WORKFLOW_WAIT_SLA_HOURS"))
        levels = _slots(plan) if plan.sequential else 1
        return float(plan.sla_hours) * levels

    def _submission_response(self, subject: WorkflowSubject, *, duplicate: bool) -> dict:
        plan = ComputedApprovalPlan.from_dict(subject.approval_plan) if subject.approval_plan else None
        result = subject.result or {}
        if duplicate:
            message = "Workflow already exists for this entity"
        elif subject.state == "PENDING_APPROVAL":
            message = "Workflow submitted for approval"
        else:
            message = result.get("message") or subject.error_message or subject.state
        return {
            "workflow_id": subject.workflow_id,
            "workflow_instance_id": subject.workflow_instance_id,
            "status": subject.state,
            "approval_required": plan.approval_required if plan else None,
            "required_approvals": plan.required_approvals if plan else None,
            "approver_roles": list(plan.approver_roles) if plan else [],
            "sequential": plan.sequential if plan else None,
            "sla_hours": plan.sla_hours if plan else None,
            "estimated_completion": iso(subject.approval_deadline),
            "result_code": result.get("resultCode"),
            "message": message,
            "duplicate": duplicate,
        }

    # ═════════════════════════════════════════════════════════════════════════
    # Decisions
    # ═════════════════════════════════════════════════════════════════════════

    def approve(self, workflow_id: str, approver_id: str, comments: str | None = None,
                conditions: list | None = None, *, task_id: str | None = None) -> dict:
        return self._signal(lambda: self._decide(
            workflow_id, approver_id, "APPROVE", comments,
            conditions=conditions, task_id=task_id,
        ), workflow_id)

    def reject(self, workflow_id: str, approver_id: str, reason: str | None = None,
               required_changes: list | None = None, *, task_id: str | None = None) -> dict:
        return self._signal(lambda: self._decide(
            workflow_id, approver_id, "REJECT", reason,
            required_changes=required_changes, task_id=task_id,
        ), workflow_id)

    def apply_escalation_decision(self, task, decision: str, reason: str) -> dict:
        """AUTO_APPROVE / AUTO_REJECT: decide *task* as the escalation actor."""
        return self._signal(lambda: self._decide(
            task.workflow_id, ESCALATION_ACTOR, decision, reason,
            task_id=task.task_id, system_actor=True,
        ), task.workflow_id)

    def _decide(self, workflow_id: str, approver_id: str, decision: str, comments: str | None, *,
                conditions: list | None = None, required_changes: list | None = None,
                task_id: str | None = None, system_actor: bool = False) -> _PendingCallback | None:
        if decision not in DECISIONS:
            raise ValidationError(f"Unknown decision {decision}")
        approver_id = (approver_id or "").strip()
        if not approver_id:
            raise ValidationError("approver_id is required")

        subject = self._load(workflow_id)
        tasks = task_manager.workflow_tasks(workflow_id)
        if not system_actor and any(
            t.status == "COMPLETED" and (t.decision or {}).get("approver_id") == approver_id
            for t in tasks
        ):
            raise WorkflowStateError(
                WorkflowStateError.ALREADY_DECIDED,
                f"{approver_id} has already decided on workflow {workflow_id}",
                workflow_id=workflow_id,
            )
        if subject.state != "PENDING_APPROVAL":
            raise WorkflowStateError(
                WorkflowStateError.ILLEGAL_STATE,
                f"Workflow {workflow_id} is {subject.state}; decisions need PENDING_APPROVAL",
                workflow_id=workflow_id,
            )

        plan = ComputedApprovalPlan.from_dict(subject.approval_plan)
        task = task_manager.select_task(workflow_id, approver_id, sequential=plan.sequential,
                                        task_id=task_id, system_actor=system_actor)
        now = utcnow()
        record = {
            "task_id": task.task_id,
            "approval_level": task.approval_level,
            "approver_id": approver_id,
            "approver_role": task.required_role,
            "decision": decision,
            "comments": comments,
            "conditions": list(conditions or []),
            "required_changes": list(required_changes or []),
            "timestamp": now.isoformat(),
        }
        task_manager.complete_task(task, record, now)
        task_manager.close_slot_siblings(task, now)
        self.runtime.record(subject, EventType.DECISION_RECORDED, record, actor=approver_id,
                            audit_action="DECISION", audit_details=record)
        logger.info("%s by %s on task %s (level %d)", decision, approver_id, task.task_id,
                    task.approval_level, extra={"workflow_id": workflow_id, "task_id": task.task_id})

        if decision == "REJECT":
            task_manager.close_open_tasks(workflow_id, "CANCELLED", now)
            return self._decide_terminal(
                subject, EventType.WORKFLOW_REJECTED,
                _result("REJECTED", comments or f"Rejected by {approver_id}", success=False,
                        data={"decisions": self._decisions(workflow_id)}),
                callback_event="onReject", actor=approver_id,
            )

        approvals = task_manager.approval_count(task_manager.workflow_tasks(workflow_id))
        if approvals >= plan.required_approvals:
            task_manager.close_open_tasks(workflow_id, "CANCELLED", now)
            return self._decide_terminal(
                subject, EventType.WORKFLOW_APPROVED,
                _result("APPROVED", f"Approved with {approvals} approval(s)", success=True,
                        data={"decisions": self._decisions(workflow_id)}),
                callback_event="onApprove", actor=approver_id,
            )
        return None

    # ═════════════════════════════════════════════════════════════════════════
    # Cancel / timeout
    # ═════════════════════════════════════════════════════════════════════════

    def cancel(self, workflow_id: str, reason: str | None = None, actor: str = "system") -> dict:
        """Raises WorkflowStateError(ILLEGAL_STATE) once the workflow is decided."""
        def signal():
            subject = self._load(workflow_id)
            reason_text = reason or "Cancelled"
            task_manager.close_open_tasks(workflow_id, "CANCELLED")
            return self._decide_terminal(
                subject, EventType.WORKFLOW_CANCELLED,
                _result("CANCELLED", reason_text, success=False,
                        data={"decisions": self._decisions(workflow_id)}),
                callback_event="onCancel", actor=actor, extra={"reason": reason_text},
            )
        return self._signal(signal, workflow_id)

    def timeout(self, workflow_id: str) -> dict:
        def signal():
            subject = self._load(workflow_id)
            if subject.state != "PENDING_APPROVAL":
                raise WorkflowStateError(
                    WorkflowStateError.ILLEGAL_STATE,
                    f"Workflow {workflow_id} is {subject.state}; only pending workflows time out",
                    workflow_id=workflow_id,
                )
            task_manager.close_open_tasks(workflow_id, "TIMEOUT")
            return self._decide_terminal(
                subject, EventType.WORKFLOW_TIMED_OUT,
                _result("TIMEOUT", "Approval SLA exceeded", success=False,
                        data={"decisions": self._decisions(workflow_id)}),
                callback_event="onTimeout",
            )
        return self._signal(signal, workflow_id)

    def timeout_sweep(self, now=None) -> dict:
        """Time out every pending workflow whose approval deadline has passed."""
        now = now or utcnow()
        overdue = [
            s.workflow_id for s in WorkflowSubject.query.filter_by(state="PENDING_APPROVAL").all()
            if s.approval_deadline is not None and as_utc(s.approval_deadline) <= now
        ]
        stats = {"checked": len(overdue), "timed_out": 0, "skipped": 0}
        for workflow_id in overdue:
            try:
                self.timeout(workflow_id)
                stats["timed_out"] += 1
            except WorkflowStateError as exc:
                # decided between the scan and the signal
                stats["skipped"] += 1
                logger.info("Timeout skipped for %s: %s", workflow_id, exc,
                            extra={"workflow_id": workflow_id})
        return stats

    def _fail(self, workflow_id: str, error: str) -> _PendingCallback | None:
        subject = self._load(workflow_id)
        if subject.is_terminal:
            return None
        task_manager.close_open_tasks(workflow_id, "CANCELLED")
        pending = self._decide_terminal(
            subject, EventType.WORKFLOW_FAILED, _result("FAILED", error, success=False),
            callback_event=None,
        )
        subject.error_message = error
        db.session.commit()
        return pending

    # ═════════════════════════════════════════════════════════════════════════
    # Terminal processing
    # ═════════════════════════════════════════════════════════════════════════

    def _signal(self, fn, workflow_id: str) -> dict:
        """Run one signal in its own transaction, then any owed terminal processing.

        A concurrent writer on the same workflow makes the event append fail
        its unique constraint; the signal is then re-run against fresh state,
        where it either succeeds or meets the winner's outcome.
        """
        for attempt in range(1, _SIGNAL_ATTEMPTS + 1):
            try:
                pending = fn()
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if attempt == _SIGNAL_ATTEMPTS:
                    raise
                logger.warning("Concurrent update on %s, retrying signal (%d/%d)", workflow_id,
                               attempt, _SIGNAL_ATTEMPTS, extra={"workflow_id": workflow_id})
            except Exception:
                db.session.rollback()
                raise
        if pending is not None:
            self._finish(pending)
        return self.status(workflow_id)

    def _decide_terminal(self, subject, event_type: EventType, result: dict, *,
                         callback_event: str | None, actor: str = "system",
                         extra: dict | None = None) -> _PendingCallback:
        """Record the decision; the callback and outbound events follow in ``_finish``."""
        subject.result = result
        subject.callback_status = "PENDING"
        subject.completed_at = utcnow()
        payload = {"result": result, "callback_status": "PENDING", **(extra or {})}
        self.runtime.record(subject, event_type, payload, actor=actor,
                            audit_details={"result_code": result["resultCode"],
                                           "message": result.get("message")})
        return _PendingCallback(subject.workflow_id, callback_event)

    def _finish(self, pending: _PendingCallback) -> None:
        subject = self._load(pending.workflow_id)
        if subject.callback_status != "PENDING":
            return
        handler, handler_key = self._callback_handler(subject, pending.callback_event)

        if handler is None:
            outcome = None
            self.runtime.record(subject, EventType.CALLBACK_SKIPPED,
                                {"callback_event": pending.callback_event})
            subject.callback_status = "SKIPPED"
        else:
            outcome = self._dispatch(subject, handler, handler_key)
            details = {"callback_event": pending.callback_event, "handler": handler_key,
                       "ok": outcome.ok, "error": outcome.error, "retryable": outcome.retryable}
            if outcome.ok:
                self.runtime.record(subject, EventType.CALLBACK_SUCCEEDED, details,
                                    audit_action="CALLBACK", audit_details=details)
                subject.callback_status = "SUCCEEDED"
            else:
                self.runtime.record(subject, EventType.CALLBACK_FAILED, details,
                                    audit_action="CALLBACK", audit_details=details)
                subject.callback_status = "FAILED"
                subject.result = {**(subject.result or {}), "callbackError": outcome.error}
                subject.error_message = f"Callback {handler_key} failed: {outcome.error}"

        if subject.state == "APPROVED":
            if outcome is not None and not outcome.ok:
                self.runtime.record(subject, EventType.WORKFLOW_FAILED,
                                    {"callback_status": "FAILED", "error": outcome.error})
            else:
                self.runtime.record(subject, EventType.WORKFLOW_COMPLETED,
                                    {"callback_status": subject.callback_status})
            subject.completed_at = utcnow()

        event_publisher.enqueue_terminal_events(subject, self.config,
                                                self._decisions(subject.workflow_id))
        db.session.commit()
        logger.info("Workflow %s finished %s (callback %s)", subject.workflow_id, subject.state,
                    subject.callback_status, extra={"workflow_id": subject.workflow_id})

    def _callback_handler(self, subject, callback_event: str | None):
        """Handler for the event, honouring a template's registry-key override."""
        if not callback_event:
            return None, None
        key = f"{callback_event}:{subject.entity_type}"
        template = (WorkflowTemplate.query.filter_by(template_id=subject.template_id).first()
                    if subject.template_id else None)
        override = ((template.callback_handlers or {}) if template else {}).get(callback_event)
        if isinstance(override, str) and override:
            key = override
        handler = self.callbacks.get_by_key(key)
        if handler is None:
            logger.info("No %s handler registered (%s); skipping", callback_event, key,
                        extra={"workflow_id": subject.workflow_id, "entity_type": subject.entity_type})
        return handler, key

    def _dispatch(self, subject, handler, handler_key: str):
        try:
            outcome = handler.handle(subject)
        except Exception as exc:
            logger.exception("Callback %s raised", handler_key,
                             extra={"workflow_id": subject.workflow_id})
            return CallbackOutcome.fatal(f"{type(exc).__name__}: {exc}")
        if outcome.ok:
            logger.info("Callback %s succeeded", handler_key, extra={"workflow_id": subject.workflow_id})
        else:
            logger.error("Callback %s failed: %s", handler_key, outcome.error,
                         extra={"workflow_id": subject.workflow_id})
        return outcome

    def resume_pending_callbacks(self, now=None) -> dict:
        """Finish terminal processing a crashed process left behind."""
        cutoff = (now or utcnow()) - CALLBACK_RECOVERY_GRACE
        stuck = [
            s for s in WorkflowSubject.query.filter_by(callback_status="PENDING").all()
            if s.completed_at is None or as_utc(s.completed_at) <= cutoff
        ]
        resumed = 0
        for subject in stuck:
            code = (subject.result or {}).get("resultCode")
            logger.warning("Resuming callback for %s (%s)", subject.workflow_id, code,
                           extra={"workflow_id": subject.workflow_id})
            self._finish(_PendingCallback(subject.workflow_id, _CALLBACK_EVENT_BY_CODE.get(code)))
            resumed += 1
        return {"resumed": resumed}

    # ═════════════════════════════════════════════════════════════════════════
    # Queries
    # ═════════════════════════════════════════════════════════════════════════

    def status(self, workflow_id: str) -> dict:
        """Live state replayed from the event log; the stored subject if that fails."""
        try:
            view = self.runtime.query(workflow_id)
        except RuntimeUnavailableError as exc:
            subject = WorkflowSubject.query.filter_by(workflow_id=workflow_id).first()
            if subject is None:
                raise NotFoundError(resource="WorkflowSubject", resource_id=workflow_id) from exc
            logger.warning("Live query failed for %s, serving stored state: %s", workflow_id, exc,
                           extra={"workflow_id": workflow_id})
            return {
                **subject.to_dict(include_data=False),
                "decisions": [t.decision for t in task_manager.workflow_tasks(workflow_id) if t.decision],
                "stale": True,
            }

        subject = self._load(workflow_id)
        return {
            **subject.to_dict(include_data=False),
            "state": view.state,
            "approval_plan": view.plan,
            "result": view.result if view.is_terminal or view.state == "APPROVED" else None,
            "callback_status": view.callback_status,
            "cancel_reason": view.cancel_reason,
            "decisions": view.decisions,
            "escalations": view.escalations,
            "stale": False,
        }

    def history(self, workflow_id: str) -> list[dict]:
        self._load(workflow_id)
        return [e.to_dict() for e in self.runtime.events(workflow_id)]

    def audit_trail(self, workflow_id: str) -> list[dict]:
        self._load(workflow_id)
        rows = (WorkflowAuditLog.query.filter_by(workflow_id=workflow_id)
                .order_by(WorkflowAuditLog.timestamp.asc(), WorkflowAuditLog.id.asc()).all())
        return [r.to_dict() for r in rows]

    def workflow_tasks(self, workflow_id: str) -> list[dict]:
        self._load(workflow_id)
        return [t.to_dict() for t in task_manager.workflow_tasks(workflow_id)]

    def list_workflows(self, *, entity_type: str | None = None, state: str | None = None,
                       tenant_id: str | None = None, initiated_by: str | None = None):
        """Query of subjects, newest first."""
        q = WorkflowSubject.query
        if entity_type:
            q = q.filter(WorkflowSubject.entity_type == entity_type)
        if state:
            q = q.filter(WorkflowSubject.state == state.upper())
        if tenant_id:
            q = q.filter(WorkflowSubject.tenant_id == tenant_id)
        if initiated_by:
            q = q.filter(WorkflowSubject.initiated_by == initiated_by)
        return q.order_by(WorkflowSubject.initiated_at.desc(), WorkflowSubject.id.desc())

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _load(self, workflow_id: str) -> WorkflowSubject:
        subject = WorkflowSubject.query.filter_by(workflow_id=workflow_id).first()
        if subject is None:
            raise NotFoundError(resource="WorkflowSubject", resource_id=workflow_id)
        return subject

    def _decisions(self, workflow_id: str) -> list[dict]:
        """Recorded decisions in the order they were made."""
        return [
            dict(e.payload or {}) for e in self.runtime.events(workflow_id)
            if e.event_type == EventType.DECISION_RECORDED.value
        ]


def get_orchestrator() -> WorkflowOrchestrator:
    return current_app.extensions["orchestrator"]
