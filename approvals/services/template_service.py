"""
Template Registry service layer.

Centralises every query and mutation of ``WorkflowTemplate`` so blueprints
stay HTTP-only, and owns rule evaluation against a template
(``compute_plan``) for both the submission path and the test endpoint.

Invariant: at most one active template per entity type.  ``publish_template``
is the only operation that writes more than one template row.
"""

from __future__ import annotations

import logging

from approvals.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from approvals.engine.decision_table import (
    DecisionTable,
    EvaluationResult,
    MalformedTableError,
    evaluate_tables,
)
from approvals.engine.plan import (
    DEFAULT_SLA_HOURS,
    ComputedApprovalPlan,
    EscalationAction,
    EscalationRule,
    compile_plan,
    default_plan,
)
from approvals.models import db
from approvals.models.audit import write_audit
from approvals.models.template import APPROVER_STRATEGY_TYPES, CALLBACK_EVENTS, WorkflowTemplate
from approvals.utils.helpers import utcnow
from approvals.validation.base import ValidatorConfig

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "name", "version", "description", "entity_type", "decision_tables",
    "approver_selection", "escalation_rules", "callback_handlers", "validators",
)


# ──────────────────────────────────────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────────────────────────────────────

def validate_template(data: dict) -> list[str]:
    """Return every problem with a template definition (empty list = valid)."""
    if not isinstance(data, dict):
        return ["template must be a JSON object"]

    errors: list[str] = []
    if not str(data.get("template_id") or "").strip():
        errors.append("template_id is required")
    if not str(data.get("entity_type") or "").strip():
        errors.append("entity_type is required")

    tables = data.get("decision_tables") or []
    if not isinstance(tables, list):
        errors.append("decision_tables must be a list")
    else:
        for i, table in enumerate(tables):
            try:
                DecisionTable.from_dict(table, i)
            except MalformedTableError as exc:
                errors.append(str(exc))

    rules = data.get("escalation_rules") or []
    if not isinstance(rules, list):
        errors.append("escalation_rules must be a list")
    else:
        for i, rule in enumerate(rules):
            if not isinstance(rule, dict):
                errors.append(f"escalation_rules[{i}] must be an object")
                continue
            try:
                parsed = EscalationRule.from_dict(rule)
            except ValueError:
                errors.append(f"escalation_rules[{i}]: unknown action {rule.get('action')!r}")
                continue
            if not parsed.condition:
                errors.append(f"escalation_rules[{i}]: condition is required")
            if parsed.action is EscalationAction.ESCALATE_TO_ROLE and not parsed.escalate_to_role:
                errors.append(f"escalation_rules[{i}]: ESCALATE_TO_ROLE needs escalate_to_role")

    validators = data.get("validators") or []
    if not isinstance(validators, list):
        errors.append("validators must be a list")
    else:
        for i, cfg in enumerate(validators):
            try:
                ValidatorConfig.from_dict(cfg)
            except (ValueError, TypeError) as exc:
                errors.append(f"validators[{i}]: {exc}")

    callbacks = data.get("callback_handlers") or {}
    if not isinstance(callbacks, dict):
        errors.append("callback_handlers must be an object")
    else:
        unknown = sorted(set(callbacks) - set(CALLBACK_EVENTS))
        if unknown:
            errors.append(f"callback_handlers: unknown events {', '.join(unknown)}")

    selection = data.get("approver_selection") or {}
    if not isinstance(selection, dict):
        errors.append("approver_selection must be an object")
    elif selection.get("type") and selection["type"] not in APPROVER_STRATEGY_TYPES:
        errors.append(f"approver_selection: unknown type {selection['type']!r}")

    return errors


def _ensure_valid(data: dict) -> None:
    errors = validate_template(data)
    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})


# ──────────────────────────────────────────────────────────────────────────────
# CRUD
# ──────────────────────────────────────────────────────────────────────────────

def get_template(template_id: str) -> WorkflowTemplate:
    """Raises NotFoundError."""
    template = WorkflowTemplate.query.filter_by(template_id=template_id).first()
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def list_templates(entity_type: str | None = None, active: bool | None = None):
    """Query of templates, newest first."""
    q = WorkflowTemplate.query
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    if active is not None:
        q = q.filter_by(active=active)
    return q.order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())


def create_template(data: dict, actor: str = "system") -> WorkflowTemplate:
    """Persist a new, inactive template.

    Raises:
        ValidationError: definition problems.
        ConflictError: template_id already taken.
    """
    _ensure_valid(data)
    template_id = data["template_id"].strip()
    if WorkflowTemplate.query.filter_by(template_id=template_id).first():
        raise ConflictError(resource="WorkflowTemplate", field="template_id", value=template_id)

    template = WorkflowTemplate(
        template_id=template_id,
        version=str(data.get("version") or "1.0"),
        name=data.get("name") or template_id,
        description=data.get("description") or "",
        entity_type=data["entity_type"].strip(),
        active=False,
        decision_tables=data.get("decision_tables") or [],
        approver_selection=data.get("approver_selection") or {},
        escalation_rules=data.get("escalation_rules") or [],
        callback_handlers=data.get("callback_handlers") or {},
        validators=data.get("validators") or [],
        created_by=actor,
    )
    db.session.add(template)
    db.session.commit()
    logger.info("WorkflowTemplate created %s (%s)", template_id, template.entity_type,
                extra={"entity_type": template.entity_type})
    return template


def update_template(template_id: str, data: dict, actor: str = "system") -> WorkflowTemplate:
    """Replace editable fields of an inactive template.

    ``template_id`` and the ``created_*`` fields never change.

    Raises:
        NotFoundError, ValidationError,
        WorkflowStateError: template is active.
    """
    template = get_template(template_id)
    if template.active:
        raise WorkflowStateError(
            WorkflowStateError.ILLEGAL_STATE,
            f"Template {template_id} is active; deactivate it before editing",
        )

    merged = {**template.to_dict(), **{k: v for k, v in data.items() if k in _EDITABLE_FIELDS}}
    merged["template_id"] = template.template_id
    _ensure_valid(merged)

    for key in _EDITABLE_FIELDS:
        if key in data:
            setattr(template, key, merged[key])
    template.updated_by = actor
    db.session.commit()
    logger.info("WorkflowTemplate updated %s", template_id)
    return template


def publish_template(template_id: str, actor: str = "system") -> WorkflowTemplate:
    """Activate *template_id* and deactivate every other active template of
    its entity type, in one transaction."""
    template = get_template(template_id)
    _ensure_valid(template.to_dict())

    siblings = WorkflowTemplate.query.filter(
        WorkflowTemplate.entity_type == template.entity_type,
        WorkflowTemplate.active.is_(True),
        WorkflowTemplate.id != template.id,
    ).all()
    for sibling in siblings:
        sibling.active = False
        sibling.updated_by = actor

    template.active = True
    template.published_by = actor
    template.published_at = utcnow()

    write_audit(
        workflow_id=f"template:{template.template_id}",
        previous_state="INACTIVE", new_state="ACTIVE",
        action="TEMPLATE_PUBLISH", actor=actor,
        entity_type=template.entity_type, entity_id=template.template_id,
        details={"version": template.version,
                 "deactivated": [s.template_id for s in siblings]},
    )
    db.session.commit()
    logger.info("WorkflowTemplate published %s; deactivated %s", template_id,
                [s.template_id for s in siblings] or "none",
                extra={"entity_type": template.entity_type})
    return template


def deactivate_template(template_id: str, actor: str = "system") -> WorkflowTemplate:
    template = get_template(template_id)
    if template.active:
        template.active = False
        template.updated_by = actor
        write_audit(
            workflow_id=f"template:{template.template_id}",
            previous_state="ACTIVE", new_state="INACTIVE",
            action="TEMPLATE_DEACTIVATE", actor=actor,
            entity_type=template.entity_type, entity_id=template.template_id,
        )
        db.session.commit()
        logger.info("WorkflowTemplate deactivated %s", template_id)
    return template


def delete_template(template_id: str) -> None:
    """Raises WorkflowStateError if the template is active."""
    template = get_template(template_id)
    if template.active:
        raise WorkflowStateError(
            WorkflowStateError.ILLEGAL_STATE,
            f"Template {template_id} is active; only inactive templates can be deleted",
        )
    db.session.delete(template)
    db.session.commit()
    logger.info("WorkflowTemplate deleted %s", template_id)


def get_active_template(entity_type: str) -> WorkflowTemplate:
    """Raises ConfigurationError when the entity type has no active template."""
    template = WorkflowTemplate.query.filter_by(entity_type=entity_type, active=True).first()
    if template is None:
        raise ConfigurationError(
            f"No active workflow template for entity type {entity_type}",
            details={"entity_type": entity_type},
        )
    return template


# ──────────────────────────────────────────────────────────────────────────────
# Rule evaluation
# ──────────────────────────────────────────────────────────────────────────────

def load_tables(template: WorkflowTemplate) -> list[DecisionTable]:
    """Raises ConfigurationError for a malformed stored table."""
    try:
        return [DecisionTable.from_dict(t, i) for i, t in enumerate(template.decision_tables or [])]
    except MalformedTableError as exc:
        raise ConfigurationError(
            f"Template {template.template_id} has a malformed decision table: {exc}",
            details={"template_id": template.template_id},
        ) from exc


def load_escalation_rules(template: WorkflowTemplate) -> list[EscalationRule]:
    try:
        return [EscalationRule.from_dict(r) for r in template.escalation_rules or []]
    except ValueError as exc:
        raise ConfigurationError(
            f"Template {template.template_id} has an invalid escalation rule: {exc}",
            details={"template_id": template.template_id},
        ) from exc


def load_validators(template: WorkflowTemplate) -> list[ValidatorConfig]:
    try:
        return [ValidatorConfig.from_dict(v) for v in template.validators or []]
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(
            f"Template {template.template_id} has an invalid validator: {exc}",
            details={"template_id": template.template_id},
        ) from exc


def compute_plan(
    template: WorkflowTemplate,
    metadata: dict,
    *,
    sla_hours: float = DEFAULT_SLA_HOURS,
) -> tuple[ComputedApprovalPlan, EvaluationResult]:
    """Evaluate *template* against *metadata*.

    Pure apart from reading the template.  A template without decision tables
    yields the conservative default plan.
    """
    tables = load_tables(template)
    escalation_rules = load_escalation_rules(template)
    if not tables:
        return default_plan(escalation_rules, sla_hours=sla_hours), EvaluationResult()
    evaluation = evaluate_tables(tables, metadata or {})
    plan = compile_plan(
        evaluation.outputs,
        matched_rules=evaluation.matched_rules,
        escalation_rules=escalation_rules,
        sla_hours=sla_hours,
    )
    return plan, evaluation


def dry_run_template(template_id: str, metadata: dict) -> dict:
    """Dry-run a stored template against sample metadata; nothing is persisted."""
    template = get_template(template_id)
    errors = validate_template(template.to_dict())
    if errors:
        return {
            "template_id": template_id,
            "valid": False,
            "validation_errors": errors,
            "matched_rules": [],
            "approval_plan": None,
            "execution_trace": [],
        }
    plan, evaluation = compute_plan(template, metadata)
    return {
        "template_id": template_id,
        "valid": True,
        "validation_errors": [],
        "matched_rules": list(evaluation.matched_rules),
        "approval_plan": plan.to_dict(),
        "execution_trace": [t.to_dict() for t in evaluation.trace],
    }


