"""
Workflow Blueprint.

Routes:
  POST   /workflows                            – submit an entity for approval
  GET    /workflows                            – list workflows (filters, paginated)
  GET    /workflows/<workflow_id>              – live status
  POST   /workflows/<workflow_id>/approve      – approve as the current user
  POST   /workflows/<workflow_id>/reject       – reject as the current user
  POST   /workflows/<workflow_id>/cancel       – cancel an undecided workflow
  GET    /workflows/<workflow_id>/tasks        – approval tasks
  GET    /workflows/<workflow_id>/audit        – audit trail
  GET    /workflows/<workflow_id>/history      – runtime event log
  GET    /tasks                                – task inbox (assignee / role / status)

Service-layer errors propagate to the handlers registered in ``create_app``.
"""

import logging

from flask import Blueprint, jsonify, request

from approvals import limiter
from approvals.blueprints import paginate_query
from approvals.services import task_manager
from approvals.services.orchestrator import get_orchestrator
from approvals.utils.errors import E, api_error
from approvals.utils.helpers import current_user, parse_json_body

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")

_submit_limit = limiter.shared_limit("120/minute", scope="workflow_submit")
_signal_limit = limiter.shared_limit("240/minute", scope="workflow_signal")


# ── helpers ──────────────────────────────────────────────────────────────

def _optional_list(data, key, errors):
    value = data.get(key)
    if value is not None and not isinstance(value, list):
        errors.append(f"{key} must be a list")
    return value


def _optional_dict(data, key, errors):
    value = data.get(key)
    if value is not None and not isinstance(value, dict):
        errors.append(f"{key} must be an object")
    return value


def _optional_str(data, key, errors):
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        errors.append(f"{key} must be a string")
    return value


def _bad_request(errors):
    return api_error(E.VALIDATION_INVALID, "; ".join(errors), status=400)


# ═════════════════════════════════════════════════════════════════════════════
# SUBMISSION
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows", methods=["POST"])
@_submit_limit
def submit_workflow():
    """Submit an entity for approval.

    Body: { entity_type, entity_id, entity_data?, entity_metadata?, template_id?,
            tenant_id?, priority?, business_justification?, workflow_instance_id? }

    201 for a new workflow, 200 when the instance id already had one.
    """
    data = parse_json_body()
    errors = []
    entity_type = data.get("entity_type")
    if entity_type is not None and not isinstance(entity_type, str):
        errors.append("entity_type must be a string")
    elif not (entity_type or "").strip():
        errors.append("entity_type is required")
    if not str(data.get("entity_id") or "").strip():
        errors.append("entity_id is required")
    entity_data = _optional_dict(data, "entity_data", errors)
    entity_metadata = _optional_dict(data, "entity_metadata", errors)
    for key in ("template_id", "tenant_id", "priority", "business_justification",
                "workflow_instance_id"):
        _optional_str(data, key, errors)
    if errors:
        return _bad_request(errors)

    response = get_orchestrator().submit(
        data["entity_type"],
        data["entity_id"],
        entity_data=entity_data,
        entity_metadata=entity_metadata,
        initiated_by=current_user(),
        template_id=data.get("template_id"),
        tenant_id=data.get("tenant_id"),
        priority=data.get("priority"),
        business_justification=data.get("business_justification"),
        workflow_instance_id=data.get("workflow_instance_id"),
    )
    return jsonify(response), 200 if response["duplicate"] else 201


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    """List workflows, newest first.  Filters: entity_type, state, tenant_id, initiated_by."""
    q = get_orchestrator().list_workflows(
        entity_type=request.args.get("entity_type"),
        state=request.args.get("state"),
        tenant_id=request.args.get("tenant_id"),
        initiated_by=request.args.get("initiated_by"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [s.to_dict(include_data=False) for s in items], "total": total})


# ═════════════════════════════════════════════════════════════════════════════
# STATUS & SIGNALS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows/<workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    return jsonify(get_orchestrator().status(workflow_id))


@workflow_bp.route("/workflows/<workflow_id>/approve", methods=["POST"])
@_signal_limit
def approve_workflow(workflow_id):
    """Body: { comments?, conditions?, task_id? }"""
    data = parse_json_body()
    errors = []
    conditions = _optional_list(data, "conditions", errors)
    if errors:
        return _bad_request(errors)

    result = get_orchestrator().approve(
        workflow_id, current_user(), data.get("comments"), conditions, task_id=data.get("task_id"),
    )
    return jsonify(result)


@workflow_bp.route("/workflows/<workflow_id>/reject", methods=["POST"])
@_signal_limit
def reject_workflow(workflow_id):
    """Body: { reason, required_changes?, task_id? }"""
    data = parse_json_body()
    errors = []
    if not str(data.get("reason") or "").strip():
        errors.append("reason is required")
    required_changes = _optional_list(data, "required_changes", errors)
    if errors:
        return _bad_request(errors)

    result = get_orchestrator().reject(
        workflow_id, current_user(), data["reason"], required_changes, task_id=data.get("task_id"),
    )
    return jsonify(result)


@workflow_bp.route("/workflows/<workflow_id>/cancel", methods=["POST"])
@_signal_limit
def cancel_workflow(workflow_id):
    """Body: { reason? }"""
    data = parse_json_body()
    return jsonify(get_orchestrator().cancel(workflow_id, data.get("reason"), actor=current_user()))


# ═════════════════════════════════════════════════════════════════════════════
# TRAILS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows/<workflow_id>/tasks", methods=["GET"])
def workflow_tasks(workflow_id):
    return jsonify(get_orchestrator().workflow_tasks(workflow_id))


@workflow_bp.route("/workflows/<workflow_id>/audit", methods=["GET"])
def workflow_audit(workflow_id):
    return jsonify(get_orchestrator().audit_trail(workflow_id))


@workflow_bp.route("/workflows/<workflow_id>/history", methods=["GET"])
def workflow_history(workflow_id):
    return jsonify(get_orchestrator().history(workflow_id))


@workflow_bp.route("/tasks", methods=["GET"])
def list_tasks():
    """Task inbox.  Filters: assignee, role, status."""
    q = task_manager.list_tasks(
        assignee=request.args.get("assignee"),
        role=request.args.get("role"),
        status=request.args.get("status"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [t.to_dict() for t in items], "total": total})
