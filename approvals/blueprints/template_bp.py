"""
Workflow Template Blueprint.

Routes:
  POST   /templates                    – create an (inactive) template
  GET    /templates                    – list templates (entity_type / active)
  GET    /templates/<tid>              – template detail
  PUT    /templates/<tid>              – edit an inactive template
  POST   /templates/<tid>/publish      – activate; other templates of the type go inactive
  POST   /templates/<tid>/deactivate   – deactivate
  DELETE /templates/<tid>              – delete an inactive template
  POST   /templates/<tid>/test         – dry-run rule evaluation on sample metadata
"""

from flask import Blueprint, jsonify, request

from approvals import limiter
from approvals.blueprints import paginate_query
from approvals.services import template_service
from approvals.utils.errors import E, api_error
from approvals.utils.helpers import current_user, parse_json_body

template_bp = Blueprint("template_bp", __name__, url_prefix="/api/v1/templates")

_admin_limit = limiter.shared_limit("60/minute", scope="template_admin")


@template_bp.route("", methods=["POST"])
@_admin_limit
def create_template():
    data = parse_json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body must be a JSON object", status=400)
    template = template_service.create_template(data, actor=current_user())
    return jsonify(template.to_dict()), 201


@template_bp.route("", methods=["GET"])
def list_templates():
    active = request.args.get("active")
    q = template_service.list_templates(
        entity_type=request.args.get("entity_type"),
        active=None if active is None else active.lower() == "true",
    )
    items, total = paginate_query(q)
    return jsonify({"items": [t.to_dict() for t in items], "total": total})


@template_bp.route("/<tid>", methods=["GET"])
def get_template(tid):
    return jsonify(template_service.get_template(tid).to_dict())


@template_bp.route("/<tid>", methods=["PUT"])
@_admin_limit
def update_template(tid):
    data = parse_json_body()
    template = template_service.update_template(tid, data, actor=current_user())
    return jsonify(template.to_dict())


@template_bp.route("/<tid>/publish", methods=["POST"])
@_admin_limit
def publish_template(tid):
    return jsonify(template_service.publish_template(tid, actor=current_user()).to_dict())


@template_bp.route("/<tid>/deactivate", methods=["POST"])
@_admin_limit
def deactivate_template(tid):
    return jsonify(template_service.deactivate_template(tid, actor=current_user()).to_dict())


@template_bp.route("/<tid>", methods=["DELETE"])
@_admin_limit
def delete_template(tid):
    template_service.delete_template(tid)
    return jsonify({"deleted": True, "template_id": tid})


@template_bp.route("/<tid>/test", methods=["POST"])
def test_template(tid):
    """Body: { metadata: {...} }  (a bare object is taken as the metadata)"""
    data = parse_json_body()
    metadata = data.get("metadata", data)
    if not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object", status=400)
    return jsonify(template_service.dry_run_template(tid, metadata))
