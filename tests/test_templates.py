"""
Workflow template registry tests (service layer + /api/v1/templates).

Tests cover:
  - Definition validation
  - Create / update / delete lifecycle and its guards
  - Publish: one active template per entity type
  - Rule evaluation (compute_plan) and the dry-run endpoint
"""
import pytest

from approvals.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowStateError,
)
from approvals.models.audit import WorkflowAuditLog
from approvals.models.template import WorkflowTemplate
from approvals.models.workflow import WorkflowSubject
from approvals.services import template_service


# ═════════════════════════════════════════════════════════════════════════
# VALIDATION
# ═════════════════════════════════════════════════════════════════════════

class TestValidateTemplate:
    def test_valid(self, make_template):
        assert template_service.validate_template(make_template()) == []

    def test_not_an_object(self):
        assert template_service.validate_template([]) == ["template must be a JSON object"]

    def test_required_fields(self):
        errors = template_service.validate_template({"decision_tables": []})
        assert "template_id is required" in errors
        assert "entity_type is required" in errors

    def test_collects_every_problem(self, make_template):
        data = make_template(
            decision_tables=[{"hit_policy": "SOMETIMES"}],
            escalation_rules=[{"condition": "age > 1", "action": "ESCALATE_TO_ROLE"},
                              {"condition": "", "action": "SEND_REMINDER"},
                              {"condition": "age > 1", "action": "PANIC"}],
            validators=[{"type": "RULES_BASED"}],
            callback_handlers={"onExplode": "x"},
            approver_selection={"type": "COIN_FLIP"},
        )
        errors = template_service.validate_template(data)
        assert len(errors) == 7
        assert any("hit policy" in e for e in errors)
        assert any("ESCALATE_TO_ROLE needs escalate_to_role" in e for e in errors)
        assert any("condition is required" in e for e in errors)
        assert any("unknown action" in e for e in errors)
        assert any(e.startswith("validators[0]") for e in errors)
        assert any("onExplode" in e for e in errors)
        assert any("COIN_FLIP" in e for e in errors)


# ═════════════════════════════════════════════════════════════════════════
# LIFECYCLE (service)
# ═════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_create_is_inactive(self, make_template):
        template = template_service.create_template(make_template(), actor="admin")
        assert template.active is False
        assert template.created_by == "admin"

    def test_create_duplicate(self, make_template):
        template_service.create_template(make_template())
        with pytest.raises(ConflictError):
            template_service.create_template(make_template())

    def test_create_invalid(self):
        with pytest.raises(ValidationError) as exc:
            template_service.create_template({"template_id": "t"})
        assert "entity_type is required" in exc.value.details["errors"]

    def test_update_inactive(self, make_template):
        template_service.create_template(make_template())
        updated = template_service.update_template(
            "solution-approval-v1", {"name": "Renamed", "template_id": "hijack"}, actor="ed")
        assert updated.name == "Renamed"
        assert updated.template_id == "solution-approval-v1"
        assert updated.updated_by == "ed"

    def test_update_active_refused(self, solution_template):
        with pytest.raises(WorkflowStateError) as exc:
            template_service.update_template(solution_template.template_id, {"name": "x"})
        assert exc.value.code == WorkflowStateError.ILLEGAL_STATE

    def test_update_revalidates(self, make_template):
        template_service.create_template(make_template())
        with pytest.raises(ValidationError):
            template_service.update_template("solution-approval-v1",
                                             {"decision_tables": [{"hit_policy": "NOPE"}]})

    def test_delete_active_refused(self, solution_template):
        with pytest.raises(WorkflowStateError):
            template_service.delete_template(solution_template.template_id)

    def test_delete_inactive(self, make_template):
        template_service.create_template(make_template())
        template_service.delete_template("solution-approval-v1")
        with pytest.raises(NotFoundError):
            template_service.get_template("solution-approval-v1")

    def test_publish_deactivates_siblings(self, make_template, publish_template):
        publish_template(make_template("sol-v1"))
        second = publish_template(make_template("sol-v2", version="2.0"))
        other = publish_template(make_template("party-v1", entity_type="PARTY_CHANGE"))

        assert WorkflowTemplate.query.filter_by(template_id="sol-v1").one().active is False
        assert second.active is True
        assert other.active is True
        assert template_service.get_active_template("SOLUTION_CONFIGURATION").template_id == "sol-v2"

    def test_publish_writes_audit(self, solution_template):
        row = WorkflowAuditLog.query.filter_by(action="TEMPLATE_PUBLISH").one()
        assert row.workflow_id == f"template:{solution_template.template_id}"
        assert row.new_state == "ACTIVE"

    def test_no_active_template(self):
        with pytest.raises(ConfigurationError):
            template_service.get_active_template("RELATIONSHIP")

    def test_deactivate(self, solution_template):
        template_service.deactivate_template(solution_template.template_id)
        with pytest.raises(ConfigurationError):
            template_service.get_active_template("SOLUTION_CONFIGURATION")


# ═════════════════════════════════════════════════════════════════════════
# RULE EVALUATION
# ═════════════════════════════════════════════════════════════════════════

class TestComputePlan:
    def test_high_variance(self, solution_template):
        plan, evaluation = template_service.compute_plan(solution_template, {"pricingVariance": 15})
        assert evaluation.matched_rules == ["high-variance"]
        assert plan.approver_roles == ("PRODUCT_MANAGER", "RISK_MANAGER")
        assert plan.required_approvals == 2
        assert plan.sequential is True

    def test_zero_variance_needs_no_approval(self, solution_template):
        plan, _ = template_service.compute_plan(solution_template, {"pricingVariance": 0})
        assert plan.approval_required is False

    def test_template_without_tables_uses_default_plan(self, make_template, publish_template):
        template = publish_template(make_template(decision_tables=[]))
        plan, evaluation = template_service.compute_plan(template, {"x": 1}, sla_hours=12)
        assert plan.required_approvals == 1
        assert plan.approver_roles == ()
        assert plan.sla_hours == 12
        assert evaluation.matched_rules == []

    def test_malformed_stored_table(self, solution_template):
        # a corrupted row that never went through create-time validation
        solution_template.decision_tables = [{"hit_policy": "BROKEN"}]
        with pytest.raises(ConfigurationError):
            template_service.compute_plan(solution_template, {})


# ═════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════

class TestTemplateAPI:
    def test_create(self, client, make_template):
        res = client.post("/api/v1/templates", json=make_template(),
                          headers={"X-User": "admin"})
        assert res.status_code == 201
        data = res.get_json()
        assert data["template_id"] == "solution-approval-v1"
        assert data["active"] is False
        assert data["created_by"] == "admin"

    def test_create_empty_body(self, client):
        res = client.post("/api/v1/templates", json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_create_invalid(self, client):
        res = client.post("/api/v1/templates", json={"template_id": "t"})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_RULE"

    def test_create_duplicate(self, client, make_template):
        client.post("/api/v1/templates", json=make_template())
        res = client.post("/api/v1/templates", json=make_template())
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_list_filters(self, client, make_template, solution_template):
        client.post("/api/v1/templates", json=make_template("party-v1", entity_type="PARTY_CHANGE"))
        res = client.get("/api/v1/templates?active=true")
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["template_id"] == solution_template.template_id

        res = client.get("/api/v1/templates?entity_type=PARTY_CHANGE")
        assert [t["template_id"] for t in res.get_json()["items"]] == ["party-v1"]

    def test_get_missing(self, client):
        res = client.get("/api/v1/templates/nope")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_publish_then_update_conflicts(self, client, make_template):
        client.post("/api/v1/templates", json=make_template())
        res = client.post("/api/v1/templates/solution-approval-v1/publish")
        assert res.status_code == 200
        assert res.get_json()["active"] is True

        res = client.put("/api/v1/templates/solution-approval-v1", json={"name": "x"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ILLEGAL_STATE"

    def test_deactivate_then_delete(self, client, solution_template):
        tid = solution_template.template_id
        assert client.delete(f"/api/v1/templates/{tid}").status_code == 409
        assert client.post(f"/api/v1/templates/{tid}/deactivate").get_json()["active"] is False
        res = client.delete(f"/api/v1/templates/{tid}")
        assert res.status_code == 200
        assert res.get_json() == {"deleted": True, "template_id": tid}

    def test_dry_run(self, client, solution_template):
        res = client.post(f"/api/v1/templates/{solution_template.template_id}/test",
                          json={"metadata": {"pricingVariance": 5}})
        assert res.status_code == 200
        data = res.get_json()
        assert data["valid"] is True
        assert data["matched_rules"] == ["low-variance"]
        assert data["approval_plan"]["approver_roles"] == ["PRODUCT_MANAGER"]
        assert data["execution_trace"][0]["table"] == "pricing-variance"

    def test_dry_run_bare_metadata(self, client, solution_template):
        res = client.post(f"/api/v1/templates/{solution_template.template_id}/test",
                          json={"pricingVariance": 50})
        assert res.get_json()["matched_rules"] == ["high-variance"]

    def test_dry_run_bad_metadata(self, client, solution_template):
        res = client.post(f"/api/v1/templates/{solution_template.template_id}/test",
                          json={"metadata": [1, 2]})
        assert res.status_code == 400

    def test_dry_run_persists_nothing(self, client, solution_template):
        client.post(f"/api/v1/templates/{solution_template.template_id}/test",
                    json={"pricingVariance": 50})
        assert WorkflowSubject.query.count() == 0
