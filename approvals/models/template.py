"""
Bank Approval Workflow Service
Workflow template model.

Models:
    - WorkflowTemplate: versioned, publishable rule template for one entity type.

Lifecycle:
    created (inactive) → updated while inactive → published (active; any
    previously active template of the same entity type is deactivated) →
    optionally deactivated → deleted only while inactive.
"""

from datetime import datetime, timezone

from approvals.models import db

# ── Constants ────────────────────────────────────────────────────────────────

CALLBACK_EVENTS = ("onApprove", "onReject", "onTimeout", "onCancel", "onValidate")

APPROVER_STRATEGY_TYPES = frozenset({
    "ROLE_BASED", "ATTRIBUTE_BASED", "EXTERNAL_SERVICE", "SCRIPT",
})


class WorkflowTemplate(db.Model):
    """
    Rule template driving approval plans for one entity type.

    ``decision_tables``, ``escalation_rules`` and ``validators`` hold their
    JSON definitions; ``approvals.engine`` loads them into typed objects at
    evaluation time.
    """

    __tablename__ = "workflow_templates"
    __table_args__ = (
        db.Index("idx_wft_entity_active", "entity_type", "active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.String(100), unique=True, nullable=False,
        comment="Business key, e.g. solution-config-v1",
    )
    version = db.Column(db.String(30), nullable=False, default="1.0")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    entity_type = db.Column(
        db.String(60), nullable=False, index=True,
        comment="SOLUTION_CONFIGURATION | PARTY_CHANGE | RELATIONSHIP | …",
    )
    active = db.Column(db.Boolean, nullable=False, default=False)

    decision_tables = db.Column(db.JSON, default=list,
                                comment="Ordered list of decision table definitions")
    approver_selection = db.Column(db.JSON, default=dict,
                                   comment="{type, config, description}")
    escalation_rules = db.Column(db.JSON, default=list,
                                 comment="[{condition, action, escalate_to_role}]")
    callback_handlers = db.Column(db.JSON, default=dict,
                                  comment="{onApprove, onReject, onTimeout, onCancel, onValidate}")
    validators = db.Column(db.JSON, default=list,
                           comment="Validator configs run before rule evaluation")

    created_by = db.Column(db.String(150), default="system")
    updated_by = db.Column(db.String(150), nullable=True)
    published_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "entity_type": self.entity_type,
            "active": self.active,
            "decision_tables": self.decision_tables or [],
            "approver_selection": self.approver_selection or {},
            "escalation_rules": self.escalation_rules or [],
            "callback_handlers": self.callback_handlers or {},
            "validators": self.validators or [],
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "published_by": self.published_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }

    def __repr__(self):
        state = "active" if self.active else "inactive"
        return f"<WorkflowTemplate {self.template_id} v{self.version} [{self.entity_type}, {state}]>"
