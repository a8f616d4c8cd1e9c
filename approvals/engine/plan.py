"""
Approval Plan Compiler.

Turns raw decision-table outputs into a ``ComputedApprovalPlan``.  Recognised
output names (rule authors write these in the ``outputs`` map of a rule):

    approvalRequired   bool    (default True)
    approverRoles      list    (a single string is wrapped)
    specificApprovers  list    (parallel to approverRoles)
    approvalCount      int     (alias: requiredApprovals; default 1)
    isSequential       bool    (alias: sequential; default False)
    slaHours           number  (default 24)

Every other output lands in ``additional_config`` untouched.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_SLA_HOURS = 24


class EscalationAction(str, Enum):
    SEND_REMINDER = "SEND_REMINDER"
    ESCALATE_TO_ROLE = "ESCALATE_TO_ROLE"
    AUTO_APPROVE = "AUTO_APPROVE"
    AUTO_REJECT = "AUTO_REJECT"


@dataclass(frozen=True)
class EscalationRule:
    condition: str
    action: EscalationAction
    escalate_to_role: str | None = None
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "EscalationRule":
        return cls(
            condition=str(data.get("condition") or ""),
            action=EscalationAction(str(data.get("action") or "").upper()),
            escalate_to_role=data.get("escalate_to_role") or data.get("target_role"),
            description=data.get("description"),
        )

    def to_dict(self) -> dict:
        return {
            "condition": self.condition,
            "action": self.action.value,
            "escalate_to_role": self.escalate_to_role,
            "description": self.description,
        }


@dataclass(frozen=True)
class ComputedApprovalPlan:
    """Immutable approval requirement for one submission."""
    approval_required: bool = True
    required_approvals: int = 1
    approver_roles: tuple[str, ...] = ()
    specific_approvers: tuple[str, ...] = ()
    sequential: bool = False
    sla_hours: float = DEFAULT_SLA_HOURS
    escalation_rules: tuple[EscalationRule, ...] = ()
    matched_rules: tuple[str, ...] = ()
    additional_config: dict = field(default_factory=dict)

    def with_additional_roles(self, roles: list[str]) -> "ComputedApprovalPlan":
        """Plan with extra reviewer roles appended, one extra approval each."""
        extra = [r for r in roles if r]
        if not extra or not self.approval_required:
            return self
        return dataclasses.replace(
            self,
            approver_roles=self.approver_roles + tuple(extra),
            required_approvals=self.required_approvals + len(extra),
        )

    def to_dict(self) -> dict:
        return {
            "approval_required": self.approval_required,
            "required_approvals": self.required_approvals,
            "approver_roles": list(self.approver_roles),
            "specific_approvers": list(self.specific_approvers),
            "sequential": self.sequential,
            "sla_hours": self.sla_hours,
            "escalation_rules": [r.to_dict() for r in self.escalation_rules],
            "matched_rules": list(self.matched_rules),
            "additional_config": self.additional_config,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ComputedApprovalPlan":
        data = data or {}
        return cls(
            approval_required=bool(data.get("approval_required", True)),
            required_approvals=int(data.get("required_approvals", 1)),
            approver_roles=tuple(data.get("approver_roles") or ()),
            specific_approvers=tuple(data.get("specific_approvers") or ()),
            sequential=bool(data.get("sequential", False)),
            sla_hours=data.get("sla_hours", DEFAULT_SLA_HOURS),
            escalation_rules=tuple(
                EscalationRule.from_dict(r) for r in data.get("escalation_rules") or ()
            ),
            matched_rules=tuple(data.get("matched_rules") or ()),
            additional_config=dict(data.get("additional_config") or {}),
        )


def default_plan(escalation_rules=(), sla_hours: float = DEFAULT_SLA_HOURS) -> ComputedApprovalPlan:
    """Conservative plan for a template without decision tables.

    One approval, no named role: the task manager supplies the fallback role.
    """
    return ComputedApprovalPlan(
        approval_required=True,
        required_approvals=1,
        sla_hours=sla_hours,
        escalation_rules=tuple(escalation_rules),
    )


def compile_plan(
    outputs: dict,
    *,
    matched_rules=(),
    escalation_rules=(),
    sla_hours: float = DEFAULT_SLA_HOURS,
) -> ComputedApprovalPlan:
    """Map decision outputs onto a ``ComputedApprovalPlan``."""
    outputs = dict(outputs or {})
    escalation_rules = tuple(escalation_rules)

    approval_required = _as_bool(outputs.get("approvalRequired"), default=True)
    sla = _as_number(outputs.get("slaHours"), default=sla_hours)

    if not approval_required:
        return ComputedApprovalPlan(
            approval_required=False,
            required_approvals=0,
            sla_hours=sla,
            escalation_rules=escalation_rules,
            matched_rules=tuple(matched_rules),
            additional_config=outputs,
        )

    count = outputs.get("approvalCount", outputs.get("requiredApprovals"))
    sequential = outputs.get("isSequential", outputs.get("sequential"))
    return ComputedApprovalPlan(
        approval_required=True,
        required_approvals=max(1, int(_as_number(count, default=1))),
        approver_roles=tuple(str(r) for r in _as_list(outputs.get("approverRoles"))),
        specific_approvers=tuple(str(a) for a in _as_list(outputs.get("specificApprovers"))),
        sequential=_as_bool(sequential, default=False),
        sla_hours=sla,
        escalation_rules=escalation_rules,
        matched_rules=tuple(matched_rules),
        additional_config=outputs,
    )


# ── Coercion helpers ─────────────────────────────────────────────────────────

def _as_bool(value, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_number(value, *, default):
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return int(number) if number.is_integer() else number


def _as_list(value) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [v for v in value if v not in (None, "")]
    return [value]
