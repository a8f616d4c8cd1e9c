"""
Validator contracts: configuration, results and the validator interface.

A validator looks at a workflow subject before rule evaluation and returns a
``ValidationResult``: an enrichment map merged into the subject's metadata,
an optional red flag, and an ordered trace of the steps it took.

Usage:
    cfg = ValidatorConfig.from_dict({"validator_id": "docs", "type": "RULES_BASED"})
    result = validator.validate(subject, cfg)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from approvals.engine.conditions import evaluate
from approvals.utils.helpers import utcnow


class ValidatorType(str, Enum):
    RULES_BASED = "RULES_BASED"
    LLM = "LLM"
    GRAPH = "GRAPH"
    CUSTOM = "CUSTOM"


class ExecutionMode(str, Enum):
    SYNC_ENRICHMENT = "SYNC_ENRICHMENT"
    ASYNC_RED_FLAG = "ASYNC_RED_FLAG"
    HYBRID = "HYBRID"

    @property
    def enriches(self) -> bool:
        return self in (ExecutionMode.SYNC_ENRICHMENT, ExecutionMode.HYBRID)

    @property
    def flags(self) -> bool:
        return self in (ExecutionMode.ASYNC_RED_FLAG, ExecutionMode.HYBRID)


class RedFlagSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def parse(cls, value) -> "RedFlagSeverity":
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.LOW


class RedFlagActionType(str, Enum):
    CONTINUE = "CONTINUE"
    ENHANCE_REVIEW = "ENHANCE_REVIEW"
    TERMINATE_REJECT = "TERMINATE_REJECT"
    ESCALATE = "ESCALATE"


@dataclass(frozen=True)
class RedFlagAction:
    action: RedFlagActionType = RedFlagActionType.CONTINUE
    auto_reject: bool = False
    reason: str | None = None
    notify_roles: tuple[str, ...] = ()
    additional_approver_roles: tuple[str, ...] = ()

    @property
    def terminates(self) -> bool:
        return self.auto_reject or self.action is RedFlagActionType.TERMINATE_REJECT

    @classmethod
    def from_dict(cls, data: dict | None) -> "RedFlagAction":
        data = data or {}
        return cls(
            action=RedFlagActionType(str(data.get("action") or "CONTINUE").upper()),
            auto_reject=bool(data.get("auto_reject", False)),
            reason=data.get("reason"),
            notify_roles=tuple(data.get("notify_roles") or ()),
            additional_approver_roles=tuple(data.get("additional_approver_roles") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "auto_reject": self.auto_reject,
            "reason": self.reason,
            "notify_roles": list(self.notify_roles),
            "additional_approver_roles": list(self.additional_approver_roles),
        }


@dataclass(frozen=True)
class ValidatorConfig:
    validator_id: str
    type: ValidatorType = ValidatorType.RULES_BASED
    mode: ExecutionMode = ExecutionMode.HYBRID
    priority: int = 0
    timeout_ms: int = 30000
    config: dict = field(default_factory=dict)
    red_flag_conditions: dict = field(default_factory=dict)
    red_flag_action: RedFlagAction = field(default_factory=RedFlagAction)
    enrichment_outputs: tuple[str, ...] = ()
    required: bool = False
    max_attempts: int = 2

    @classmethod
    def from_dict(cls, data: dict) -> "ValidatorConfig":
        """Load a stored validator config.

        Raises:
            ValueError: unknown type/mode/action or missing validator_id.
        """
        if not isinstance(data, dict) or not data.get("validator_id"):
            raise ValueError("validator config needs a validator_id")
        return cls(
            validator_id=str(data["validator_id"]),
            type=ValidatorType(str(data.get("type") or "RULES_BASED").upper()),
            mode=ExecutionMode(str(data.get("mode") or "HYBRID").upper()),
            priority=int(data.get("priority") or 0),
            timeout_ms=int(data.get("timeout_ms") or 30000),
            config=dict(data.get("config") or {}),
            red_flag_conditions=dict(data.get("red_flag_conditions") or {}),
            red_flag_action=RedFlagAction.from_dict(data.get("red_flag_action")),
            enrichment_outputs=tuple(data.get("enrichment_outputs") or ()),
            required=bool(data.get("required", False)),
            max_attempts=max(1, int(data.get("max_attempts") or 2)),
        )


@dataclass
class ValidationStep:
    step_number: int
    step_name: str
    tool: str | None = None
    input: dict = field(default_factory=dict)
    output: dict = field(default_factory=dict)
    reasoning: str | None = None
    success: bool = True
    error_message: str | None = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> dict:
        return {
            "step_number": self.step_number,
            "step_name": self.step_name,
            "tool": self.tool,
            "input": self.input,
            "output": self.output,
            "reasoning": self.reasoning,
            "success": self.success,
            "error_message": self.error_message,
            "timestamp": self.timestamp,
        }


@dataclass
class ValidationResult:
    validator_id: str
    validator_type: ValidatorType
    success: bool = True
    red_flag_detected: bool = False
    red_flag_reason: str | None = None
    severity: RedFlagSeverity | None = None
    recommended_action: RedFlagAction | None = None
    enrichment_data: dict = field(default_factory=dict)
    validation_steps: list[ValidationStep] = field(default_factory=list)
    confidence_score: float | None = None
    model: str | None = None
    metadata: dict = field(default_factory=dict)
    error_message: str | None = None
    executed_at: str = field(default_factory=lambda: utcnow().isoformat())
    execution_ms: int = 0

    @classmethod
    def failure(cls, config: ValidatorConfig, error: str, execution_ms: int = 0) -> "ValidationResult":
        return cls(validator_id=config.validator_id, validator_type=config.type,
                   success=False, error_message=error, execution_ms=execution_ms)

    def to_dict(self) -> dict:
        return {
            "validator_id": self.validator_id,
            "validator_type": self.validator_type.value,
            "success": self.success,
            "red_flag_detected": self.red_flag_detected,
            "red_flag_reason": self.red_flag_reason,
            "severity": self.severity.value if self.severity else None,
            "recommended_action": self.recommended_action.to_dict() if self.recommended_action else None,
            "enrichment_data": self.enrichment_data,
            "validation_steps": [s.to_dict() for s in self.validation_steps],
            "confidence_score": self.confidence_score,
            "model": self.model,
            "metadata": self.metadata,
            "error_message": self.error_message,
            "executed_at": self.executed_at,
            "execution_ms": self.execution_ms,
        }


class Validator(ABC):
    """A pluggable validator.  Implementations may raise ``RetryableError``
    for transient failures; any other exception counts as a failed run."""

    type: ValidatorType = ValidatorType.CUSTOM

    @abstractmethod
    def validate(self, subject, config: ValidatorConfig) -> ValidationResult:
        ...


# ── Shared helpers ───────────────────────────────────────────────────────────

def triggered_conditions(outputs: dict[str, Any], config: ValidatorConfig) -> list[str]:
    """Names of red-flag conditions that hold over a validator's *outputs*."""
    return [
        name for name, condition in config.red_flag_conditions.items()
        if evaluate(outputs.get(name), condition)
    ]


def select_enrichment(enrichment: dict, config: ValidatorConfig) -> dict:
    """Restrict *enrichment* to the configured output names, if any."""
    if not config.enrichment_outputs:
        return dict(enrichment)
    return {k: enrichment[k] for k in config.enrichment_outputs if k in enrichment}
