"""
Validator pipeline.

Built once in ``create_app`` and stored in ``app.extensions["validator_pipeline"]``.
Runs a template's validators against a subject in priority order (highest
first) and folds their results into one ``PipelineOutcome``:

  - enrichment from SYNC_ENRICHMENT / HYBRID validators, last one wins per key
  - red flags from ASYNC_RED_FLAG / HYBRID validators; a terminating red flag
    stops the run
  - extra approver roles requested by ENHANCE_REVIEW / ESCALATE red flags
  - the first failed *required* validator, which stops the run

Transient failures (``RetryableError``) are retried up to the validator's
``max_attempts``.  Any other error counts as a failed run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from approvals.core.exceptions import ConfigurationError, RetryableError
from approvals.validation.base import (
    RedFlagActionType,
    ValidationResult,
    Validator,
    ValidatorConfig,
    ValidatorType,
)
from approvals.validation.graph import GraphValidator
from approvals.validation.llm import LLMValidator
from approvals.validation.rules_based import RulesBasedValidator

logger = logging.getLogger(__name__)

_ROLE_ADDING_ACTIONS = (RedFlagActionType.ENHANCE_REVIEW, RedFlagActionType.ESCALATE)


@dataclass
class PipelineOutcome:
    results: list[ValidationResult] = field(default_factory=list)
    enrichment: dict = field(default_factory=dict)
    red_flags: list[ValidationResult] = field(default_factory=list)
    terminating: ValidationResult | None = None
    failed_required: ValidationResult | None = None
    additional_roles: list[str] = field(default_factory=list)

    @property
    def red_flag_detected(self) -> bool:
        return bool(self.red_flags)

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "enrichment": self.enrichment,
            "red_flag_detected": self.red_flag_detected,
            "terminated_by": self.terminating.validator_id if self.terminating else None,
            "failed_required": self.failed_required.validator_id if self.failed_required else None,
            "additional_roles": self.additional_roles,
        }


class ValidatorPipeline:
    """Resolves validator configs to implementations and runs them."""

    def __init__(self, validators: dict[ValidatorType, Validator] | None = None,
                 *, sleep=time.sleep):
        self._validators: dict[ValidatorType, Validator] = {
            ValidatorType.RULES_BASED: RulesBasedValidator(),
        }
        self._validators.update(validators or {})
        self._custom: dict[str, Validator] = {}
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, gateway, provider=None) -> "ValidatorPipeline":
        """Pick implementations from the app config.

        LLM needs ``ANTHROPIC_API_KEY`` and graph needs ``GRAPH_SERVICE_URL``;
        either one missing is replaced by the rules-based validator.
        """
        rules = RulesBasedValidator()
        validators: dict[ValidatorType, Validator] = {ValidatorType.RULES_BASED: rules}

        api_key = config.get("ANTHROPIC_API_KEY")
        if provider is None and api_key:
            from approvals.ai.gateway import AnthropicProvider
            provider = AnthropicProvider(api_key=api_key)
        if provider is not None:
            validators[ValidatorType.LLM] = LLMValidator(provider, config.get("LLM_VALIDATOR_MODEL"))
        else:
            validators[ValidatorType.LLM] = rules
            logger.info("LLM validator unavailable (no ANTHROPIC_API_KEY); using rules-based")

        graph_url = config.get("GRAPH_SERVICE_URL")
        if graph_url:
            validators[ValidatorType.GRAPH] = GraphValidator(gateway, graph_url)
        else:
            validators[ValidatorType.GRAPH] = rules
            logger.info("Graph validator unavailable (no GRAPH_SERVICE_URL); using rules-based")

        return cls(validators)

    # ── Registration ─────────────────────────────────────────────────────────

    def register_custom(self, validator_id: str, validator: Validator) -> None:
        if validator_id in self._custom:
            logger.warning("Replacing custom validator %s", validator_id)
        self._custom[validator_id] = validator

    def resolve(self, config: ValidatorConfig) -> Validator:
        """Implementation for *config*.

        Raises:
            ConfigurationError: CUSTOM validator with no registered implementation.
        """
        if config.type is ValidatorType.CUSTOM:
            validator = self._custom.get(config.validator_id)
            if validator is None:
                raise ConfigurationError(
                    f"No custom validator registered for '{config.validator_id}'",
                    details={"validator_id": config.validator_id},
                )
            return validator
        return self._validators[config.type]

    def check(self, configs: list[ValidatorConfig]) -> None:
        """Resolve every config up front so a bad template fails before anything runs."""
        for cfg in configs:
            self.resolve(cfg)

    # ── Execution ────────────────────────────────────────────────────────────

    def run(self, subject, configs: list[ValidatorConfig]) -> PipelineOutcome:
        outcome = PipelineOutcome()
        ordered = sorted(configs, key=lambda c: c.priority, reverse=True)
        wf_extra = {"workflow_id": getattr(subject, "workflow_id", None)}

        for cfg in ordered:
            result = self._run_one(subject, cfg)
            outcome.results.append(result)

            if not result.success:
                if cfg.required:
                    logger.error("Required validator %s failed: %s", cfg.validator_id,
                                 result.error_message, extra=wf_extra)
                    outcome.failed_required = result
                    break
                logger.warning("Optional validator %s failed, ignoring: %s",
                               cfg.validator_id, result.error_message, extra=wf_extra)
                continue

            if cfg.mode.enriches:
                outcome.enrichment.update(result.enrichment_data)

            if cfg.mode.flags and result.red_flag_detected:
                outcome.red_flags.append(result)
                action = result.recommended_action or cfg.red_flag_action
                logger.warning("Red flag from %s (%s): %s", cfg.validator_id,
                               action.action.value, result.red_flag_reason, extra=wf_extra)
                if action.terminates:
                    outcome.terminating = result
                    break
                if action.action in _ROLE_ADDING_ACTIONS:
                    for role in action.additional_approver_roles:
                        if role not in outcome.additional_roles:
                            outcome.additional_roles.append(role)

        return outcome

    def _run_one(self, subject, cfg: ValidatorConfig) -> ValidationResult:
        validator = self.resolve(cfg)
        t0 = time.perf_counter()
        error = None
        for attempt in range(1, cfg.max_attempts + 1):
            try:
                return validator.validate(subject, cfg)
            except RetryableError as exc:
                logger.warning("Validator %s transient failure attempt=%d/%d: %s",
                               cfg.validator_id, attempt, cfg.max_attempts, exc)
                error = f"Validator failed after {attempt} attempt(s): {exc}"
                if attempt < cfg.max_attempts:
                    self._sleep(min(2 ** (attempt - 1), 4))
            except Exception as exc:
                logger.exception("Validator %s raised", cfg.validator_id)
                error = f"Validator error: {exc}"
                break
        return ValidationResult.failure(cfg, error, int((time.perf_counter() - t0) * 1000))
