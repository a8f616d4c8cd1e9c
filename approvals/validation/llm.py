"""
LLM-assisted document validator.

Sends the submission to the configured LLM provider with a compliance-analyst
prompt and converts the JSON reply into a ``ValidationResult``.

Usage:
    validator = LLMValidator(AnthropicProvider(api_key), default_model="claude-sonnet-4-5-20250929")
    result = validator.validate(subject, cfg)
"""

from __future__ import annotations

import json
import logging
import re
import time

from approvals.ai.gateway import LLMProvider
from approvals.validation.base import (
    RedFlagSeverity,
    ValidationResult,
    ValidationStep,
    Validator,
    ValidatorConfig,
    ValidatorType,
    select_enrichment,
    triggered_conditions,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a banking product compliance analyst with expertise in regulatory "
    "requirements including Regulation DD (Truth in Savings), Regulation E "
    "(Electronic Fund Transfers), and FDIC disclosure requirements. "
    "Respond only with a JSON object."
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def build_prompt(subject) -> str:
    """User prompt for one submission."""
    entity_data = subject.entity_data or {}
    metadata = subject.entity_metadata or {}
    solution_name = entity_data.get("solutionName", "Unknown Product")
    product_type = metadata.get("productType") or entity_data.get("productType") or "Unknown Type"
    description = entity_data.get("description", "No description")

    return f"""Analyze the following product configuration for completeness, regulatory compliance, and risk.

PRODUCT DETAILS:
- Product Name: {solution_name}
- Product Type: {product_type}
- Description: {description}

DOCUMENTS:
{_bullet_list(entity_data.get("documents"), "No documents provided")}

METADATA:
{_bullet_list(metadata, "No metadata provided")}

ANALYSIS REQUIRED:
1. Document completeness: Terms & Conditions, Fee Schedule and Disclosure Statement are required.
2. Regulatory compliance: Regulation DD (APY, fees, minimum balance), Regulation E
   (transfer rights, error resolution), FDIC deposit insurance disclosure.
3. Pricing consistency: rates and fees must match across documents.
4. Risk assessment: identify red flags and compliance gaps.

RESPONSE FORMAT (JSON):
{{
  "redFlagDetected": boolean,
  "redFlagReason": "string (if red flag detected)",
  "severity": "LOW|MEDIUM|HIGH|CRITICAL",
  "confidenceScore": 0.0-1.0,
  "documentCompleteness": 0.0-1.0,
  "regulatoryComplianceStatus": "COMPLIANT|PARTIAL|NON_COMPLIANT",
  "pricingConsistency": "CONSISTENT|MINOR_ISSUES|MAJOR_ISSUES",
  "identifiedRisks": ["..."],
  "requiredActions": ["..."],
  "agentRecommendation": "APPROVE|CONDITIONAL_APPROVE|REJECT|REQUIRES_REVIEW",
  "reasoning": [{{"stepName": "string", "reasoning": "string", "finding": "string"}}]
}}"""


def extract_json(text: str) -> dict:
    """Pull the JSON object out of an LLM reply.

    Accepts a fenced ```json block, or the outermost ``{...}`` span.

    Raises:
        ValueError: nothing parseable as a JSON object.
    """
    text = text or ""
    match = _FENCED_JSON.search(text)
    if match:
        candidate = match.group(1).strip()
    else:
        start, end = text.find("{"), text.rfind("}")
        candidate = text[start:end + 1] if start >= 0 and end > start else text
    data = json.loads(candidate)
    if not isinstance(data, dict):
        raise ValueError("LLM reply is not a JSON object")
    return data


class LLMValidator(Validator):
    """Semantic document review through an ``LLMProvider``."""

    type = ValidatorType.LLM

    def __init__(self, provider: LLMProvider, default_model: str):
        self.provider = provider
        self.default_model = default_model

    def validate(self, subject, config: ValidatorConfig) -> ValidationResult:
        t0 = time.perf_counter()
        options = config.config or {}
        model = options.get("model") or self.default_model
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(subject)},
        ]
        # provider raises RetryableError for transient failures
        reply = self.provider.chat(
            messages, model=model,
            temperature=options.get("temperature", 0.3),
            max_tokens=options.get("max_tokens", 4096),
            timeout=config.timeout_ms / 1000,
        )
        elapsed = int((time.perf_counter() - t0) * 1000)

        try:
            data = extract_json(reply.get("content", ""))
        except ValueError as exc:
            logger.warning("Unparseable LLM reply for %s: %s", config.validator_id, exc,
                           extra={"workflow_id": getattr(subject, "workflow_id", None)})
            return ValidationResult.failure(config, f"Failed to parse LLM response: {exc}", elapsed)

        enrichment = _enrichment(data)
        triggered = triggered_conditions({**data, **enrichment}, config)
        red_flag = bool(data.get("redFlagDetected")) or bool(triggered)
        reason = data.get("redFlagReason")
        if triggered and not reason:
            reason = "Conditions met: " + ", ".join(triggered)

        return ValidationResult(
            validator_id=config.validator_id,
            validator_type=ValidatorType.LLM,
            red_flag_detected=red_flag,
            red_flag_reason=reason if red_flag else None,
            severity=RedFlagSeverity.parse(data.get("severity", "LOW")) if red_flag else None,
            recommended_action=config.red_flag_action if red_flag else None,
            enrichment_data=select_enrichment(enrichment, config),
            validation_steps=_steps(data),
            confidence_score=_float(data.get("confidenceScore")),
            model=reply.get("model", model),
            metadata={
                "prompt_tokens": reply.get("prompt_tokens"),
                "completion_tokens": reply.get("completion_tokens"),
                "triggered_conditions": triggered,
            },
            execution_ms=elapsed,
        )


# ── Internals ────────────────────────────────────────────────────────────────

def _bullet_list(mapping, empty: str) -> str:
    if not isinstance(mapping, dict) or not mapping:
        return empty
    return "\n".join(f"  - {k}: {v}" for k, v in mapping.items())


def _float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _enrichment(data: dict) -> dict:
    risks = [str(r) for r in (data.get("identifiedRisks") or [])]
    return {
        "aiDocumentCompleteness": _float(data.get("documentCompleteness")),
        "aiComplianceStatus": data.get("regulatoryComplianceStatus", "UNKNOWN"),
        "aiPricingConsistency": data.get("pricingConsistency", "UNKNOWN"),
        "aiRecommendation": data.get("agentRecommendation", "REQUIRES_REVIEW"),
        "aiRiskCount": len(risks),
        "aiConfidence": _float(data.get("confidenceScore")),
    }


def _steps(data: dict) -> list[ValidationStep]:
    steps = []
    for number, item in enumerate(data.get("reasoning") or [], start=1):
        if not isinstance(item, dict):
            continue
        name = item.get("stepName") or "Analysis Step"
        finding = item.get("finding") or ""
        reasoning = item.get("reasoning") or ""
        steps.append(ValidationStep(
            step_number=number, step_name=name, tool="llm_analyze",
            input={"analysis": name}, output={"finding": finding},
            reasoning=reasoning + (f" Finding: {finding}" if finding else ""),
        ))
    if not steps:
        steps.append(ValidationStep(
            step_number=1, step_name="LLM Analysis", tool="llm_analyze",
            input={"type": "document_validation"}, output={"completed": True},
            reasoning="LLM-powered semantic analysis completed",
        ))
    return steps
