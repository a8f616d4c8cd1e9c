"""
Rules-based document validator.

Deterministic checks over the submission's entity data and metadata:

  1. Required documents present   (document_presence_checker)
  2. Document URLs well-formed    (url_validator)
  3. Pricing matches documentation (consistency_checker)
  4. Regulatory disclosures       (compliance_checker)

Completeness score:
    1.0 − 0.25·missing required − 0.15·inaccessible − 0.1·inconsistencies
        − 0.2·critical compliance gaps, clamped to [0, 1].

Status: FAIL on a missing required document, a critical inconsistency or a
critical compliance gap; PASS_WITH_WARNINGS on any other finding; else PASS.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

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

# field → (document type, required, reason)
DOCUMENTS = (
    ("termsAndConditionsUrl", "TERMS_AND_CONDITIONS", True, "Required for all products"),
    ("disclosureUrl", "DISCLOSURE", True, "Required for regulatory compliance"),
    ("feeScheduleUrl", "FEE_SCHEDULE", True, "Required to document all fees"),
    ("documentationUrl", "PRODUCT_DOCUMENTATION", False, "Recommended for customer support"),
)

DEPOSIT_PRODUCT_TYPES = frozenset({"CHECKING", "SAVINGS"})

RULES_MODEL = "rules-based-v1"


@dataclass
class DocumentFindings:
    """Raw findings of one document check run."""
    missing: list[dict] = field(default_factory=list)
    inaccessible: list[dict] = field(default_factory=list)
    inconsistencies: list[dict] = field(default_factory=list)
    compliance_gaps: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def required_missing(self) -> int:
        return sum(1 for d in self.missing if d["required"])

    @property
    def critical_inconsistencies(self) -> int:
        return sum(1 for i in self.inconsistencies if i["severity"] == "CRITICAL")

    @property
    def critical_gaps(self) -> int:
        return sum(1 for g in self.compliance_gaps if g["severity"] == "CRITICAL")

    @property
    def completeness_score(self) -> float:
        score = 1.0
        score -= self.required_missing * 0.25
        score -= len(self.inaccessible) * 0.15
        score -= len(self.inconsistencies) * 0.1
        score -= self.critical_gaps * 0.2
        return round(max(0.0, min(1.0, score)), 4)

    @property
    def status(self) -> str:
        if self.required_missing or self.critical_inconsistencies or self.critical_gaps:
            return "FAIL"
        if self.missing or self.inaccessible or self.inconsistencies or self.compliance_gaps:
            return "PASS_WITH_WARNINGS"
        return "PASS"


def check_documents(entity_data: dict, metadata: dict) -> DocumentFindings:
    """Run every document check; pure function over the two maps."""
    entity_data = entity_data or {}
    metadata = metadata or {}
    findings = DocumentFindings()

    for field_name, doc_type, required, reason in DOCUMENTS:
        url = _text(entity_data.get(field_name))
        if not url:
            findings.missing.append({"document_type": doc_type, "required": required,
                                     "reason": reason})
        elif not url.startswith(("http://", "https://")):
            findings.inaccessible.append({
                "document_type": doc_type, "url": url,
                "error": "Invalid URL format - must start with http:// or https://",
            })

    _compare_price(findings, "monthlyFee", entity_data.get("monthlyFee"),
                   metadata.get("documentedMonthlyFee"), "FEE_SCHEDULE", "HIGH")
    _compare_price(findings, "interestRate", entity_data.get("interestRate"),
                   metadata.get("documentedInterestRate"), "DISCLOSURE", "CRITICAL")

    disclosures = {str(d).upper() for d in (metadata.get("disclosures") or [])}
    product_type = _text(entity_data.get("productType")).upper()
    if product_type in DEPOSIT_PRODUCT_TYPES:
        if "REG_DD" not in disclosures:
            findings.compliance_gaps.append({
                "regulation": "Regulation DD (Truth in Savings)",
                "gap": "Missing Reg DD disclosure in documentation",
                "severity": "CRITICAL",
            })
        if "FDIC_NOTICE" not in disclosures:
            findings.compliance_gaps.append({
                "regulation": "FDIC Insurance",
                "gap": "Missing FDIC insurance disclosure",
                "severity": "ERROR",
            })
    if entity_data.get("hasOverdraft") is True and "REG_E_OVERDRAFT" not in disclosures:
        findings.compliance_gaps.append({
            "regulation": "Regulation E",
            "gap": "Missing Reg E overdraft opt-in form",
            "severity": "CRITICAL",
        })

    features = entity_data.get("features")
    if isinstance(features, dict) and features:
        findings.warnings.append(
            f"Terms and conditions should explicitly cover all {len(features)} configured features"
        )
    if entity_data.get("earlyWithdrawalPenalty") is True and not _text(entity_data.get("penaltyDescription")):
        findings.warnings.append("Early withdrawal penalty is enabled but description is missing")

    if findings.required_missing:
        findings.recommendations.append(
            f"Upload {findings.required_missing} required document(s) before submission")
    if findings.inconsistencies:
        findings.recommendations.append(
            f"Resolve {len(findings.inconsistencies)} inconsistencies between configuration and documents")
    if findings.critical_gaps:
        findings.recommendations.append(
            f"Address {findings.critical_gaps} critical compliance gap(s)")
    if not (findings.missing or findings.inconsistencies or findings.compliance_gaps):
        findings.recommendations.append("Documentation is complete and consistent")
    return findings


class RulesBasedValidator(Validator):
    """Deterministic document validator; also the fallback for LLM and graph."""

    type = ValidatorType.RULES_BASED

    def validate(self, subject, config: ValidatorConfig) -> ValidationResult:
        t0 = time.perf_counter()
        findings = check_documents(subject.entity_data, subject.entity_metadata)

        enrichment = {
            "documentCompleteness": findings.completeness_score,
            "documentValidationStatus": findings.status,
            "missingDocumentCount": len(findings.missing),
            "inconsistencyCount": len(findings.inconsistencies),
            "complianceGapCount": len(findings.compliance_gaps),
            "documentRecommendations": findings.recommendations,
        }
        outputs = {
            **enrichment,
            "completenessScore": findings.completeness_score,
            "validationStatus": findings.status,
        }
        triggered = triggered_conditions(outputs, config)
        red_flag = bool(triggered) or findings.status == "FAIL"

        result = ValidationResult(
            validator_id=config.validator_id,
            validator_type=ValidatorType.RULES_BASED,
            red_flag_detected=red_flag,
            red_flag_reason=_red_flag_reason(findings, triggered) if red_flag else None,
            severity=_severity(findings) if red_flag else None,
            recommended_action=config.red_flag_action if red_flag else None,
            enrichment_data=select_enrichment(enrichment, config),
            validation_steps=_steps(findings),
            confidence_score=findings.completeness_score,
            model=RULES_MODEL,
            metadata={"warnings": findings.warnings, "triggered_conditions": triggered},
            execution_ms=int((time.perf_counter() - t0) * 1000),
        )
        logger.info(
            "Document validation %s: status=%s score=%.2f red_flag=%s",
            config.validator_id, findings.status, findings.completeness_score, red_flag,
            extra={"workflow_id": getattr(subject, "workflow_id", None)},
        )
        return result


# ── Internals ────────────────────────────────────────────────────────────────

def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _decimal(value) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _compare_price(findings, field_name, configured, documented, doc_type, severity):
    configured, documented = _decimal(configured), _decimal(documented)
    if configured is None or documented is None or configured == documented:
        return
    findings.inconsistencies.append({
        "field": field_name,
        "configured_value": str(configured),
        "documented_value": str(documented),
        "document_type": doc_type,
        "severity": severity,
    })


def _severity(findings: DocumentFindings) -> RedFlagSeverity:
    if findings.critical_gaps:
        return RedFlagSeverity.CRITICAL
    if findings.critical_inconsistencies or findings.required_missing:
        return RedFlagSeverity.HIGH
    if findings.inconsistencies or findings.compliance_gaps:
        return RedFlagSeverity.MEDIUM
    return RedFlagSeverity.LOW


def _red_flag_reason(findings: DocumentFindings, triggered: list[str]) -> str:
    parts = []
    if findings.required_missing:
        parts.append(f"{findings.required_missing} required document(s) missing")
    if findings.critical_inconsistencies:
        parts.append(f"{findings.critical_inconsistencies} critical inconsistencies")
    if findings.critical_gaps:
        parts.append(f"{findings.critical_gaps} critical compliance gap(s)")
    if triggered:
        parts.append("conditions met: " + ", ".join(triggered))
    return "Document validation failed: " + "; ".join(parts)


def _steps(findings: DocumentFindings) -> list[ValidationStep]:
    return [
        ValidationStep(
            step_number=1, step_name="Check Required Documents",
            tool="document_presence_checker",
            input={"checkType": "document_presence"},
            output={"missingCount": len(findings.missing), "missingDocuments": findings.missing},
            reasoning=("All required documents are present" if not findings.missing
                       else f"Found {len(findings.missing)} missing document(s)"),
        ),
        ValidationStep(
            step_number=2, step_name="Check Document Accessibility", tool="url_validator",
            input={"checkType": "document_accessibility"},
            output={"inaccessibleCount": len(findings.inaccessible),
                    "inaccessibleDocuments": findings.inaccessible},
            reasoning=("All document URLs are well-formed" if not findings.inaccessible
                       else f"Found {len(findings.inaccessible)} inaccessible document(s)"),
        ),
        ValidationStep(
            step_number=3, step_name="Check Pricing Consistency", tool="consistency_checker",
            input={"checkType": "pricing_consistency"},
            output={"inconsistencyCount": len(findings.inconsistencies),
                    "inconsistencies": findings.inconsistencies},
            reasoning=("Configuration matches documented values" if not findings.inconsistencies
                       else f"Found {len(findings.inconsistencies)} inconsistencies"),
        ),
        ValidationStep(
            step_number=4, step_name="Check Regulatory Compliance", tool="compliance_checker",
            input={"checkType": "regulatory_compliance"},
            output={"complianceGapCount": len(findings.compliance_gaps),
                    "complianceGaps": findings.compliance_gaps},
            reasoning=("All regulatory requirements met" if not findings.compliance_gaps
                       else f"Found {len(findings.compliance_gaps)} compliance gap(s)"),
        ),
    ]
