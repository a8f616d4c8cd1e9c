"""
Graph-assisted validator.

Asks the relationship-graph service about the entity's neighbourhood and turns
the answer into risk enrichment:

    POST {GRAPH_SERVICE_URL}/api/v1/graph/query
         {"entityType", "entityId", "depth"}
    →    {"relatedEntities": [...], "relationships": [{"riskLevel": ...}, ...]}

graphRiskScore = min(1, highRisk / max(1, relationships) + 0.05·relatedEntities)
"""

from __future__ import annotations

import logging

from approvals.integrations.service_gateway import ServiceGateway, raise_for_result
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

HIGH_RISK_LEVELS = frozenset({"HIGH", "CRITICAL"})


class GraphValidator(Validator):
    type = ValidatorType.GRAPH

    def __init__(self, gateway: ServiceGateway, base_url: str):
        self.gateway = gateway
        self.base_url = base_url.rstrip("/")

    def validate(self, subject, config: ValidatorConfig) -> ValidationResult:
        body = {
            "entityType": subject.entity_type,
            "entityId": subject.entity_id,
            "depth": int((config.config or {}).get("depth", 2)),
        }
        result = self.gateway.post(
            f"{self.base_url}/api/v1/graph/query", json_body=body,
            timeout=max(1, config.timeout_ms // 1000),
        )
        # network / 5xx → RetryableError, 4xx → FatalError
        raise_for_result(result, "graph query")

        data = result.data if isinstance(result.data, dict) else {}
        related = data.get("relatedEntities") or []
        relationships = data.get("relationships") or []
        high_risk = sum(
            1 for r in relationships
            if isinstance(r, dict) and str(r.get("riskLevel", "")).upper() in HIGH_RISK_LEVELS
        )
        score = round(min(1.0, high_risk / max(1, len(relationships)) + 0.05 * len(related)), 4)
        enrichment = {
            "relatedEntityCount": len(related),
            "highRiskRelationshipCount": high_risk,
            "graphRiskScore": score,
        }
        triggered = triggered_conditions(enrichment, config)
        red_flag = bool(triggered)

        logger.info("Graph validation %s: related=%d high_risk=%d score=%.2f",
                    config.validator_id, len(related), high_risk, score,
                    extra={"workflow_id": getattr(subject, "workflow_id", None)})
        return ValidationResult(
            validator_id=config.validator_id,
            validator_type=ValidatorType.GRAPH,
            red_flag_detected=red_flag,
            red_flag_reason=("Graph risk conditions met: " + ", ".join(triggered)) if red_flag else None,
            severity=(RedFlagSeverity.HIGH if high_risk else RedFlagSeverity.MEDIUM) if red_flag else None,
            recommended_action=config.red_flag_action if red_flag else None,
            enrichment_data=select_enrichment(enrichment, config),
            validation_steps=[ValidationStep(
                step_number=1, step_name="Query Relationship Graph", tool="graph_query",
                input=body, output=enrichment,
                reasoning=f"{high_risk} of {len(relationships)} relationship(s) are high risk",
            )],
            confidence_score=1.0,
            model="graph-query-v1",
            metadata={"triggered_conditions": triggered, "attempts": result.attempts},
            execution_ms=result.duration_ms,
        )
