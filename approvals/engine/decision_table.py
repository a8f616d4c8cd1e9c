"""
Decision Table Engine.

Applies a hit policy over an ordered list of rules and returns the resulting
outputs.  Pure functions only: no database, no Flask, no logging side effects
beyond debug traces, so the same call is safe from the submission path, the
template test endpoint and concurrent workflow instances.

Hit policies:
    FIRST     first matching rule in declaration order wins
    PRIORITY  rules sorted by priority (desc, stable), then FIRST
    ALL       every match merged, later matches overwrite the same key
    COLLECT   like ALL, but list-valued outputs are concatenated

Usage:
    from approvals.engine.decision_table import DecisionTable, evaluate_tables
    tables = [DecisionTable.from_dict(t) for t in template.decision_tables]
    result = evaluate_tables(tables, {"pricingVariance": 15})
    result.outputs        # {"approverRoles": [...], ...}
    result.matched_rules  # ["high-variance"]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from approvals.engine.conditions import evaluate

logger = logging.getLogger(__name__)


class MalformedTableError(ValueError):
    """Raised when a decision-table definition cannot be loaded."""


class HitPolicy(str, Enum):
    FIRST = "FIRST"
    PRIORITY = "PRIORITY"
    ALL = "ALL"
    COLLECT = "COLLECT"


_LIST_TYPES = frozenset({"array", "list"})


# ═════════════════════════════════════════════════════════════════════════════
# Table structure
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DecisionInput:
    name: str
    type: str = "string"
    description: str | None = None


@dataclass(frozen=True)
class DecisionOutput:
    name: str
    type: str = "string"
    default_value: Any = None
    description: str | None = None

    @property
    def is_list(self) -> bool:
        return (self.type or "").lower() in _LIST_TYPES


@dataclass(frozen=True)
class DecisionRule:
    rule_id: str
    priority: int = 0
    conditions: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    description: str | None = None

    def matches(self, metadata: dict) -> bool:
        """True when every condition holds; a rule without conditions always matches."""
        for field_name, condition in self.conditions.items():
            if not evaluate(metadata.get(field_name), condition):
                return False
        return True


@dataclass(frozen=True)
class DecisionTable:
    name: str
    hit_policy: HitPolicy = HitPolicy.FIRST
    inputs: tuple[DecisionInput, ...] = ()
    outputs: tuple[DecisionOutput, ...] = ()
    rules: tuple[DecisionRule, ...] = ()
    default_rule_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> "DecisionTable":
        """Build a table from its stored JSON form.

        Raises:
            MalformedTableError: structure is not a usable decision table.
        """
        if not isinstance(data, dict):
            raise MalformedTableError(f"decision table #{index + 1} must be an object")

        raw_policy = str(data.get("hit_policy") or "FIRST").upper()
        try:
            policy = HitPolicy(raw_policy)
        except ValueError:
            raise MalformedTableError(
                f"decision table #{index + 1}: unknown hit policy {raw_policy!r}"
            ) from None

        rules = []
        for pos, raw in enumerate(data.get("rules") or []):
            if not isinstance(raw, dict) or not raw.get("rule_id"):
                raise MalformedTableError(
                    f"decision table #{index + 1}: rule #{pos + 1} needs a rule_id"
                )
            conditions = raw.get("conditions") or {}
            outputs = raw.get("outputs") or {}
            if not isinstance(conditions, dict) or not isinstance(outputs, dict):
                raise MalformedTableError(
                    f"rule {raw['rule_id']}: conditions and outputs must be objects"
                )
            try:
                priority = int(raw.get("priority") or 0)
            except (TypeError, ValueError):
                raise MalformedTableError(
                    f"rule {raw['rule_id']}: priority must be an integer"
                ) from None
            rules.append(DecisionRule(
                rule_id=str(raw["rule_id"]),
                priority=priority,
                conditions=dict(conditions),
                outputs=dict(outputs),
                description=raw.get("description"),
            ))

        rule_ids = [r.rule_id for r in rules]
        if len(set(rule_ids)) != len(rule_ids):
            raise MalformedTableError(f"decision table #{index + 1}: duplicate rule_id")

        default_rule_id = data.get("default_rule_id")
        if default_rule_id and default_rule_id not in rule_ids:
            raise MalformedTableError(
                f"decision table #{index + 1}: default_rule_id {default_rule_id!r} names no rule"
            )

        return cls(
            name=data.get("name") or f"table-{index + 1}",
            hit_policy=policy,
            inputs=tuple(
                DecisionInput(name=i["name"], type=i.get("type", "string"),
                              description=i.get("description"))
                for i in (data.get("inputs") or []) if isinstance(i, dict) and i.get("name")
            ),
            outputs=tuple(
                DecisionOutput(name=o["name"], type=o.get("type", "string"),
                               default_value=o.get("default_value"),
                               description=o.get("description"))
                for o in (data.get("outputs") or []) if isinstance(o, dict) and o.get("name")
            ),
            rules=tuple(rules),
            default_rule_id=default_rule_id,
        )

    def rule(self, rule_id: str) -> DecisionRule | None:
        return next((r for r in self.rules if r.rule_id == rule_id), None)

    def list_fields(self) -> set[str]:
        return {o.name for o in self.outputs if o.is_list}


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class TableResult:
    """Outcome of one table."""
    table: str
    hit_policy: HitPolicy
    outputs: dict = field(default_factory=dict)
    matched_rules: list[str] = field(default_factory=list)
    used_default: bool = False

    @property
    def matched(self) -> bool:
        return bool(self.matched_rules)

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "hit_policy": self.hit_policy.value,
            "outputs": self.outputs,
            "matched_rules": self.matched_rules,
            "used_default": self.used_default,
        }


@dataclass
class EvaluationResult:
    """Outcome across every table of a template."""
    outputs: dict = field(default_factory=dict)
    matched_rules: list[str] = field(default_factory=list)
    trace: list[TableResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "outputs": self.outputs,
            "matched_rules": self.matched_rules,
            "trace": [t.to_dict() for t in self.trace],
        }


def evaluate_table(table: DecisionTable, metadata: dict) -> TableResult:
    """Apply *table*'s hit policy to *metadata*."""
    metadata = metadata or {}
    result = TableResult(table=table.name, hit_policy=table.hit_policy)

    rules = table.rules
    if table.hit_policy is HitPolicy.PRIORITY:
        rules = tuple(sorted(rules, key=lambda r: -r.priority))

    if table.hit_policy in (HitPolicy.FIRST, HitPolicy.PRIORITY):
        for rule in rules:
            if rule.matches(metadata):
                result.outputs = dict(rule.outputs)
                result.matched_rules = [rule.rule_id]
                break
    else:
        list_fields = table.list_fields()
        collect = table.hit_policy is HitPolicy.COLLECT
        for rule in rules:
            if not rule.matches(metadata):
                continue
            result.matched_rules.append(rule.rule_id)
            _merge(result.outputs, rule.outputs, collect=collect, list_fields=list_fields)

    if not result.matched:
        result.outputs = _defaults(table)
        result.used_default = True

    logger.debug("Table %s (%s): matched=%s", table.name, table.hit_policy.value,
                 result.matched_rules)
    return result


def evaluate_tables(tables: list[DecisionTable], metadata: dict) -> EvaluationResult:
    """Evaluate tables in declared order.

    The first table with a match supplies the outputs.  COLLECT tables add
    their matches to the running outputs and evaluation moves on to the next
    table.  When nothing matches anywhere, the first table's defaults apply.
    """
    final = EvaluationResult()
    decided = False
    for table in tables:
        table_result = evaluate_table(table, metadata)
        final.trace.append(table_result)
        if not table_result.matched:
            continue
        final.matched_rules.extend(table_result.matched_rules)
        if table.hit_policy is HitPolicy.COLLECT:
            _merge(final.outputs, table_result.outputs, collect=True,
                   list_fields=table.list_fields())
            decided = True
            continue
        _merge(final.outputs, table_result.outputs, collect=False, list_fields=set())
        decided = True
        break

    if not decided and final.trace:
        final.outputs = dict(final.trace[0].outputs)
    return final


# ── Merge helpers ────────────────────────────────────────────────────────────

def _merge(target: dict, outputs: dict, *, collect: bool, list_fields: set[str]) -> None:
    for key, value in outputs.items():
        if not collect or key not in target:
            target[key] = list(value) if isinstance(value, list) else value
            continue
        existing = target[key]
        if key in list_fields or isinstance(existing, list) or isinstance(value, list):
            combined = _as_list(existing)
            for item in _as_list(value):
                if item not in combined:
                    combined.append(item)
            target[key] = combined
        else:
            target[key] = value


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def _defaults(table: DecisionTable) -> dict:
    if table.default_rule_id:
        default_rule = table.rule(table.default_rule_id)
        if default_rule is not None:
            return dict(default_rule.outputs)
    return {o.name: o.default_value for o in table.outputs if o.default_value is not None}
