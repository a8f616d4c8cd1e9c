"""
Condition evaluator for decision-table rules.

Evaluates one metadata value against one condition string.  The grammar is
deliberately small:

    > 10            numeric comparators  (>, <, >=, <=, ==, !=)
    > 10 && <= 50   numeric range        (both sides must hold; || = either)
    == 'RETAIL'     string equality      (case-insensitive)
    != 'RETAIL'     string inequality    (case-insensitive)
    RETAIL          bare token equality  (case-insensitive)
    A|B|C           set membership       (case-insensitive)
    contains 'x'    startsWith 'x'  endsWith 'x'  matches 're'   (case-sensitive)
    true / false    boolean literal

Usage:
    from approvals.engine.conditions import evaluate
    evaluate(15, "> 10")              # True
    evaluate("retail", "RETAIL|SME")  # True
    evaluate(None, "> 10")            # False

``evaluate`` never raises: an unparsable condition, a None value or a type
mismatch all evaluate to False.  Absent metadata fields are passed in as None,
so a rule referencing a missing field never matches.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal

logger = logging.getLogger(__name__)

# ── Patterns ─────────────────────────────────────────────────────────────────

_RANGE = re.compile(r"^([><=!]+)\s*(.+?)\s*(&&|\|\|)\s*([><=!]+)\s*(.+)$")
_STRING_OP = re.compile(
    r"^(contains|startswith|endswith|matches)\s+(['\"])(.*)\2$", re.IGNORECASE,
)
_COMPARISON = re.compile(r"^([><=!]+)\s*(.+)$")

_NUMERIC_OPERATORS = frozenset({">", "<", ">=", "<=", "==", "!="})
_EQUALITY_TOLERANCE = 0.0001


def evaluate(value, condition) -> bool:
    """Return True when *value* satisfies *condition*."""
    if value is None or condition is None:
        return False
    cond = str(condition).strip()
    if not cond:
        return False
    try:
        return _evaluate(value, cond)
    except (ValueError, TypeError, ArithmeticError, re.error) as exc:
        logger.debug("Condition %r failed on value %r: %s", cond, value, exc)
        return False


def _evaluate(value, cond: str) -> bool:
    m = _RANGE.match(cond)
    if m:
        op1, rhs1, joiner, op2, rhs2 = m.groups()
        left = _compare_numeric(value, op1, rhs1)
        right = _compare_numeric(value, op2, rhs2)
        return (left and right) if joiner == "&&" else (left or right)

    m = _STRING_OP.match(cond)
    if m:
        if not isinstance(value, str):
            return False
        op, _, operand = m.groups()
        op = op.lower()
        if op == "contains":
            return operand in value
        if op == "startswith":
            return value.startswith(operand)
        if op == "endswith":
            return value.endswith(operand)
        return re.fullmatch(operand, value) is not None

    if "|" in cond:
        target = _string_form(value).lower()
        return any(_unquote(tok).lower() == target for tok in cond.split("|") if tok.strip())

    m = _COMPARISON.match(cond)
    if m:
        op, rhs = m.group(1), m.group(2).strip()
        if op not in _NUMERIC_OPERATORS:
            return False
        return _compare(value, op, rhs)

    # Bare token: boolean literal or case-insensitive equality
    token = _unquote(cond)
    if isinstance(value, bool):
        if token.lower() not in ("true", "false"):
            return False
        return value is (token.lower() == "true")
    number = _to_number(value)
    if number is not None and _to_number(token) is not None:
        return abs(number - _to_number(token)) < _EQUALITY_TOLERANCE
    return _string_form(value).lower() == token.lower()


def _compare(value, op: str, rhs: str) -> bool:
    operand = _unquote(rhs)
    if _to_number(value) is not None and _to_number(operand) is not None:
        return _compare_numeric(value, op, operand)
    # Non-numeric: only equality operators apply
    if op == "==":
        return _string_form(value).lower() == operand.lower()
    if op == "!=":
        return _string_form(value).lower() != operand.lower()
    return False


def _compare_numeric(value, op: str, rhs: str) -> bool:
    left = _to_number(value)
    right = _to_number(_unquote(rhs))
    if left is None or right is None:
        return False
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    if op == "<=":
        return left <= right
    if op == "==":
        return abs(left - right) < _EQUALITY_TOLERANCE
    if op == "!=":
        return abs(left - right) >= _EQUALITY_TOLERANCE
    return False


# ── Coercion helpers ─────────────────────────────────────────────────────────

def _to_number(value) -> float | None:
    """Numeric view of *value*; None for booleans and non-numeric strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _string_form(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _unquote(token: str) -> str:
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    return token
