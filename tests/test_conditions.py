"""
Condition evaluator unit tests.

Tests cover:
  - Numeric comparators and ranges (&&, ||)
  - String equality, bare tokens, set membership
  - contains / startsWith / endsWith / matches
  - Boolean literals
  - None values and unparsable conditions never match
"""
import pytest

from approvals.engine.conditions import evaluate


class TestNumeric:
    @pytest.mark.parametrize("value,condition,expected", [
        (15, "> 10", True),
        (10, "> 10", False),
        (10, ">= 10", True),
        (9.5, "< 10", True),
        (10, "<= 10", True),
        (10, "== 10", True),
        (10.00001, "== 10", True),
        (11, "!= 10", True),
        ("15", "> 10", True),
        (0, "== 0", True),
    ])
    def test_comparators(self, value, condition, expected):
        assert evaluate(value, condition) is expected

    def test_range_and(self):
        assert evaluate(25, "> 10 && <= 50") is True
        assert evaluate(50, "> 10 && <= 50") is True
        assert evaluate(51, "> 10 && <= 50") is False
        assert evaluate(10, "> 10 && <= 50") is False

    def test_range_or(self):
        assert evaluate(5, "< 10 || > 100") is True
        assert evaluate(150, "< 10 || > 100") is True
        assert evaluate(50, "< 10 || > 100") is False

    def test_ordering_comparator_on_text_is_false(self):
        assert evaluate("RETAIL", "> 10") is False


class TestStrings:
    def test_quoted_equality_is_case_insensitive(self):
        assert evaluate("retail", "== 'RETAIL'") is True
        assert evaluate("SME", "!= 'RETAIL'") is True
        assert evaluate("Retail", "!= 'RETAIL'") is False

    def test_bare_token(self):
        assert evaluate("HIGH", "high") is True
        assert evaluate("LOW", "HIGH") is False

    def test_membership(self):
        assert evaluate("sme", "RETAIL|SME|CORPORATE") is True
        assert evaluate("PRIVATE", "RETAIL|SME") is False
        assert evaluate(2, "1|2|3") is True

    def test_string_operators(self):
        assert evaluate("Premium Checking", "contains 'Checking'") is True
        assert evaluate("Premium Checking", "startsWith 'Premium'") is True
        assert evaluate("Premium Checking", "endsWith 'Savings'") is False
        assert evaluate("ACC-1234", "matches 'ACC-[0-9]+'") is True
        assert evaluate("ACC-12x", "matches 'ACC-[0-9]+'") is False

    def test_string_operators_are_case_sensitive(self):
        assert evaluate("premium checking", "contains 'Checking'") is False

    def test_regex_alternation_is_not_membership(self):
        assert evaluate("SAVINGS", "matches 'CHECKING|SAVINGS'") is True

    def test_string_operator_on_number_is_false(self):
        assert evaluate(42, "contains '4'") is False


class TestBooleans:
    def test_boolean_literals(self):
        assert evaluate(True, "true") is True
        assert evaluate(False, "false") is True
        assert evaluate(True, "false") is False

    def test_boolean_against_non_boolean_token(self):
        assert evaluate(True, "YES") is False


class TestNeverMatches:
    def test_none_value(self):
        assert evaluate(None, "> 10") is False
        assert evaluate(None, "RETAIL") is False

    def test_empty_or_missing_condition(self):
        assert evaluate(5, "") is False
        assert evaluate(5, None) is False

    def test_unparsable_condition(self):
        assert evaluate(5, ">>> 10") is False
        assert evaluate("x", "matches '('") is False
