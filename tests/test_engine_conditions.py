"""
Tests for logic-node condition evaluation and handle selection.
"""

import pytest

from campaign_engine.engine.conditions import evaluate, normalize_operator, select_handle
from campaign_engine.engine.models import Condition, LogicConfig


class TestEvaluate:
    """Single condition semantics."""

    def test_equality_is_case_insensitive_and_trimmed(self):
        """' tech ' equals 'TECH'."""
        assert evaluate({"intent": " tech "}, Condition("intent", "==", "TECH"))

    def test_missing_variable_is_false(self):
        """A variable that was never stored never matches."""
        assert not evaluate({}, Condition("intent", "==", "TECH"))
        assert not evaluate({}, Condition("intent", "!=", "TECH"))

    @pytest.mark.parametrize("operator,value,expected", [
        (">", "100", True),
        ("<", "100", False),
        (">=", "1500", True),
        ("<=", "1500,0", True),
    ])
    def test_numeric_comparison(self, operator, value, expected):
        """Numbers compare numerically, comma decimals accepted."""
        assert evaluate({"budget": "1500"}, Condition("budget", operator, value)) is expected

    @pytest.mark.parametrize("actual,operator,value", [
        ("cinco mil", ">", "1000"),
        ("abc", ">=", "5"),
        ("b", ">", "a"),
        ("1000", "<", "muito"),
        ("nan", "<=", "1"),
    ])
    def test_ordering_needs_numbers(self, actual, operator, value):
        """Ordering operators never match text."""
        assert evaluate({"budget": actual}, Condition("budget", operator, value)) is False

    def test_equality_falls_back_to_text(self):
        """== and != compare text when a side is not numeric."""
        assert evaluate({"plan": "Gold "}, Condition("plan", "==", "gold"))
        assert evaluate({"plan": "gold"}, Condition("plan", "!=", "1000"))

    def test_contains(self):
        """contains / not_contains work on lowercased text."""
        variables = {"last_message": "Quero saber de TECNOLOGIA"}
        assert evaluate(variables, Condition("last_message", "contains", "tecnologia"))
        assert not evaluate(variables, Condition("last_message", "not_contains", "tecnologia"))

    def test_exists(self):
        """exists / not_exists treat blank values as absent."""
        assert evaluate({"email": "a@b.c"}, Condition("email", "exists"))
        assert evaluate({"email": "  "}, Condition("email", "not_exists"))
        assert evaluate({}, Condition("email", "not_exists"))
        assert not evaluate({}, Condition("email", "exists"))

    def test_matches(self):
        """matches is a case-insensitive regex search."""
        assert evaluate({"phone": "+55 11 9999"}, Condition("phone", "matches", r"^\+55"))
        assert evaluate({"intent": "Tech"}, Condition("intent", "regex", "^tech$"))

    def test_invalid_regex_is_false(self):
        """A broken pattern evaluates to false instead of raising."""
        assert not evaluate({"x": "abc"}, Condition("x", "matches", "(["))

    def test_unknown_operator_is_false(self):
        """Unknown operators never match."""
        assert not evaluate({"x": "1"}, Condition("x", "between", "1"))

    def test_operator_aliases(self):
        """Editor operator names map to canonical ones."""
        assert normalize_operator("variable_matches") == "=="
        assert normalize_operator("equals") == "=="
        assert normalize_operator("not_equals") == "!="
        assert normalize_operator(None) == "=="


class TestSelectHandle:
    """Handle chosen by a logic node."""

    def test_single_mode_true_false(self):
        """Single mode selects 'true' or 'false'."""
        config = LogicConfig.from_data({"variable": "intent", "value": "TECH", "condition": "variable_matches"})
        assert select_handle(config, {"intent": "TECH"}) == "true"
        assert select_handle(config, {"intent": "SAUDE"}) == "false"
        assert select_handle(config, {}) == "false"

    def test_multi_mode_first_match(self):
        """Multi mode selects output-<i> of the first matching condition."""
        config = LogicConfig.from_data({"conditions": [
            {"variable": "intent", "operator": "==", "value": "TECH"},
            {"variable": "intent", "operator": "==", "value": "SAUDE"},
            {"variable": "intent", "operator": "exists"},
        ]})
        assert select_handle(config, {"intent": "saude"}) == "output-1"
        assert select_handle(config, {"intent": "outro"}) == "output-2"

    def test_multi_mode_no_match(self):
        """Multi mode falls through to output-<n>."""
        config = LogicConfig.from_data({"conditions": [
            {"variable": "intent", "operator": "==", "value": "TECH"},
        ]})
        assert select_handle(config, {}) == "output-1"
