"""Tests for condition rules and branch selection."""

import pytest

from flowengine.core.errors import ExecutionError
from flowengine.services.execution import (
    choose_branches, evaluate_condition, evaluate_rule, get_nested_value,
)

RULES = [
    {"branch": "branchHigh", "field": "amount", "operator": "gt", "value": 100},
    {"branch": "branchVip", "field": "customer.tier", "operator": "eq", "value": "gold"},
]


class TestEvaluateCondition:
    @pytest.mark.parametrize("operator,actual,value,expected", [
        ("eq", 5, 5, True),
        ("neq", 5, 6, True),
        ("gt", "150", 100, True),
        ("lte", 100, 100, True),
        ("contains", "hello world", "world", True),
        ("contains", ["a", "b"], "c", False),
        ("in", "b", ["a", "b"], True),
        ("matches", "order-123", r"^order-\d+$", True),
        ("starts_with", "invoice", "inv", True),
        ("is_empty", [], None, True),
        ("is_number", True, None, False),
    ])
    def test_operators(self, operator, actual, value, expected):
        condition = {"field": "x", "operator": operator, "value": value}
        assert evaluate_condition(condition, {"x": actual}) is expected

    def test_missing_field_does_not_match_comparison(self):
        assert evaluate_condition({"field": "nope", "operator": "gt", "value": 1}, {}) is False
        assert evaluate_condition({"field": "nope", "operator": "not_exists"}, {}) is True

    def test_nested_lookup(self):
        data = {"items": [{"name": "a"}], "result": {"status": "ok"}}
        assert get_nested_value(data, "items.0.name") == "a"
        assert get_nested_value(data, "result.status") == "ok"
        assert get_nested_value(data, "items.3.name") is None

    def test_grouped_rule(self):
        rule = {"branch": "b", "logic": "or", "conditions": [
            {"field": "a", "operator": "eq", "value": 1},
            {"field": "b", "operator": "eq", "value": 2},
        ]}
        assert evaluate_rule(rule, {"a": 0, "b": 2})
        assert not evaluate_rule({**rule, "logic": "and"}, {"a": 0, "b": 2})


class TestChooseBranches:
    def test_first_match_wins(self):
        branch, branches = choose_branches(RULES, {"amount": 150, "customer": {"tier": "gold"}})
        assert branch == "branchHigh"
        assert branches == ["branchHigh"]

    def test_all_policy_returns_every_match(self):
        data = {"amount": 150, "customer": {"tier": "gold"}}
        branch, branches = choose_branches(RULES, data, policy="all")
        assert branch == "branchHigh"
        assert branches == ["branchHigh", "branchVip"]

    def test_default_when_nothing_matches(self):
        assert choose_branches(RULES, {"amount": 5}, default="branchLow") == ("branchLow", ["branchLow"])

    def test_no_match_without_default(self):
        with pytest.raises(ExecutionError) as exc_info:
            choose_branches(RULES, {"amount": 5})
        assert exc_info.value.code == "MISSING_DATA"
        assert not exc_info.value.retryable
