"""Tests for graph validation at save time."""

import pytest

from flowengine.core.errors import GraphValidationError
from flowengine.services.execution import ensure_valid, find_cycles, validate_graph
from flowengine.services.execution.scheduler import topological_order
from tests.builders import edge, graph, linear_graph, node


def codes(report):
    return [issue.code for issue in report.issues]


class TestStructure:
    def test_linear_graph_is_valid(self):
        report = validate_graph(linear_graph())
        assert report.ok
        assert report.to_dict() == {"ok": True, "issues": []}

    def test_cycle_is_rejected_with_path(self):
        """A back edge anywhere in the graph fails validation."""
        g = graph([
            node("start", "trigger"),
            node("a", "transform", {"expression": "1"}),
            node("b", "transform", {"expression": "2"}),
        ], [edge("start", "a"), edge("a", "b"), edge("b", "a")])

        report = validate_graph(g)

        assert not report.ok
        assert codes(report) == ["CYCLE_DETECTED"]
        assert "a -> b -> a" in report.issues[0].message

    def test_multiple_entry_nodes(self):
        g = graph([node("t1", "trigger"), node("t2", "trigger")], [])
        assert "MULTIPLE_ENTRY_NODES" in codes(validate_graph(g))

    def test_entry_must_be_trigger(self):
        g = graph([node("fetch", "http", {"url": "https://example.com"})], [])
        report = validate_graph(g)
        assert codes(report) == ["ENTRY_NOT_TRIGGER"]
        assert report.issues[0].path == "nodes.fetch"

    def test_trigger_with_incoming_edge(self):
        g = graph([
            node("start", "trigger"),
            node("a", "transform", {"expression": "1"}),
            node("late", "trigger"),
        ], [edge("start", "a"), edge("a", "late")])
        assert "TRIGGER_HAS_INPUTS" in codes(validate_graph(g))

    def test_unknown_edge_endpoint(self):
        g = graph([node("start", "trigger")], [edge("start", "ghost")])
        report = validate_graph(g)
        assert codes(report) == ["UNKNOWN_EDGE_ENDPOINT"]
        assert report.issues[0].path == "edges[0]"

    def test_duplicate_node_ids(self):
        g = graph([node("start", "trigger"), node("start", "trigger")], [])
        assert "DUPLICATE_NODE_ID" in codes(validate_graph(g))

    def test_collects_every_issue(self):
        """Validation reports all problems at once, not just the first."""
        g = graph([
            node("start", "trigger"),
            node("fetch", "http", {}),
            node("calc", "transform", {}),
        ], [edge("start", "fetch"), edge("start", "calc")])

        paths = {issue.path for issue in validate_graph(g).issues}

        assert "nodes.fetch.config.url" in paths
        assert "nodes.calc.config" in paths


class TestConfigSchemas:
    def test_missing_required_field_names_path(self):
        g = graph([node("start", "trigger"), node("fetch", "http", {"method": "GET"})],
                  [edge("start", "fetch")])

        report = validate_graph(g)

        assert codes(report) == ["INVALID_CONFIG"]
        assert report.issues[0].path == "nodes.fetch.config.url"

    def test_unsupported_http_method(self):
        g = graph([node("start", "trigger"),
                   node("fetch", "http", {"url": "https://example.com", "method": "BREW"})],
                  [edge("start", "fetch")])
        assert codes(validate_graph(g)) == ["INVALID_CONFIG"]

    def test_templated_numeric_field_is_accepted(self):
        g = graph([node("start", "trigger"),
                   node("wait", "delay", {"seconds": "{{ trigger.wait }}"})],
                  [edge("start", "wait")])
        assert validate_graph(g).ok

    def test_plain_string_in_numeric_field_is_rejected(self):
        g = graph([node("start", "trigger"), node("wait", "delay", {"seconds": "soon"})],
                  [edge("start", "wait")])
        assert not validate_graph(g).ok

    def test_secret_reference_accepted_for_ai_key(self):
        g = graph([node("start", "trigger"),
                   node("ask", "ai", {"prompt": "hi", "api_key": {"$secret": "OPENAI_API_KEY"}})],
                  [edge("start", "ask")])
        assert validate_graph(g).ok

    def test_unknown_condition_operator(self):
        g = graph([node("start", "trigger"),
                   node("check", "condition", {"rules": [{"branch": "x", "field": "a",
                                                          "operator": "roughly", "value": 1}]})],
                  [edge("start", "check")])
        assert codes(validate_graph(g)) == ["INVALID_CONFIG"]


class TestBranchPorts:
    def _branching(self, port):
        return graph([
            node("start", "trigger"),
            node("check", "condition", {
                "rules": [{"branch": "high", "field": "amount", "operator": "gt", "value": 100}],
                "default": "low",
            }),
            node("a", "transform", {"expression": "1"}),
        ], [edge("start", "check"), edge("check", "a", port)])

    def test_declared_ports_are_valid(self):
        assert validate_graph(self._branching("high")).ok
        assert validate_graph(self._branching("low")).ok

    def test_unknown_port_is_rejected(self):
        report = validate_graph(self._branching("medium"))
        assert codes(report) == ["UNKNOWN_BRANCH_PORT"]
        assert report.issues[0].path == "edges[1].source_port"

    def test_port_on_non_branching_node(self):
        g = graph([node("start", "trigger"), node("a", "transform", {"expression": "1"})],
                  [edge("start", "a", "yes")])
        assert codes(validate_graph(g)) == ["UNKNOWN_BRANCH_PORT"]


class TestHelpers:
    def test_ensure_valid_raises_with_issues(self):
        g = graph([node("fetch", "http", {})], [])
        with pytest.raises(GraphValidationError) as exc_info:
            ensure_valid(g)
        assert exc_info.value.code == "VALIDATION_FAILED"
        assert len(exc_info.value.to_dict()["issues"]) == len(exc_info.value.issues) >= 2

    def test_find_cycles_self_loop(self):
        assert find_cycles(["a"], [("a", "a")]) == [["a", "a"]]

    def test_topological_order_breaks_ties_by_id(self):
        """Simultaneously-ready nodes are ordered by ascending id."""
        g = graph([
            node("start", "trigger"),
            node("zeta", "transform", {"expression": "1"}),
            node("alpha", "transform", {"expression": "1"}),
            node("mid", "transform", {"expression": "1"}),
        ], [edge("start", "zeta"), edge("start", "alpha"), edge("alpha", "mid"), edge("zeta", "mid")])

        assert topological_order(g) == ["start", "alpha", "zeta", "mid"]

    def test_topological_order_rejects_cycle(self):
        g = graph([node("a", "transform", {"expression": "1"}), node("b", "transform", {"expression": "1"})],
                  [edge("a", "b"), edge("b", "a")])
        with pytest.raises(GraphValidationError):
            topological_order(g)
