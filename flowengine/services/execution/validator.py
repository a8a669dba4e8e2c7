"""Graph validation.

Runs once when a graph is saved. Collects every violation instead of stopping
at the first so the editor can show all of them at once. Checks, in order:

    (a) node ids are unique and every edge endpoint exists
    (b) exactly one node has in-degree 0, and it is a trigger
    (c) no cycle (iterative DFS, white/grey/black colouring)
    (d) each node's config satisfies its kind's schema
    (e) edges leaving a condition node name one of its branch labels
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from pydantic import ValidationError

from flowengine.constants import BRANCHING_KINDS, TRIGGER_CAPABLE_KINDS
from flowengine.core.errors import GraphValidationError, ValidationIssue
from flowengine.core.logging import get_logger
from flowengine.models.graph import WorkflowGraph
from flowengine.models.nodes import ConditionConfig, validate_node_config

logger = get_logger(__name__)

WHITE, GREY, BLACK = 0, 1, 2


@dataclass
class ValidationReport:
    ok: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "issues": [i.to_dict() for i in self.issues]}


def validate_graph(graph: WorkflowGraph) -> ValidationReport:
    """Validate ``graph`` and return every issue found."""
    issues: List[ValidationIssue] = []

    # (a) identity and edge endpoints
    node_ids: Set[str] = set()
    for i, node in enumerate(graph.nodes):
        if node.id in node_ids:
            issues.append(ValidationIssue("DUPLICATE_NODE_ID",
                                          f"Node id '{node.id}' is used more than once",
                                          f"nodes[{i}].id"))
        node_ids.add(node.id)

    edges = []
    for i, edge in enumerate(graph.edges):
        dangling = [end for end in (edge.source, edge.target) if end not in node_ids]
        for end in dangling:
            issues.append(ValidationIssue("UNKNOWN_EDGE_ENDPOINT",
                                          f"Edge references unknown node '{end}'",
                                          f"edges[{i}]"))
        if not dangling:
            edges.append(edge)

    # (b) single trigger entry
    nodes = graph.node_map()
    targets = {e.target for e in edges}
    entries = sorted(nid for nid in nodes if nid not in targets)
    if not entries:
        issues.append(ValidationIssue("NO_ENTRY_NODE", "Graph has no node without incoming edges"))
    elif len(entries) > 1:
        issues.append(ValidationIssue("MULTIPLE_ENTRY_NODES",
                                      f"Graph has {len(entries)} entry nodes: {', '.join(entries)}"))
    for nid in entries:
        if nodes[nid].kind.value not in TRIGGER_CAPABLE_KINDS:
            issues.append(ValidationIssue("ENTRY_NOT_TRIGGER",
                                          f"Entry node '{nid}' is a '{nodes[nid].kind.value}' node, not a trigger",
                                          f"nodes.{nid}"))
    for nid in sorted(targets):
        if nodes[nid].kind.value in TRIGGER_CAPABLE_KINDS:
            issues.append(ValidationIssue("TRIGGER_HAS_INPUTS",
                                          f"Trigger node '{nid}' has incoming edges",
                                          f"nodes.{nid}"))

    # (c) acyclicity
    for cycle in find_cycles(list(nodes), [(e.source, e.target) for e in edges]):
        issues.append(ValidationIssue("CYCLE_DETECTED",
                                      f"Cycle detected: {' -> '.join(cycle)}",
                                      f"nodes.{cycle[0]}"))

    # (d) per-kind config
    configs = {}
    for node in graph.nodes:
        try:
            configs[node.id] = validate_node_config(node.kind.value, node.config)
        except ValidationError as e:
            for err in e.errors():
                loc = list(err.get("loc", ()))
                if loc and loc[0] == node.kind.value:
                    loc = loc[1:]
                path = ".".join(["nodes", node.id, "config", *(str(p) for p in loc)])
                issues.append(ValidationIssue("INVALID_CONFIG", err.get("msg", "invalid value"), path))

    # (e) branch ports
    for i, edge in enumerate(edges):
        if edge.source_port is None:
            continue
        source = nodes[edge.source]
        if source.kind.value not in BRANCHING_KINDS:
            issues.append(ValidationIssue("UNKNOWN_BRANCH_PORT",
                                          f"Edge uses port '{edge.source_port}' but '{source.id}' does not branch",
                                          f"edges[{i}].source_port"))
            continue
        config = configs.get(source.id)
        if isinstance(config, ConditionConfig) and edge.source_port not in config.branch_labels():
            issues.append(ValidationIssue("UNKNOWN_BRANCH_PORT",
                                          f"Condition '{source.id}' has no branch '{edge.source_port}'",
                                          f"edges[{i}].source_port"))

    if issues:
        logger.info("Graph validation failed", workflow_id=graph.id, issue_count=len(issues),
                    codes=sorted({i.code for i in issues}))
    return ValidationReport(ok=not issues, issues=issues)


def ensure_valid(graph: WorkflowGraph) -> None:
    """Raise ``GraphValidationError`` with every issue when ``graph`` is invalid."""
    report = validate_graph(graph)
    if not report.ok:
        raise GraphValidationError(report.issues)


def find_cycles(node_ids: List[str], edges: List[tuple]) -> List[List[str]]:
    """Return one path per back edge found, e.g. ``["a", "b", "a"]``.

    Iterative depth-first traversal: a node is GREY while on the recursion
    stack, and reaching a GREY node closes a cycle.
    """
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for source, target in edges:
        adjacency[source].append(target)
    for source in adjacency:
        adjacency[source].sort()

    colour = {nid: WHITE for nid in node_ids}
    cycles: List[List[str]] = []
    seen: Set[frozenset] = set()

    for root in sorted(node_ids):
        if colour[root] != WHITE:
            continue
        colour[root] = GREY
        path = [root]
        stack = [(root, iter(adjacency[root]))]
        while stack:
            current, successors = stack[-1]
            advanced = False
            for succ in successors:
                if colour[succ] == WHITE:
                    colour[succ] = GREY
                    path.append(succ)
                    stack.append((succ, iter(adjacency[succ])))
                    advanced = True
                    break
                if colour[succ] == GREY:
                    cycle = path[path.index(succ):] + [succ]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
            if not advanced:
                colour[current] = BLACK
                path.pop()
                stack.pop()
    return cycles
