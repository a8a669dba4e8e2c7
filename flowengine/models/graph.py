"""Workflow graph models (pydantic v2).

Graphs are stored as plain id-indexed collections: nodes in a list, edges as
(source, target) id pairs. Acyclicity is never implied by the data shape; it
is enforced by the graph validator before a graph is stored.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class NodeKind(str, Enum):
    """Closed set of node kinds. Adding one means one variant plus one handler."""
    TRIGGER = "trigger"
    HTTP = "http"
    TRANSFORM = "transform"
    CONDITION = "condition"
    AI = "ai"
    DELAY = "delay"


class RetryPolicyModel(BaseModel):
    """Per-node retry override as submitted by the editor."""
    max_attempts: int = Field(default=3, ge=1, le=100)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=60.0, ge=0.0)
    jitter: float = Field(default=0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class Node(BaseModel):
    """One unit of work."""
    id: str = Field(min_length=1)
    kind: NodeKind
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicyModel] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    disabled: bool = False


class Edge(BaseModel):
    """Dependency from ``source`` to ``target``.

    ``source_port`` names a branch label of a condition node; an edge without
    a port is followed whenever the source succeeds.
    """
    source: str
    target: str
    source_port: Optional[str] = None
    target_port: Optional[str] = None


class WorkflowGraph(BaseModel):
    """A versioned workflow definition. Immutable once stored."""
    id: str = Field(min_length=1)
    name: Optional[str] = None
    version: int = Field(default=0, ge=0)
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    def node_map(self) -> Dict[str, Node]:
        return {n.id: n for n in self.nodes}
