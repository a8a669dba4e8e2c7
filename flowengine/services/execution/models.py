"""Execution engine state models.

Per-node lifecycle follows a Conductor-style task state machine; every model
is a JSON-serializable dataclass so a checkpoint written by one process can be
reloaded by another.
"""

import json
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from flowengine.core.logging import get_logger

if TYPE_CHECKING:
    from flowengine.models.graph import RetryPolicyModel, WorkflowGraph

logger = get_logger(__name__)


class ExecutionStatus(str, Enum):
    """Execution states.

    State transitions:
        PENDING -> RUNNING <-> RETRYING
        RUNNING -> COMPLETED | FAILED | CANCELLED
    """
    PENDING = "pending"        # Created, no node dispatched yet
    RUNNING = "running"        # At least one node dispatched
    RETRYING = "retrying"      # A node is waiting out a backoff delay
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class NodeStatus(str, Enum):
    """Per-node states inside one execution."""
    PENDING = "pending"        # Waiting on predecessors
    READY = "ready"            # All predecessors terminal, not yet dispatched
    RUNNING = "running"        # Attempt in flight
    RETRYING = "retrying"      # Waiting out a backoff delay
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"        # Unchosen branch, disabled, or no active input
    CANCELLED = "cancelled"    # Stopped by a cancel request

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.FAILED,
                        NodeStatus.SKIPPED, NodeStatus.CANCELLED)


@dataclass
class RetryPolicy:
    """Retry configuration for node execution.

    Implements exponential backoff with jitter.
    Delay before attempt k+1: min(max_delay, initial_delay * multiplier^(k-1)) +/- jitter
    """
    max_attempts: int = 3
    backoff_multiplier: float = 2.0
    initial_delay: float = 1.0       # seconds
    max_delay: float = 60.0          # seconds
    jitter: float = 0.2              # fraction of the base delay

    def base_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-indexed), without jitter."""
        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(self.max_delay, delay)

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay after failed attempt ``attempt`` with +/- jitter applied."""
        base = self.base_delay(attempt)
        if not self.jitter or not base:
            return base
        rng = rng or random
        return max(0.0, base * (1 + rng.uniform(-self.jitter, self.jitter)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_multiplier": self.backoff_multiplier,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=data.get("max_attempts", 3),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
            initial_delay=data.get("initial_delay", 1.0),
            max_delay=data.get("max_delay", 60.0),
            jitter=data.get("jitter", 0.2),
        )

    @classmethod
    def from_model(cls, model: Optional["RetryPolicyModel"]) -> "RetryPolicy":
        """Node override, or the default policy when the node sets none."""
        if model is None:
            return cls()
        return cls.from_dict(model.model_dump())


@dataclass
class AttemptLogEntry:
    """Append-only record of one dispatch attempt."""
    execution_id: str
    node_id: str
    attempt: int
    outcome: str                      # "success" | "failure"
    error_code: Optional[str] = None
    error: Optional[str] = None
    delay: float = 0.0                # wait that preceded this attempt
    duration: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "error_code": self.error_code,
            "error": self.error,
            "delay": self.delay,
            "duration": self.duration,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttemptLogEntry":
        return cls(
            execution_id=data["execution_id"],
            node_id=data["node_id"],
            attempt=data["attempt"],
            outcome=data["outcome"],
            error_code=data.get("error_code"),
            error=data.get("error"),
            delay=data.get("delay", 0.0),
            duration=data.get("duration", 0.0),
            timestamp=data.get("timestamp", time.time()),
        )


@dataclass
class NodeResult:
    """Tracks execution state and outcome for a single node."""
    node_id: str
    kind: str
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None
    duration: float = 0.0
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    branch: Optional[str] = None      # chosen port for condition nodes
    branches: List[str] = field(default_factory=list)

    def active_ports(self) -> List[str]:
        """Ports whose edges are followed after this node succeeded."""
        if self.branches:
            return list(self.branches)
        return [self.branch] if self.branch else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "kind": self.kind,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "duration": self.duration,
            "attempts": self.attempts,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "branch": self.branch,
            "branches": self.branches,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeResult":
        return cls(
            node_id=data["node_id"],
            kind=data["kind"],
            status=NodeStatus(data["status"]),
            output=data.get("output"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            retryable=data.get("retryable"),
            duration=data.get("duration", 0.0),
            attempts=data.get("attempts", 0),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            branch=data.get("branch"),
            branches=data.get("branches", []),
        )


@dataclass
class ExecutionContext:
    """Isolated, exclusively-owned state of one workflow run.

    Passed explicitly to every component; only the scheduler holding the
    execution lease mutates it, and it is checkpointed after each node
    transition.
    """
    execution_id: str
    workflow_id: str
    workflow_version: int = 0
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_payload: Dict[str, Any] = field(default_factory=dict)

    node_results: Dict[str, NodeResult] = field(default_factory=dict)
    execution_order: List[str] = field(default_factory=list)

    # Timing
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # Terminal error: {code, message, node_id?, attempts?}
    error: Optional[Dict[str, Any]] = None

    # Outbox: events checkpointed with this state but not yet published
    pending_events: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def create(cls, graph: "WorkflowGraph", trigger_payload: Optional[Dict[str, Any]] = None,
               execution_id: Optional[str] = None) -> "ExecutionContext":
        """Factory method to create a fresh context with every node pending."""
        ctx = cls(
            execution_id=execution_id or str(uuid.uuid4()),
            workflow_id=graph.id,
            workflow_version=graph.version,
            trigger_payload=dict(trigger_payload or {}),
        )
        for node in graph.nodes:
            ctx.node_results[node.id] = NodeResult(node_id=node.id, kind=node.kind.value)
        return ctx

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    @property
    def outputs(self) -> Dict[str, Any]:
        """Outputs of successful nodes, keyed by node id."""
        return {nid: r.output for nid, r in self.node_results.items()
                if r.status == NodeStatus.SUCCESS}

    def pending_nodes(self) -> List[str]:
        return sorted(nid for nid, r in self.node_results.items()
                      if r.status in (NodeStatus.PENDING, NodeStatus.READY))

    def running_nodes(self) -> List[str]:
        return sorted(nid for nid, r in self.node_results.items()
                      if r.status in (NodeStatus.RUNNING, NodeStatus.RETRYING))

    def terminal_nodes(self) -> List[str]:
        return sorted(nid for nid, r in self.node_results.items() if r.status.is_terminal)

    def all_nodes_terminal(self) -> bool:
        return all(r.status.is_terminal for r in self.node_results.values())

    @property
    def settled(self) -> bool:
        """Terminal, with every event of the final checkpoint published."""
        return self.status.is_terminal and not self.pending_events

    def namespace(self) -> Dict[str, Any]:
        """Read-only tree that templates resolve against."""
        return {
            "trigger": self.trigger_payload,
            "nodes": self.outputs,
            "execution": {
                "id": self.execution_id,
                "workflow_id": self.workflow_id,
                "workflow_version": self.workflow_version,
            },
        }

    # -------------------------------------------------------------------------
    # Mutation (scheduler only)
    # -------------------------------------------------------------------------

    def set_node_status(self, node_id: str, status: NodeStatus) -> NodeResult:
        result = self.node_results[node_id]
        now = time.time()
        result.status = status
        self.updated_at = now
        if status == NodeStatus.RUNNING and result.started_at is None:
            result.started_at = now
        elif status.is_terminal:
            result.completed_at = now
            if result.started_at is not None:
                result.duration = round(now - result.started_at, 4)
        return result

    def set_status(self, status: ExecutionStatus) -> None:
        now = time.time()
        self.status = status
        self.updated_at = now
        if status == ExecutionStatus.RUNNING and self.started_at is None:
            self.started_at = now
        elif status.is_terminal:
            self.completed_at = now

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict for checkpoint storage."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "trigger_payload": self.trigger_payload,
            "node_results": {k: v.to_dict() for k, v in self.node_results.items()},
            "execution_order": self.execution_order,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "pending_events": self.pending_events,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionContext":
        """Create from dict (checkpoint deserialization)."""
        ctx = cls(
            execution_id=data["execution_id"],
            workflow_id=data["workflow_id"],
            workflow_version=data.get("workflow_version", 0),
            status=ExecutionStatus(data["status"]),
            trigger_payload=data.get("trigger_payload") or {},
            execution_order=data.get("execution_order", []),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            pending_events=list(data.get("pending_events") or []),
        )
        for node_id, node_data in data.get("node_results", {}).items():
            ctx.node_results[node_id] = NodeResult.from_dict(node_data)
        return ctx

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "ExecutionContext":
        return cls.from_dict(json.loads(json_str))


@dataclass
class DLQEntry:
    """Dead Letter Queue entry for a node that exhausted its retries.

    Stores the failure for manual review; inputs are the node's config keys
    only, never resolved values.
    """
    id: str
    execution_id: str
    workflow_id: str
    node_id: str
    kind: str
    error: str
    error_code: Optional[str]
    attempts: int
    config_keys: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "kind": self.kind,
            "error": self.error,
            "error_code": self.error_code,
            "attempts": self.attempts,
            "config_keys": self.config_keys,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DLQEntry":
        return cls(
            id=data["id"],
            execution_id=data["execution_id"],
            workflow_id=data["workflow_id"],
            node_id=data["node_id"],
            kind=data["kind"],
            error=data["error"],
            error_code=data.get("error_code"),
            attempts=data.get("attempts", 0),
            config_keys=data.get("config_keys", []),
            created_at=data.get("created_at", time.time()),
        )

    @classmethod
    def create(cls, ctx: ExecutionContext, result: NodeResult,
               config_keys: List[str]) -> "DLQEntry":
        """Factory method to create DLQ entry from a failed node."""
        return cls(
            id=str(uuid.uuid4()),
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow_id,
            node_id=result.node_id,
            kind=result.kind,
            error=result.error or "Unknown error",
            error_code=result.error_code,
            attempts=result.attempts,
            config_keys=sorted(config_keys),
        )
