"""Execution engine package.

Durable workflow execution with:
- Graph validation at save time (DFS cycle detection, per-kind schemas)
- Template resolution against an isolated per-execution namespace
- Retry with exponential backoff and a retryable/non-retryable taxonomy
- Redis-backed checkpoints, attempt logs and leases for crash recovery
- Runtime conditional branching

The scheduler and recovery sweeper live in ``.scheduler`` and ``.recovery``;
they depend on the node dispatcher, which itself imports this package.
"""

from .models import (
    ExecutionStatus,
    NodeStatus,
    ExecutionContext,
    NodeResult,
    RetryPolicy,
    AttemptLogEntry,
    DLQEntry,
)
from .validator import (
    ValidationReport,
    validate_graph,
    ensure_valid,
    find_cycles,
)
from .templates import (
    TemplateResolver,
    HELPERS,
)
from .store import ExecutionStore
from .retry import RetryController
from .conditions import (
    evaluate_condition,
    evaluate_conditions,
    evaluate_rule,
    choose_branches,
    get_nested_value,
)
from .dlq import (
    DLQHandler,
    NullDLQHandler,
    DLQHandlerProtocol,
    create_dlq_handler,
)

__all__ = [
    # Models
    "ExecutionStatus",
    "NodeStatus",
    "ExecutionContext",
    "NodeResult",
    "RetryPolicy",
    "AttemptLogEntry",
    "DLQEntry",
    # Validation
    "ValidationReport",
    "validate_graph",
    "ensure_valid",
    "find_cycles",
    # Templates
    "TemplateResolver",
    "HELPERS",
    # Store
    "ExecutionStore",
    # Retry
    "RetryController",
    # Conditions
    "evaluate_condition",
    "evaluate_conditions",
    "evaluate_rule",
    "choose_branches",
    "get_nested_value",
    # DLQ
    "DLQHandler",
    "NullDLQHandler",
    "DLQHandlerProtocol",
    "create_dlq_handler",
]
