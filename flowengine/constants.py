"""Centralized constants for node kinds, event types and defaults.

Single source of truth for the closed set of node kinds and the event
vocabulary shared by the scheduler, the publisher and the ingress.
"""

from typing import FrozenSet

# =============================================================================
# NODE KINDS
# =============================================================================

NODE_KIND_TRIGGER = 'trigger'
NODE_KIND_HTTP = 'http'
NODE_KIND_TRANSFORM = 'transform'
NODE_KIND_CONDITION = 'condition'
NODE_KIND_AI = 'ai'
NODE_KIND_DELAY = 'delay'

ALL_NODE_KINDS: FrozenSet[str] = frozenset([
    NODE_KIND_TRIGGER,
    NODE_KIND_HTTP,
    NODE_KIND_TRANSFORM,
    NODE_KIND_CONDITION,
    NODE_KIND_AI,
    NODE_KIND_DELAY,
])

# Kinds allowed as the single entry node of a graph
TRIGGER_CAPABLE_KINDS: FrozenSet[str] = frozenset([
    NODE_KIND_TRIGGER,
])

# Kinds whose output selects outgoing edges by port
BRANCHING_KINDS: FrozenSet[str] = frozenset([
    NODE_KIND_CONDITION,
])

# Kinds that may stream partial output
STREAMING_KINDS: FrozenSet[str] = frozenset([
    NODE_KIND_AI,
])

# =============================================================================
# EVENT TYPES
# =============================================================================

EVENT_STARTED = 'started'
EVENT_NODE_STARTED = 'nodeStarted'
EVENT_NODE_COMPLETED = 'nodeCompleted'
EVENT_NODE_FAILED = 'nodeFailed'
EVENT_NODE_RETRYING = 'nodeRetrying'
EVENT_NODE_SKIPPED = 'nodeSkipped'
EVENT_NODE_PARTIAL = 'nodePartial'
EVENT_COMPLETED = 'completed'
EVENT_FAILED = 'failed'
EVENT_CANCELLED = 'cancelled'

# Events after which no further events are published for an execution
TERMINAL_EVENTS: FrozenSet[str] = frozenset([
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_CANCELLED,
])

# =============================================================================
# PERSISTENCE KEYS
# =============================================================================

ACTIVE_EXECUTIONS_KEY = 'executions:active'
DLQ_INDEX_KEY = 'dlq:entries'

# Secret reference marker inside node configs: {"$secret": "NAME"}
SECRET_MARKER = '$secret'

# =============================================================================
# HTTP
# =============================================================================

HTTP_METHODS: FrozenSet[str] = frozenset([
    'GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS',
])

# =============================================================================
# AI
# =============================================================================

AI_PROVIDERS: FrozenSet[str] = frozenset([
    'openai',
    'anthropic',
])

DEFAULT_AI_MODELS = {
    'openai': 'gpt-4o-mini',
    'anthropic': 'claude-3-5-haiku-latest',
}

# Secret names consulted when an ai node carries no explicit api key
AI_API_KEY_SECRETS = {
    'openai': 'OPENAI_API_KEY',
    'anthropic': 'ANTHROPIC_API_KEY',
}

# =============================================================================
# CONDITIONS
# =============================================================================

CONDITION_OPERATORS: FrozenSet[str] = frozenset([
    'eq', 'neq', 'gt', 'lt', 'gte', 'lte',
    'contains', 'not_contains', 'exists', 'not_exists',
    'is_empty', 'is_not_empty', 'matches', 'in', 'not_in',
    'starts_with', 'ends_with', 'is_true', 'is_false',
    'is_string', 'is_number', 'is_boolean', 'is_array', 'is_object',
])
