"""Node Dispatcher - single node execution with handler dispatch.

Uses a registry keyed by node kind, so adding a kind means one handler and
one registry entry, never a branch elsewhere in the engine. Every
externally-visible side effect (network calls, secret lookups, timers)
happens inside ``execute``.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from flowengine.core.errors import CancellationSignal, ExecutionError, PersistenceError
from flowengine.core.logging import get_logger
from flowengine.models.graph import NodeKind
from flowengine.services.handlers import (
    handle_ai, handle_condition, handle_delay, handle_http, handle_transform,
    handle_trigger, requested_delay,
)

if TYPE_CHECKING:
    from flowengine.core.config import Settings
    from flowengine.services.execution.store import ExecutionStore
    from flowengine.services.secrets import SecretResolver
    from flowengine.services.timers import TimerService

logger = get_logger(__name__)

PartialCallback = Callable[[Dict[str, Any]], Awaitable[None]]


async def _discard_partial(chunk: Dict[str, Any]) -> None:
    return None


@dataclass
class DispatchContext:
    """What a handler may see: ids, the read-only namespace and cancellation."""
    execution_id: str
    workflow_id: str
    node_id: str
    namespace: Dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    on_partial: PartialCallback = _discard_partial
    attempt: int = 1

    @property
    def trigger(self) -> Dict[str, Any]:
        return self.namespace.get("trigger", {})

    @property
    def nodes(self) -> Dict[str, Any]:
        return self.namespace.get("nodes", {})

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise CancellationSignal()


@dataclass
class ExecutionResult:
    """Standardized execution result."""
    success: bool
    node_id: str
    kind: str
    output: Any = None
    error: Optional[ExecutionError] = None
    duration: float = 0.0
    branch: Optional[str] = None
    branches: List[str] = field(default_factory=list)
    timestamp: str = ""

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "success": self.success,
            "node_id": self.node_id,
            "kind": self.kind,
            "duration": self.duration,
            "timestamp": self.timestamp or datetime.now().isoformat(),
        }
        if self.success:
            d["output"] = self.output
            if self.branch:
                d["branch"] = self.branch
        else:
            d["error"] = self.error.to_dict() if self.error else None
        return d


class NodeDispatcher:
    """Executes individual nodes using registry-based dispatch."""

    def __init__(
        self,
        settings: "Settings",
        secrets: "SecretResolver",
        timers: "TimerService",
        store: "ExecutionStore",
        chat_model_factory: Optional[Callable] = None,
        http_transport: Any = None,
    ):
        self.settings = settings
        self.secrets = secrets
        self.timers = timers
        self.store = store
        self.chat_model_factory = chat_model_factory
        self.http_transport = http_transport
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, Callable]:
        """Build handler registry with service dependencies bound via partial."""
        ai_kwargs = {"secrets": self.secrets}
        if self.chat_model_factory is not None:
            ai_kwargs["model_factory"] = self.chat_model_factory
        return {
            NodeKind.TRIGGER.value: handle_trigger,
            NodeKind.HTTP.value: partial(handle_http, transport=self.http_transport),
            NodeKind.TRANSFORM.value: handle_transform,
            NodeKind.CONDITION.value: partial(handle_condition,
                                              default_policy=self.settings.condition_match_policy),
            NodeKind.AI.value: partial(handle_ai, **ai_kwargs),
            NodeKind.DELAY.value: partial(handle_delay, store=self.store, timers=self.timers,
                                          max_delay=self.settings.max_delay_seconds),
        }

    def register(self, kind: str, handler: Callable) -> None:
        """Replace or add a handler (tests, embedding)."""
        self._handlers[kind] = handler

    def timeout_for(self, kind: str, config: Dict[str, Any], node_timeout: Optional[float] = None) -> float:
        """node.timeout, then config ``timeout``, then the global default.

        Delay nodes get their own duration on top.

        Raises:
            ExecutionError: BAD_INPUT when the (possibly templated) value is
                not a positive number.
        """
        raw = node_timeout if node_timeout is not None else config.get("timeout")
        if raw is None:
            raw = self.settings.node_timeout
        try:
            if isinstance(raw, bool):
                raise ValueError(raw)
            timeout = float(raw)
        except (TypeError, ValueError) as e:
            raise ExecutionError(f"Invalid timeout {raw!r}: expected a number of seconds",
                                 code="BAD_INPUT") from e
        if not timeout > 0 or timeout == float("inf"):
            raise ExecutionError(f"Invalid timeout {raw!r}: must be positive and finite",
                                 code="BAD_INPUT")
        if kind == NodeKind.DELAY.value:
            try:
                timeout += requested_delay(config)
            except ExecutionError:
                # handle_delay reports an invalid duration itself
                return timeout
        return timeout

    async def execute(self, kind: str, config: Dict[str, Any], context: DispatchContext,
                      timeout: Optional[float] = None) -> ExecutionResult:
        """Execute one node attempt.

        Args:
            kind: Node kind
            config: Template-resolved config (secret references still unresolved)
            context: DispatchContext for this attempt
            timeout: Per-node timeout override

        Returns:
            ExecutionResult; failures carry an ExecutionError with its retryable flag.

        Raises:
            CancellationSignal: the attempt was stopped by a cancel request.
            PersistenceError: a handler side effect could not be made durable.
        """
        start_time = time.time()
        node_id = context.node_id

        def failure(error: ExecutionError) -> ExecutionResult:
            return ExecutionResult(False, node_id, kind, error=error,
                                   duration=round(time.time() - start_time, 4))

        handler = self._handlers.get(kind)
        if handler is None:
            return failure(ExecutionError(f"No handler for node kind '{kind}'", code="UNKNOWN_KIND"))

        try:
            limit = self.timeout_for(kind, config, timeout)
        except ExecutionError as e:
            logger.warning("Node attempt rejected", node_id=node_id, kind=kind,
                           code=e.code, error=e.message)
            return failure(e)

        logger.info("Dispatching node", execution_id=context.execution_id, node_id=node_id,
                    kind=kind, attempt=context.attempt, config_keys=sorted(config))

        try:
            resolved = await self.secrets.resolve_config(config)
            output = await asyncio.wait_for(handler(node_id, resolved, context), timeout=limit)
        except (CancellationSignal, PersistenceError):
            raise
        except ExecutionError as e:
            logger.warning("Node attempt failed", node_id=node_id, kind=kind,
                           code=e.code, retryable=e.retryable, error=e.message)
            return failure(e)
        except TimeoutError:
            logger.warning("Node attempt timed out", node_id=node_id, kind=kind, timeout=limit)
            return failure(ExecutionError(f"Node timed out after {limit:g}s", code="TIMEOUT"))
        except Exception as e:
            logger.exception("Unexpected node error", node_id=node_id, kind=kind)
            return failure(ExecutionError(f"{type(e).__name__}: {e}", code="INTERNAL_ERROR",
                                          retryable=False))

        try:
            json.dumps(output)
        except (TypeError, ValueError) as e:
            logger.warning("Node output rejected", node_id=node_id, kind=kind, error=str(e))
            return failure(ExecutionError(f"Node output is not JSON-serializable: {e}",
                                          code="BAD_INPUT"))

        result = ExecutionResult(True, node_id, kind, output=output,
                                 duration=round(time.time() - start_time, 4))
        if kind == NodeKind.CONDITION.value and isinstance(output, dict):
            result.branch = output.get("branch")
            result.branches = list(output.get("branches") or [result.branch])
        return result
