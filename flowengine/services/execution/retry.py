"""Retry controller wrapping one node dispatch.

Attempt k runs, its outcome is appended to the attempt log, and only then is
the next attempt scheduled. Backoff waits go through ``TimerService`` so they
are cancellable continuations, never blocking sleeps.
"""

import random
import time
from typing import Awaitable, Callable, Dict, List, Optional, Any, TYPE_CHECKING

from flowengine.core.errors import CancellationSignal, ExecutionError, RetriesExhausted
from flowengine.core.logging import get_logger
from .models import AttemptLogEntry, ExecutionContext, NodeResult, NodeStatus, RetryPolicy

if TYPE_CHECKING:
    import asyncio
    from flowengine.models.graph import Node
    from flowengine.services.node_dispatcher import ExecutionResult
    from flowengine.services.timers import TimerService
    from .store import ExecutionStore

logger = get_logger(__name__)

AttemptFn = Callable[[int], Awaitable["ExecutionResult"]]
RetryCallback = Callable[[int, float, ExecutionError], Awaitable[None]]


class RetryController:
    """Runs attempts under a node's RetryPolicy."""

    def __init__(self, store: "ExecutionStore", timers: "TimerService",
                 rng: Optional[random.Random] = None):
        self.store = store
        self.timers = timers
        self.rng = rng

    async def run(
        self,
        ctx: ExecutionContext,
        node: "Node",
        attempt_fn: AttemptFn,
        cancel_event: "asyncio.Event",
        on_retry: Optional[RetryCallback] = None,
    ) -> NodeResult:
        """Attempt ``node`` until it succeeds or the policy gives up.

        Args:
            ctx: Execution context (ids only; not mutated here)
            node: The node being run
            attempt_fn: ``attempt_fn(attempt)`` performs one dispatch
            cancel_event: Set on cancellation; interrupts backoff waits
            on_retry: Awaited with ``(attempt, delay, error)`` before each backoff

        Returns:
            A successful NodeResult (not yet merged into ``ctx``).

        Raises:
            RetriesExhausted: non-retryable error, or no attempts left.
            CancellationSignal: cancelled during an attempt or a backoff wait.
            PersistenceError: an attempt log entry could not be written.
        """
        policy = RetryPolicy.from_model(node.retry_policy)
        attempts: List[Dict[str, Any]] = []
        delay = 0.0

        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = await attempt_fn(attempt)
            except CancellationSignal:
                await self._log(ctx, node, attempt, attempts, "cancelled", delay=delay,
                                error_code=CancellationSignal.code, error="Cancelled by request")
                raise

            error = result.error
            await self._log(ctx, node, attempt, attempts,
                            "success" if result.success else "failure",
                            delay=delay, duration=result.duration,
                            error_code=error.code if error else None,
                            error=error.message if error else None)

            if result.success:
                return NodeResult(
                    node_id=node.id,
                    kind=node.kind.value,
                    status=NodeStatus.SUCCESS,
                    output=result.output,
                    duration=result.duration,
                    attempts=attempt,
                    branch=result.branch,
                    branches=list(result.branches),
                )

            if not error.retryable or attempt >= policy.max_attempts:
                logger.warning("Node failed permanently", execution_id=ctx.execution_id,
                               node_id=node.id, attempt=attempt, code=error.code,
                               retryable=error.retryable)
                raise RetriesExhausted(node.id, error, attempts)

            if cancel_event.is_set():
                logger.info("Retry skipped, execution is stopping", execution_id=ctx.execution_id,
                            node_id=node.id, attempt=attempt)
                raise CancellationSignal()
            delay = policy.delay_for(attempt, self.rng)
            logger.info("Retrying node", execution_id=ctx.execution_id, node_id=node.id,
                        attempt=attempt, next_attempt=attempt + 1, delay=round(delay, 3),
                        code=error.code)
            if on_retry is not None:
                await on_retry(attempt, delay, error)

            elapsed = await self.timers.wait(delay, cancel_event, key=(ctx.execution_id, node.id))
            if not elapsed:
                logger.info("Retry cancelled during backoff", execution_id=ctx.execution_id,
                            node_id=node.id, attempt=attempt)
                raise CancellationSignal()

        # max_attempts >= 1, so the loop always returns or raises
        raise RuntimeError("retry loop exited without a result")

    async def _log(self, ctx: ExecutionContext, node: "Node", attempt: int,
                   attempts: List[Dict[str, Any]], outcome: str, **fields) -> None:
        entry = AttemptLogEntry(
            execution_id=ctx.execution_id,
            node_id=node.id,
            attempt=attempt,
            outcome=outcome,
            timestamp=time.time(),
            **fields,
        )
        await self.store.append_log(ctx.execution_id, entry)
        attempts.append(entry.to_dict())
