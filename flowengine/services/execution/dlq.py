"""Dead Letter Queue (DLQ) handler for nodes that exhausted their retries.

Optional: enabled with DLQ_ENABLED=true. When disabled, a Null Object handler
keeps the scheduler free of feature checks.

Usage:
    dlq = create_dlq_handler(store, enabled=settings.dlq_enabled)
    await dlq.add_failed_node(ctx, result, config_keys)
"""

from typing import List, Protocol, TYPE_CHECKING

from flowengine.core.logging import get_logger
from .models import DLQEntry, ExecutionContext, NodeResult

if TYPE_CHECKING:
    from .store import ExecutionStore

logger = get_logger(__name__)


class DLQHandlerProtocol(Protocol):
    """Protocol for DLQ handlers (enables duck typing)."""

    async def add_failed_node(self, ctx: ExecutionContext, result: NodeResult,
                              config_keys: List[str]) -> bool:
        ...

    @property
    def enabled(self) -> bool:
        ...


class NullDLQHandler:
    """No-op DLQ handler when DLQ is disabled."""

    @property
    def enabled(self) -> bool:
        return False

    async def add_failed_node(self, ctx: ExecutionContext, result: NodeResult,
                              config_keys: List[str]) -> bool:
        logger.debug("DLQ disabled, skipping failed node storage",
                     node_id=result.node_id, error_code=result.error_code)
        return True


class DLQHandler:
    """Stores failed nodes through the execution store for later inspection."""

    def __init__(self, store: "ExecutionStore"):
        self.store = store

    @property
    def enabled(self) -> bool:
        return True

    async def add_failed_node(self, ctx: ExecutionContext, result: NodeResult,
                              config_keys: List[str]) -> bool:
        entry = DLQEntry.create(ctx, result, config_keys)
        added = await self.store.add_to_dlq(entry)
        if added:
            logger.info("Node added to DLQ",
                        entry_id=entry.id,
                        execution_id=ctx.execution_id,
                        node_id=result.node_id,
                        attempts=result.attempts)
        return added


def create_dlq_handler(store: "ExecutionStore", enabled: bool = False) -> DLQHandlerProtocol:
    """DLQHandler if enabled, NullDLQHandler otherwise."""
    if enabled:
        logger.info("DLQ enabled")
        return DLQHandler(store)
    logger.debug("DLQ disabled")
    return NullDLQHandler()
