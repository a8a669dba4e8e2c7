"""Recovery sweeper for crash recovery.

Runs as background task to:
- Detect abandoned executions (non-terminal checkpoint, lease expired)
- Resume them through the scheduler from their last checkpoint
- Drop orphaned ids from the active set
"""

import asyncio
from typing import List, Optional, TYPE_CHECKING

from flowengine.core.errors import EngineError
from flowengine.core.logging import get_logger
from .store import ExecutionStore

if TYPE_CHECKING:
    from .scheduler import WorkflowScheduler

logger = get_logger(__name__)


class RecoverySweeper:
    """Background task that recovers abandoned workflow executions.

    An execution is abandoned when its last checkpoint is non-terminal and
    nobody holds its lease: the owning process died or gave up ownership
    after a persistence failure.
    """

    def __init__(self, store: ExecutionStore, scheduler: "WorkflowScheduler",
                 sweep_interval: int = 60):
        """Initialize recovery sweeper.

        Args:
            store: ExecutionStore holding checkpoints and leases
            scheduler: Scheduler used to resume executions
            sweep_interval: Seconds between sweep runs
        """
        self.store = store
        self.scheduler = scheduler
        self.sweep_interval = sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="recovery_sweeper")
        logger.info("Recovery sweeper started", sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            try:
                await self.sweep_once()
            except EngineError as e:
                logger.error("Sweep iteration failed", error=e.message)

            await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self) -> List[str]:
        """Resume every abandoned execution once.

        Returns:
            Execution IDs that were resumed
        """
        resumed = []
        for execution_id in await self.find_abandoned():
            try:
                await self.scheduler.resume(execution_id)
                resumed.append(execution_id)
                logger.info("Recovered execution", execution_id=execution_id)
            except EngineError as e:
                logger.error("Failed to recover execution", execution_id=execution_id,
                             code=e.code, error=e.message)
        return resumed

    async def find_abandoned(self) -> List[str]:
        """Active executions whose lease is free, sorted by id."""
        abandoned = []
        for execution_id in sorted(await self.store.active_executions()):
            if self.scheduler.is_running(execution_id):
                continue

            ctx = await self.store.load_checkpoint(execution_id)
            if ctx is None or ctx.settled:
                logger.warning("Stale id in active set", execution_id=execution_id,
                               status=ctx.status.value if ctx else None)
                await self.store.discard_active(execution_id)
                continue

            owner = await self.store.lease_owner(execution_id)
            if owner is None:
                abandoned.append(execution_id)
            else:
                logger.debug("Execution owned elsewhere", execution_id=execution_id, owner=owner)
        return abandoned

    async def scan_on_startup(self) -> List[str]:
        """Scan for executions that need recovery on server startup.

        Returns:
            List of execution IDs that need recovery
        """
        needs_recovery = await self.find_abandoned()
        logger.info("Startup scan for incomplete executions", recoverable=len(needs_recovery))
        return needs_recovery
