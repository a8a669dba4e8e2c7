"""Execution store: graph repository, checkpoints, logs, leases and the DLQ.

Key schema:
    workflow:{id}:counter         -> INT (version allocator)
    workflow:{id}:latest          -> INT (latest stored version)
    workflow:{id}:v{n}            -> JSON (immutable WorkflowGraph)
    execution:{id}:state          -> JSON (ExecutionContext checkpoint)
    execution:{id}:logs           -> LIST (AttemptLogEntry, append-only)
    execution:{id}:events         -> LIST (ExecutionEvent, append-only)
    execution:{id}:seq            -> INT (event sequence allocator)
    execution:{id}:lease          -> STRING (owner token, TTL)
    execution:{id}:cancel         -> FLAG (cross-process cancel request)
    continuation:{exec}:{node}    -> JSON {resume_at}
    executions:active             -> SET {execution_ids}
    dlq:entries:{id}              -> JSON (DLQEntry)
    dlq:entries                   -> SET {entry_ids}
    dlq:workflow:{workflow_id}    -> LIST {entry_ids}
"""

from typing import Any, Dict, List, Optional, Set

from flowengine.constants import ACTIVE_EXECUTIONS_KEY, DLQ_INDEX_KEY
from flowengine.core.cache import CacheService
from flowengine.core.config import Settings
from flowengine.core.errors import LeaseLostError, PersistenceError
from flowengine.core.logging import get_logger
from flowengine.models.graph import WorkflowGraph
from .models import AttemptLogEntry, DLQEntry, ExecutionContext
from .validator import ensure_valid

logger = get_logger(__name__)

DLQ_TTL = 604800  # 7 days


class ExecutionStore:
    """Durable state for graphs and executions over ``CacheService``.

    Writes that the scheduler depends on (checkpoints, attempt logs, graph
    versions) raise ``PersistenceError``; inspection reads used by the
    ingress (events, DLQ listings) log and degrade to empty results.
    """

    def __init__(self, cache: CacheService, settings: Settings):
        self.cache = cache
        self.settings = settings

    # =========================================================================
    # GRAPH REPOSITORY
    # =========================================================================

    async def save_graph(self, graph: WorkflowGraph) -> WorkflowGraph:
        """Validate and store a new immutable version of ``graph``.

        Raises:
            GraphValidationError: graph is malformed; nothing is stored.
        """
        ensure_valid(graph)
        version = await self.cache.incr(f"workflow:{graph.id}:counter")
        stored = graph.model_copy(update={"version": version})
        await self.cache.set(f"workflow:{graph.id}:v{version}", stored.model_dump(mode="json"))
        await self.cache.set(f"workflow:{graph.id}:latest", version)
        logger.info("Saved workflow graph", workflow_id=graph.id, version=version,
                    node_count=len(graph.nodes), edge_count=len(graph.edges))
        return stored

    async def load_graph(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowGraph]:
        """Load a pinned version, or the latest one when ``version`` is None."""
        if version is None:
            version = await self.cache.get(f"workflow:{workflow_id}:latest")
            if version is None:
                return None
        data = await self.cache.get(f"workflow:{workflow_id}:v{int(version)}")
        if not data:
            return None
        return WorkflowGraph.model_validate(data)

    # =========================================================================
    # CHECKPOINTS
    # =========================================================================

    async def save_checkpoint(self, ctx: ExecutionContext, owner: Optional[str] = None) -> None:
        """Persist ``ctx``; durable before returning.

        With ``owner`` set, the write is refused when that owner no longer
        holds the execution lease. The ownership check and the write are two
        round trips, so a lease that expires in between is caught by the next
        checkpoint rather than this one.

        Raises:
            LeaseLostError: ``owner`` does not hold the lease.
            PersistenceError: backend write failed.
        """
        if owner is not None:
            current = await self.lease_owner(ctx.execution_id)
            if current != owner:
                raise LeaseLostError(
                    f"Lease for execution '{ctx.execution_id}' is held by {current or 'nobody'}")

        key = f"execution:{ctx.execution_id}:state"
        # A terminal state stays active until its outbox is published
        settled = ctx.settled
        ttl = self.settings.completed_ttl if settled else None
        await self.cache.set(key, ctx.to_dict(), ttl=ttl)

        if settled:
            await self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, ctx.execution_id)
            for suffix in ("logs", "events", "seq"):
                await self.cache.expire(f"execution:{ctx.execution_id}:{suffix}", self.settings.completed_ttl)
        else:
            await self.cache.set_add(ACTIVE_EXECUTIONS_KEY, ctx.execution_id)

        logger.debug("Saved checkpoint", execution_id=ctx.execution_id,
                     status=ctx.status.value, terminal_nodes=len(ctx.terminal_nodes()))

    async def load_checkpoint(self, execution_id: str) -> Optional[ExecutionContext]:
        data = await self.cache.get(f"execution:{execution_id}:state")
        if not data:
            return None
        return ExecutionContext.from_dict(data)

    async def active_executions(self) -> Set[str]:
        """Execution ids whose last checkpoint is non-terminal."""
        return await self.cache.set_members(ACTIVE_EXECUTIONS_KEY)

    async def discard_active(self, execution_id: str) -> None:
        """Drop an id from the active set (orphaned or already terminal)."""
        await self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id)

    # =========================================================================
    # ATTEMPT LOG
    # =========================================================================

    async def append_log(self, execution_id: str, entry: AttemptLogEntry) -> None:
        """Append one attempt record. Raises ``PersistenceError`` on failure."""
        await self.cache.list_append(f"execution:{execution_id}:logs", entry.to_dict())

    async def get_logs(self, execution_id: str, node_id: Optional[str] = None) -> List[AttemptLogEntry]:
        raw = await self.cache.list_range(f"execution:{execution_id}:logs")
        entries = [AttemptLogEntry.from_dict(item) for item in raw]
        if node_id is not None:
            entries = [e for e in entries if e.node_id == node_id]
        return entries

    # =========================================================================
    # EVENT HISTORY
    # =========================================================================

    async def next_event_seq(self, execution_id: str) -> int:
        return await self.cache.incr(f"execution:{execution_id}:seq")

    async def append_event(self, execution_id: str, event: Dict[str, Any]) -> None:
        await self.cache.list_append(f"execution:{execution_id}:events", event)

    async def get_events(self, execution_id: str, after_seq: int = 0) -> List[Dict[str, Any]]:
        """Persisted events with ``seq > after_seq``, in order."""
        try:
            raw = await self.cache.list_range(f"execution:{execution_id}:events")
        except PersistenceError as e:
            logger.error("Failed to get events", execution_id=execution_id, error=str(e))
            return []
        return [event for event in raw if event.get("seq", 0) > after_seq]

    # =========================================================================
    # LEASE (single-writer discipline)
    # =========================================================================

    def _lease_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}:lease"

    async def acquire_lease(self, execution_id: str, owner: str, ttl: Optional[int] = None) -> bool:
        """Take the lease if free (or already ours). Redis SET NX EX."""
        ttl = ttl or self.settings.lease_ttl
        key = self._lease_key(execution_id)
        if await self.cache.set_nx(key, owner, ttl=ttl):
            logger.debug("Lease acquired", execution_id=execution_id, owner=owner)
            return True
        if await self.cache.get(key) == owner:
            await self.cache.expire(key, ttl)
            return True
        return False

    async def renew_lease(self, execution_id: str, owner: str, ttl: Optional[int] = None) -> bool:
        """Extend our lease; re-takes it if it lapsed and nobody claimed it."""
        ttl = ttl or self.settings.lease_ttl
        key = self._lease_key(execution_id)
        current = await self.cache.get(key)
        if current == owner:
            return await self.cache.expire(key, ttl)
        if current is None:
            return await self.cache.set_nx(key, owner, ttl=ttl)
        return False

    async def release_lease(self, execution_id: str, owner: str) -> bool:
        """Release only if we hold the lease (token check)."""
        key = self._lease_key(execution_id)
        if await self.cache.get(key) == owner:
            await self.cache.delete(key)
            logger.debug("Lease released", execution_id=execution_id, owner=owner)
            return True
        return False

    async def lease_owner(self, execution_id: str) -> Optional[str]:
        return await self.cache.get(self._lease_key(execution_id))

    # =========================================================================
    # CANCELLATION FLAG
    # =========================================================================

    async def request_cancel(self, execution_id: str) -> None:
        await self.cache.set(f"execution:{execution_id}:cancel", True, ttl=self.settings.completed_ttl)

    async def is_cancel_requested(self, execution_id: str) -> bool:
        return bool(await self.cache.get(f"execution:{execution_id}:cancel"))

    async def clear_cancel(self, execution_id: str) -> None:
        await self.cache.delete(f"execution:{execution_id}:cancel")

    # =========================================================================
    # CONTINUATIONS (durable delay wake-up times)
    # =========================================================================

    async def save_continuation(self, execution_id: str, node_id: str, resume_at: float) -> None:
        await self.cache.set(f"continuation:{execution_id}:{node_id}", {"resume_at": resume_at})

    async def get_continuation(self, execution_id: str, node_id: str) -> Optional[float]:
        data = await self.cache.get(f"continuation:{execution_id}:{node_id}")
        return float(data["resume_at"]) if data else None

    async def delete_continuation(self, execution_id: str, node_id: str) -> None:
        await self.cache.delete(f"continuation:{execution_id}:{node_id}")

    # =========================================================================
    # DEAD LETTER QUEUE
    # =========================================================================

    async def add_to_dlq(self, entry: DLQEntry) -> bool:
        """Store a DLQ entry and index it globally and per workflow."""
        try:
            await self.cache.set(f"dlq:entries:{entry.id}", entry.to_dict(), ttl=DLQ_TTL)
            await self.cache.set_add(DLQ_INDEX_KEY, entry.id)
            workflow_key = f"dlq:workflow:{entry.workflow_id}"
            await self.cache.list_append(workflow_key, entry.id)
            await self.cache.expire(workflow_key, DLQ_TTL)
            logger.info("Added to DLQ", entry_id=entry.id, node_id=entry.node_id,
                        kind=entry.kind, error=entry.error[:100])
            return True
        except PersistenceError as e:
            logger.error("Failed to add to DLQ", entry_id=entry.id, error=str(e))
            return False

    async def get_dlq_entry(self, entry_id: str) -> Optional[DLQEntry]:
        data = await self.cache.get(f"dlq:entries:{entry_id}")
        return DLQEntry.from_dict(data) if data else None

    async def get_dlq_entries(self, workflow_id: Optional[str] = None, limit: int = 100) -> List[DLQEntry]:
        """DLQ entries, newest first, optionally for one workflow."""
        try:
            if workflow_id:
                entry_ids = await self.cache.list_range(f"dlq:workflow:{workflow_id}")
            else:
                entry_ids = list(await self.cache.set_members(DLQ_INDEX_KEY))
            entries = []
            for entry_id in entry_ids:
                entry = await self.get_dlq_entry(entry_id)
                if entry:
                    entries.append(entry)
        except PersistenceError as e:
            logger.error("Failed to get DLQ entries", error=str(e))
            return []
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    async def remove_from_dlq(self, entry_id: str) -> bool:
        entry = await self.get_dlq_entry(entry_id)
        if not entry:
            return False
        await self.cache.list_remove(f"dlq:workflow:{entry.workflow_id}", entry_id)
        await self.cache.set_remove(DLQ_INDEX_KEY, entry_id)
        await self.cache.delete(f"dlq:entries:{entry_id}")
        logger.info("Removed from DLQ", entry_id=entry_id)
        return True
