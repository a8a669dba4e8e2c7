"""Workflow scheduler: per-execution state machine with continuous scheduling.

Implements:
- Kahn topological order (min-heap, ascending node id tie-break)
- Continuous scheduling with asyncio.wait(FIRST_COMPLETED), bounded by a semaphore
- Branch-aware readiness: unchosen branches and disabled nodes are skipped
- Write-ahead ordering: node effect -> checkpoint -> event -> advance
- Execution lease with a heartbeat; losing it stops the run without a terminal write
- Cooperative cancellation, local or through the persisted cancel flag
"""

import asyncio
import heapq
import os
import socket
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from flowengine.core.config import Settings
from flowengine.core.errors import (
    CancellationSignal, ExecutionError, ExecutionNotFound, GraphValidationError,
    LeaseLostError, PersistenceError, RetriesExhausted, TemplateError, ValidationIssue,
    WorkflowNotFound,
)
from flowengine.core.logging import get_logger
from flowengine.models.graph import Edge, Node, WorkflowGraph
from flowengine.services.events import EventPublisher, EventType
from flowengine.services.node_dispatcher import DispatchContext, ExecutionResult, NodeDispatcher
from .dlq import DLQHandlerProtocol, NullDLQHandler
from .models import ExecutionContext, ExecutionStatus, NodeResult, NodeStatus
from .retry import RetryController
from .store import ExecutionStore
from .templates import TemplateResolver

logger = get_logger(__name__)

PendingEvent = Tuple[EventType, Optional[str], Dict[str, Any]]

STOP_FAILED = "failed"
STOP_CANCELLED = "cancelled"


def topological_order(graph: WorkflowGraph) -> List[str]:
    """Kahn's algorithm; simultaneously-ready nodes come out in ascending id order.

    Raises:
        GraphValidationError: the graph has a cycle.
    """
    indegree: Dict[str, int] = {node.id: 0 for node in graph.nodes}
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in graph.edges:
        adjacency[edge.source].append(edge.target)
        indegree[edge.target] += 1

    heap = [nid for nid, degree in indegree.items() if degree == 0]
    heapq.heapify(heap)
    order: List[str] = []
    while heap:
        node_id = heapq.heappop(heap)
        order.append(node_id)
        for succ in adjacency[node_id]:
            indegree[succ] -= 1
            if indegree[succ] == 0:
                heapq.heappush(heap, succ)

    if len(order) != len(indegree):
        remaining = sorted(set(indegree) - set(order))
        raise GraphValidationError([ValidationIssue(
            "CYCLE_DETECTED", f"Cycle among nodes: {', '.join(remaining)}", f"nodes.{remaining[0]}")])
    return order


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class _Run:
    """In-memory bookkeeping for one execution owned by this process."""
    ctx: ExecutionContext
    graph: WorkflowGraph
    nodes: Dict[str, Node]
    incoming: Dict[str, List[Edge]]
    semaphore: asyncio.Semaphore
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    stop_reason: Optional[str] = None
    failure: Optional[RetriesExhausted] = None
    lease_lost: bool = False

    def stop(self, reason: str) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
        self.stop_event.set()


class WorkflowScheduler:
    """Runs executions of stored workflow graphs.

    Features:
    - Isolated ExecutionContext per run, owned through an execution lease
    - Parallel execution of independent nodes
    - Checkpoint after every node transition (resume after crash)
    - Retry with backoff per node, dead-letter queue on exhaustion
    """

    def __init__(
        self,
        settings: Settings,
        store: ExecutionStore,
        dispatcher: NodeDispatcher,
        retry: RetryController,
        templates: TemplateResolver,
        publisher: EventPublisher,
        dlq: Optional[DLQHandlerProtocol] = None,
        owner_id: Optional[str] = None,
    ):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher
        self.retry = retry
        self.templates = templates
        self.publisher = publisher
        self.dlq = dlq or NullDLQHandler()
        self.owner_id = owner_id or default_owner_id()

        self._runs: Dict[str, _Run] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def trigger(self, workflow_id: str, payload: Optional[Dict[str, Any]] = None,
                      version: Optional[int] = None) -> Dict[str, Any]:
        """Create an execution and start it in the background.

        Returns:
            ``{"execution_id", "status"}`` (status is ``pending``)

        Raises:
            WorkflowNotFound: no stored graph for ``workflow_id``/``version``.
            PersistenceError: the initial checkpoint could not be written.
        """
        graph = await self.store.load_graph(workflow_id, version)
        if graph is None:
            raise WorkflowNotFound(f"Workflow '{workflow_id}' not found"
                                   + (f" at version {version}" if version is not None else ""))

        ctx = ExecutionContext.create(graph, payload)
        ctx.execution_order = topological_order(graph)

        if not await self.store.acquire_lease(ctx.execution_id, self.owner_id):
            raise LeaseLostError(f"Could not acquire lease for new execution '{ctx.execution_id}'")
        await self.store.save_checkpoint(ctx, owner=self.owner_id)

        logger.info("Execution created", execution_id=ctx.execution_id, workflow_id=graph.id,
                    version=graph.version, node_count=len(graph.nodes))
        self._spawn(ctx, graph)
        return {"execution_id": ctx.execution_id, "status": ctx.status.value}

    async def resume(self, execution_id: str) -> Dict[str, Any]:
        """Continue a non-terminal execution from its last checkpoint.

        Nodes already ``success`` or ``skipped`` are never re-run; nodes that
        were in flight when the checkpoint was written start over.

        Raises:
            ExecutionNotFound: no checkpoint.
            WorkflowNotFound: the pinned graph version is gone.
            LeaseLostError: another process owns the execution.
        """
        if execution_id in self._runs:
            return {"execution_id": execution_id, "status": self._runs[execution_id].ctx.status.value}

        ctx = await self.store.load_checkpoint(execution_id)
        if ctx is None:
            raise ExecutionNotFound(f"Execution '{execution_id}' not found")
        if ctx.status.is_terminal:
            if ctx.pending_events:
                await self._redeliver(ctx)
            return {"execution_id": execution_id, "status": ctx.status.value}

        graph = await self.store.load_graph(ctx.workflow_id, ctx.workflow_version)
        if graph is None:
            raise WorkflowNotFound(
                f"Workflow '{ctx.workflow_id}' version {ctx.workflow_version} not found")

        if not await self.store.acquire_lease(execution_id, self.owner_id):
            raise LeaseLostError(f"Execution '{execution_id}' is owned by another process")

        for result in ctx.node_results.values():
            if result.status in (NodeStatus.RUNNING, NodeStatus.RETRYING, NodeStatus.READY):
                result.status = NodeStatus.PENDING
        if ctx.status == ExecutionStatus.RETRYING:
            ctx.set_status(ExecutionStatus.RUNNING)
        if not ctx.execution_order:
            ctx.execution_order = topological_order(graph)

        logger.info("Resuming execution", execution_id=execution_id, workflow_id=ctx.workflow_id,
                    completed=len(ctx.terminal_nodes()), remaining=len(ctx.pending_nodes()))
        self._spawn(ctx, graph)
        return {"execution_id": execution_id, "status": ctx.status.value}

    async def run(self, ctx: ExecutionContext, graph: WorkflowGraph) -> ExecutionContext:
        """Drive ``ctx`` to a terminal state in the current task."""
        if not ctx.execution_order:
            ctx.execution_order = topological_order(graph)
        return await self._drive(self._register(ctx, graph))

    async def cancel(self, execution_id: str) -> bool:
        """Request cooperative cancellation.

        Returns:
            False when the execution is already terminal.

        Raises:
            ExecutionNotFound: unknown execution.
        """
        run = self._runs.get(execution_id)
        if run is not None:
            logger.info("Cancellation requested", execution_id=execution_id)
            run.stop(STOP_CANCELLED)
            return True

        ctx = await self.store.load_checkpoint(execution_id)
        if ctx is None:
            raise ExecutionNotFound(f"Execution '{execution_id}' not found")
        if ctx.status.is_terminal:
            return False
        # Owned elsewhere (or orphaned): the owner's heartbeat picks this up
        await self.store.request_cancel(execution_id)
        logger.info("Cancellation flag set", execution_id=execution_id)
        return True

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Optional[ExecutionContext]:
        """Wait for a locally running execution, then return its latest checkpoint."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.store.load_checkpoint(execution_id)

    async def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        ctx = await self.store.load_checkpoint(execution_id)
        return ctx.to_dict() if ctx else None

    async def active_executions(self) -> Set[str]:
        return await self.store.active_executions()

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._runs

    async def shutdown(self) -> None:
        """Stop local runs without terminal writes; they resume elsewhere."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler shut down", stopped=len(tasks))

    # =========================================================================
    # RUN LIFECYCLE
    # =========================================================================

    def _register(self, ctx: ExecutionContext, graph: WorkflowGraph) -> _Run:
        incoming: Dict[str, List[Edge]] = defaultdict(list)
        for edge in graph.edges:
            incoming[edge.target].append(edge)
        run = _Run(
            ctx=ctx,
            graph=graph,
            nodes=graph.node_map(),
            incoming=incoming,
            semaphore=asyncio.Semaphore(self.settings.max_parallel_nodes),
        )
        self._runs[ctx.execution_id] = run
        return run

    def _spawn(self, ctx: ExecutionContext, graph: WorkflowGraph) -> None:
        run = self._register(ctx, graph)
        execution_id = ctx.execution_id
        task = asyncio.create_task(self._drive(run), name=f"execution_{execution_id}")
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t: self._on_task_done(execution_id, t))

    def _on_task_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Execution task crashed", execution_id=execution_id,
                         error=str(task.exception()))

    async def _drive(self, run: _Run) -> ExecutionContext:
        ctx = run.ctx
        execution_id = ctx.execution_id
        heartbeat: Optional[asyncio.Task] = None
        try:
            if not await self.store.acquire_lease(execution_id, self.owner_id):
                logger.warning("Execution owned by another process, not running",
                               execution_id=execution_id)
                return ctx
            heartbeat = asyncio.create_task(self._heartbeat(run), name=f"lease_{execution_id}")
            if await self.store.is_cancel_requested(execution_id):
                run.stop(STOP_CANCELLED)
            await self._execute(run)
        except LeaseLostError as e:
            logger.warning("Lease lost, abandoning execution", execution_id=execution_id, error=e.message)
        except PersistenceError as e:
            logger.error("Persistence failed, abandoning execution", execution_id=execution_id,
                         error=e.message)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
            self._runs.pop(execution_id, None)
            self.publisher.release(execution_id)
            try:
                await self.store.release_lease(execution_id, self.owner_id)
            except PersistenceError as e:
                logger.warning("Failed to release lease", execution_id=execution_id, error=e.message)
        return ctx

    async def _heartbeat(self, run: _Run) -> None:
        """Renew the lease and poll the persisted cancel flag."""
        execution_id = run.ctx.execution_id
        while True:
            await asyncio.sleep(self.settings.lease_renew_interval)
            try:
                if not await self.store.renew_lease(execution_id, self.owner_id):
                    logger.warning("Lease renewal refused", execution_id=execution_id)
                    run.lease_lost = True
                    run.stop_event.set()
                    return
                if await self.store.is_cancel_requested(execution_id):
                    run.stop(STOP_CANCELLED)
            except PersistenceError as e:
                logger.warning("Lease heartbeat failed", execution_id=execution_id, error=e.message)

    # =========================================================================
    # CONTINUOUS SCHEDULING
    # =========================================================================

    async def _execute(self, run: _Run) -> None:
        ctx = run.ctx
        start_time = time.time()
        tasks: Dict[asyncio.Task, str] = {}

        logger.info("Starting workflow execution", execution_id=ctx.execution_id,
                    workflow_id=ctx.workflow_id, order=ctx.execution_order)
        if ctx.pending_events:
            logger.info("Re-publishing undelivered events", execution_id=ctx.execution_id,
                        count=len(ctx.pending_events))
            async with run.lock:
                await self._drain_outbox(ctx)

        try:
            while True:
                if not run.stop_event.is_set():
                    for node_id in await self._advance(run):
                        ctx.set_node_status(node_id, NodeStatus.READY)
                        task = asyncio.create_task(self._execute_node(run, run.nodes[node_id]),
                                                   name=f"node_{node_id}")
                        tasks[task] = node_id

                if not tasks:
                    break

                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: tasks[t]):
                    node_id = tasks.pop(task)
                    await self._complete_node(run, node_id, task)
        finally:
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        await self._finish(run, time.time() - start_time)

    async def _advance(self, run: _Run) -> List[str]:
        """Return newly ready node ids; mark unreachable and disabled nodes skipped.

        One pass in topological order reaches a fixed point, since a skip is
        visible to every later node in the same pass.
        """
        ctx = run.ctx
        ready: List[str] = []
        skipped: List[PendingEvent] = []

        for node_id in ctx.execution_order:
            if ctx.node_results[node_id].status != NodeStatus.PENDING:
                continue
            incoming = run.incoming.get(node_id, [])
            if any(not ctx.node_results[e.source].status.is_terminal for e in incoming):
                continue
            if incoming and not any(self._edge_active(ctx, e) for e in incoming):
                ctx.set_node_status(node_id, NodeStatus.SKIPPED)
                skipped.append((EventType.NODE_SKIPPED, node_id, {"reason": "no_active_input"}))
            elif run.nodes[node_id].disabled:
                ctx.set_node_status(node_id, NodeStatus.SKIPPED)
                skipped.append((EventType.NODE_SKIPPED, node_id, {"reason": "disabled"}))
            else:
                ready.append(node_id)

        if skipped:
            logger.info("Skipped nodes", execution_id=ctx.execution_id,
                        node_ids=[node_id for _, node_id, _ in skipped])
            await self._checkpoint(run, skipped)
        return sorted(ready)

    @staticmethod
    def _edge_active(ctx: ExecutionContext, edge: Edge) -> bool:
        source = ctx.node_results[edge.source]
        if source.status != NodeStatus.SUCCESS:
            return False
        return edge.source_port is None or edge.source_port in source.active_ports()

    async def _execute_node(self, run: _Run, node: Node) -> Optional[NodeResult]:
        """Run one node under the parallelism bound. None if it never started."""
        async with run.semaphore:
            if run.stop_event.is_set():
                run.ctx.node_results[node.id].status = NodeStatus.PENDING
                return None

            async def attempt(attempt_no: int) -> ExecutionResult:
                return await self._attempt(run, node, attempt_no)

            async def on_retry(attempt_no: int, delay: float, error: ExecutionError) -> None:
                await self._enter_backoff(run, node, attempt_no, delay, error)

            return await self.retry.run(run.ctx, node, attempt, run.stop_event, on_retry)

    async def _attempt(self, run: _Run, node: Node, attempt: int) -> ExecutionResult:
        ctx = run.ctx
        result = ctx.node_results[node.id]
        result.attempts = attempt
        ctx.set_node_status(node.id, NodeStatus.RUNNING)

        events: List[PendingEvent] = []
        if ctx.status == ExecutionStatus.PENDING:
            ctx.set_status(ExecutionStatus.RUNNING)
            events.append((EventType.STARTED, None, {
                "workflow_id": ctx.workflow_id,
                "workflow_version": ctx.workflow_version,
            }))
        elif ctx.status == ExecutionStatus.RETRYING and not self._any_retrying(ctx):
            ctx.set_status(ExecutionStatus.RUNNING)
        events.append((EventType.NODE_STARTED, node.id, {"kind": node.kind.value, "attempt": attempt}))
        await self._checkpoint(run, events)

        async def on_partial(chunk: Dict[str, Any]) -> None:
            await self.publisher.publish(ctx.execution_id, EventType.NODE_PARTIAL, node.id, chunk)

        dispatch_context = DispatchContext(
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow_id,
            node_id=node.id,
            namespace=ctx.namespace(),
            cancel_event=run.stop_event,
            on_partial=on_partial,
            attempt=attempt,
        )

        try:
            config = self.templates.resolve_config(node.config, dispatch_context.namespace)
        except TemplateError as e:
            logger.warning("Template resolution failed", execution_id=ctx.execution_id,
                           node_id=node.id, code=e.code, path=e.path)
            return ExecutionResult(False, node.id, node.kind.value, error=ExecutionError(
                e.message, code=e.code, retryable=False, details={"path": e.path}))

        return await self.dispatcher.execute(node.kind.value, config, dispatch_context,
                                             timeout=node.timeout)

    async def _enter_backoff(self, run: _Run, node: Node, attempt: int, delay: float,
                             error: ExecutionError) -> None:
        ctx = run.ctx
        result = ctx.node_results[node.id]
        result.error = error.message
        result.error_code = error.code
        result.retryable = error.retryable
        ctx.set_node_status(node.id, NodeStatus.RETRYING)
        ctx.set_status(ExecutionStatus.RETRYING)
        await self._checkpoint(run, [(EventType.NODE_RETRYING, node.id, {
            "attempt": attempt,
            "next_attempt": attempt + 1,
            "delay": round(delay, 3),
            "error": error.to_dict(),
        })])

    @staticmethod
    def _any_retrying(ctx: ExecutionContext) -> bool:
        return any(r.status == NodeStatus.RETRYING for r in ctx.node_results.values())

    async def _complete_node(self, run: _Run, node_id: str, task: asyncio.Task) -> None:
        """Record one finished node task: result -> checkpoint -> event."""
        ctx = run.ctx
        record = ctx.node_results[node_id]
        try:
            outcome = task.result()
        except RetriesExhausted as e:
            record.error = e.error.message
            record.error_code = e.error.code
            record.retryable = getattr(e.error, "retryable", False)
            record.attempts = len(e.attempts)
            ctx.set_node_status(node_id, NodeStatus.FAILED)
            if run.failure is None:
                run.failure = e
            run.stop(STOP_FAILED)
            logger.error("Node failed", execution_id=ctx.execution_id, node_id=node_id,
                         code=e.error.code, attempts=len(e.attempts))
            await self._checkpoint(run, [(EventType.NODE_FAILED, node_id, {
                "error": e.error.to_dict(),
                "attempts": len(e.attempts),
            })])
            await self.dlq.add_failed_node(ctx, record, sorted(run.nodes[node_id].config))
            return
        except CancellationSignal:
            record.error = "Cancelled by request"
            record.error_code = CancellationSignal.code
            ctx.set_node_status(node_id, NodeStatus.CANCELLED)
            logger.info("Node cancelled", execution_id=ctx.execution_id, node_id=node_id)
            await self._checkpoint(run, [])
            return

        if outcome is None:
            return

        record.output = outcome.output
        record.branch = outcome.branch
        record.branches = outcome.branches
        record.attempts = outcome.attempts
        record.error = None
        record.error_code = None
        record.retryable = None
        ctx.set_node_status(node_id, NodeStatus.SUCCESS)
        if ctx.status == ExecutionStatus.RETRYING and not self._any_retrying(ctx):
            ctx.set_status(ExecutionStatus.RUNNING)

        logger.info("Node completed", execution_id=ctx.execution_id, node_id=node_id,
                    attempts=outcome.attempts, branch=outcome.branch)
        data: Dict[str, Any] = {"output": outcome.output, "attempts": outcome.attempts,
                                "duration": record.duration}
        if outcome.branch:
            data["branch"] = outcome.branch
        await self._checkpoint(run, [(EventType.NODE_COMPLETED, node_id, data)])

    async def _finish(self, run: _Run, duration: float) -> None:
        ctx = run.ctx
        if run.lease_lost:
            raise LeaseLostError(f"Lease for execution '{ctx.execution_id}' was lost")

        interrupted = any(r.status == NodeStatus.CANCELLED for r in ctx.node_results.values())
        if run.stop_reason == STOP_FAILED and run.failure is not None:
            failure = run.failure
            ctx.error = {
                "code": failure.error.code,
                "message": failure.error.message,
                "node_id": failure.node_id,
                "attempts": failure.attempts,
            }
            ctx.set_status(ExecutionStatus.FAILED)
            event = (EventType.FAILED, None, {"error": ctx.error, "duration": round(duration, 4)})
        elif run.stop_reason == STOP_CANCELLED and (interrupted or not ctx.all_nodes_terminal()):
            ctx.error = {"code": CancellationSignal.code, "message": "Cancelled by request"}
            ctx.set_status(ExecutionStatus.CANCELLED)
            event = (EventType.CANCELLED, None, {"error": ctx.error, "duration": round(duration, 4)})
        elif ctx.all_nodes_terminal():
            ctx.set_status(ExecutionStatus.COMPLETED)
            event = (EventType.COMPLETED, None, {"outputs": ctx.outputs, "duration": round(duration, 4)})
        else:
            stuck = ctx.pending_nodes()
            ctx.error = {"code": "STALLED", "message": f"Nodes never became ready: {', '.join(stuck)}"}
            ctx.set_status(ExecutionStatus.FAILED)
            event = (EventType.FAILED, None, {"error": ctx.error, "duration": round(duration, 4)})

        await self._checkpoint(run, [event])
        # Outbox is empty now; this write settles the execution
        await self.store.save_checkpoint(ctx, owner=self.owner_id)
        if run.stop_reason == STOP_CANCELLED:
            await self.store.clear_cancel(ctx.execution_id)

        logger.info("Workflow execution finished", execution_id=ctx.execution_id,
                    status=ctx.status.value, duration=round(duration, 4),
                    error_code=(ctx.error or {}).get("code"))

    async def _checkpoint(self, run: _Run, events: List[PendingEvent]) -> None:
        """Persist the context with ``events`` in its outbox, then publish them.

        Checkpoint writes are serialized per run. An event whose publish never
        happened is still in the last checkpoint and goes out on resume.
        """
        ctx = run.ctx
        async with run.lock:
            ctx.pending_events.extend(
                {"type": event_type.value, "node_id": node_id, "data": data}
                for event_type, node_id, data in events)
            await self.store.save_checkpoint(ctx, owner=self.owner_id)
            await self._drain_outbox(ctx)

    async def _drain_outbox(self, ctx: ExecutionContext) -> None:
        while ctx.pending_events:
            item = ctx.pending_events[0]
            await self.publisher.publish(ctx.execution_id, EventType(item["type"]),
                                         item.get("node_id"), item.get("data") or {})
            ctx.pending_events.pop(0)

    async def _redeliver(self, ctx: ExecutionContext) -> None:
        """Publish the outbox of a terminal checkpoint, then settle it."""
        execution_id = ctx.execution_id
        if not await self.store.acquire_lease(execution_id, self.owner_id):
            raise LeaseLostError(f"Execution '{execution_id}' is owned by another process")
        try:
            logger.info("Re-publishing undelivered events", execution_id=execution_id,
                        count=len(ctx.pending_events))
            await self._drain_outbox(ctx)
            await self.store.save_checkpoint(ctx, owner=self.owner_id)
        finally:
            self.publisher.release(execution_id)
            await self.store.release_lease(execution_id, self.owner_id)
