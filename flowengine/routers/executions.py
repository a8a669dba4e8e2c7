"""Workflow and execution routes: graph storage, triggers, inspection, live events."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from flowengine.core.container import container
from flowengine.core.errors import (
    ExecutionNotFound, GraphValidationError, LeaseLostError, PersistenceError, WorkflowNotFound,
)
from flowengine.core.logging import get_logger
from flowengine.models.graph import WorkflowGraph
from flowengine.services.events import EventPublisher, Subscription
from flowengine.services.execution import ExecutionStore, validate_graph
from flowengine.services.execution.scheduler import WorkflowScheduler

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["executions"])
ws_router = APIRouter(tags=["websocket"])


class TriggerRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)
    version: Optional[int] = Field(default=None, ge=1)


def _http_error(error: Exception) -> HTTPException:
    """Map engine errors to HTTP status codes."""
    if isinstance(error, GraphValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, (WorkflowNotFound, ExecutionNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, LeaseLostError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, PersistenceError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=error.to_dict())


# =============================================================================
# WORKFLOWS
# =============================================================================

@router.post("/workflows", status_code=status.HTTP_201_CREATED)
async def save_workflow(
    graph: WorkflowGraph,
    store: ExecutionStore = Depends(lambda: container.store())
):
    """Validate and store a new version of a workflow graph."""
    try:
        stored = await store.save_graph(graph)
    except (GraphValidationError, PersistenceError) as e:
        raise _http_error(e)
    return {"id": stored.id, "version": stored.version}


@router.post("/workflows/validate")
async def validate_workflow(graph: WorkflowGraph):
    """Validate a graph without storing it."""
    return validate_graph(graph).to_dict()


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    version: Optional[int] = Query(default=None, ge=1),
    store: ExecutionStore = Depends(lambda: container.store())
):
    graph = await store.load_graph(workflow_id, version)
    if graph is None:
        raise _http_error(WorkflowNotFound(f"Workflow '{workflow_id}' not found"))
    return graph.model_dump(mode="json")


@router.post("/workflows/{workflow_id}/executions", status_code=status.HTTP_202_ACCEPTED)
async def trigger_execution(
    workflow_id: str,
    request: TriggerRequest,
    scheduler: WorkflowScheduler = Depends(lambda: container.scheduler())
):
    """Start an execution; the run continues in the background."""
    try:
        return await scheduler.trigger(workflow_id, request.payload, request.version)
    except (WorkflowNotFound, GraphValidationError, PersistenceError) as e:
        raise _http_error(e)


# =============================================================================
# EXECUTIONS
# =============================================================================

@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    scheduler: WorkflowScheduler = Depends(lambda: container.scheduler())
):
    """Latest checkpoint of an execution."""
    snapshot = await scheduler.get_execution(execution_id)
    if snapshot is None:
        raise _http_error(ExecutionNotFound(f"Execution '{execution_id}' not found"))
    return snapshot


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    scheduler: WorkflowScheduler = Depends(lambda: container.scheduler())
):
    try:
        accepted = await scheduler.cancel(execution_id)
    except (ExecutionNotFound, PersistenceError) as e:
        raise _http_error(e)
    return {"execution_id": execution_id, "cancel_requested": accepted}


@router.post("/executions/{execution_id}/resume", status_code=status.HTTP_202_ACCEPTED)
async def resume_execution(
    execution_id: str,
    scheduler: WorkflowScheduler = Depends(lambda: container.scheduler())
):
    try:
        return await scheduler.resume(execution_id)
    except (ExecutionNotFound, WorkflowNotFound, PersistenceError) as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}/logs")
async def get_execution_logs(
    execution_id: str,
    node_id: Optional[str] = None,
    store: ExecutionStore = Depends(lambda: container.store())
):
    """Append-only attempt log."""
    try:
        entries = await store.get_logs(execution_id, node_id)
    except PersistenceError as e:
        raise _http_error(e)
    return {"execution_id": execution_id, "entries": [e.to_dict() for e in entries]}


@router.get("/executions/{execution_id}/events")
async def get_execution_events(
    execution_id: str,
    after: int = Query(default=0, ge=0),
    publisher: EventPublisher = Depends(lambda: container.publisher())
):
    """Persisted events with ``seq > after``."""
    events = await publisher.replay(execution_id, after)
    return {"execution_id": execution_id, "events": [e.to_dict() for e in events]}


# =============================================================================
# DEAD LETTER QUEUE
# =============================================================================

@router.get("/dlq")
async def list_dlq(
    workflow_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    store: ExecutionStore = Depends(lambda: container.store())
):
    entries = await store.get_dlq_entries(workflow_id, limit)
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


@router.delete("/dlq/{entry_id}")
async def remove_dlq_entry(
    entry_id: str,
    store: ExecutionStore = Depends(lambda: container.store())
):
    if not await store.remove_from_dlq(entry_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail={"code": "DLQ_ENTRY_NOT_FOUND", "message": f"No DLQ entry '{entry_id}'"})
    return {"removed": entry_id}


# =============================================================================
# LIVE EVENTS
# =============================================================================

async def stream_events(websocket, publisher: EventPublisher, subscription: Subscription,
                        execution_id: str, after: int = 0) -> int:
    """Send persisted events after ``after``, then live ones, in ``seq`` order.

    ``subscription`` must be open before this is called, so events published
    during the replay arrive twice at most; duplicates are dropped by ``seq``.
    A gap in the live stream (a full subscriber queue dropped events) is filled
    from the persisted stream. Returns the last ``seq`` sent.
    """
    last_seq = after
    finished = False

    async def send(events) -> None:
        nonlocal last_seq, finished
        for event in events:
            if event.seq <= last_seq:
                continue
            await websocket.send_text(event.to_json())
            last_seq = event.seq
            finished = event.type.is_terminal

    await send(await publisher.replay(execution_id, after))
    if finished:
        return last_seq

    async for event in subscription:
        if event.seq > last_seq + 1:
            logger.info("[WebSocket] Gap in live events, replaying", execution_id=execution_id,
                        after=last_seq, received=event.seq)
            await send(await publisher.replay(execution_id, last_seq))
        else:
            await send([event])
        if finished:
            break
    return last_seq


@ws_router.websocket("/ws/executions/{execution_id}")
async def execution_events_websocket(websocket: WebSocket, execution_id: str, after: int = 0):
    """Replay persisted events after ``after``, then stream live ones."""
    await websocket.accept()
    publisher: EventPublisher = container.publisher()

    async with publisher.subscribe(execution_id) as subscription:
        try:
            await stream_events(websocket, publisher, subscription, execution_id, after)
        except WebSocketDisconnect:
            logger.debug("[WebSocket] Client disconnected", execution_id=execution_id)
            return

    await websocket.close()
