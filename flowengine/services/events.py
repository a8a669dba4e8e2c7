"""Execution event publisher.

Publishes ordered progress events per execution. Every event gets a
per-execution sequence number, is persisted for replay, then fanned out to
in-process subscribers (bounded queues) and registered sinks. Delivery is
at-least-once: a reconnecting observer replays from the last ``seq`` it saw.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import orjson

from flowengine.constants import (
    EVENT_CANCELLED, EVENT_COMPLETED, EVENT_FAILED, EVENT_NODE_COMPLETED,
    EVENT_NODE_FAILED, EVENT_NODE_PARTIAL, EVENT_NODE_RETRYING, EVENT_NODE_SKIPPED,
    EVENT_NODE_STARTED, EVENT_STARTED, TERMINAL_EVENTS,
)
from flowengine.core.config import Settings
from flowengine.core.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    STARTED = EVENT_STARTED
    NODE_STARTED = EVENT_NODE_STARTED
    NODE_COMPLETED = EVENT_NODE_COMPLETED
    NODE_FAILED = EVENT_NODE_FAILED
    NODE_RETRYING = EVENT_NODE_RETRYING
    NODE_SKIPPED = EVENT_NODE_SKIPPED
    NODE_PARTIAL = EVENT_NODE_PARTIAL
    COMPLETED = EVENT_COMPLETED
    FAILED = EVENT_FAILED
    CANCELLED = EVENT_CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_EVENTS


@dataclass
class ExecutionEvent:
    execution_id: str
    seq: int
    type: EventType
    node_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "seq": self.seq,
            "type": self.type.value,
            "node_id": self.node_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionEvent":
        return cls(
            execution_id=data["execution_id"],
            seq=data["seq"],
            type=EventType(data["type"]),
            node_id=data.get("node_id"),
            timestamp=data.get("timestamp", time.time()),
            data=data.get("data") or {},
        )

    def to_json(self) -> str:
        return orjson.dumps(self.to_dict()).decode()


EventSink = Callable[[ExecutionEvent], Awaitable[None]]


class Subscription:
    """Async iterator over live events.

    Registered at construction, so nothing published after ``subscribe()``
    returns is missed. A subscription scoped to one execution ends after
    that execution's terminal event.
    """

    def __init__(self, publisher: "EventPublisher", execution_id: Optional[str], maxsize: int):
        self.execution_id = execution_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._publisher = publisher
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> ExecutionEvent:
        if self._closed and self.queue.empty():
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            self.close()
            raise StopAsyncIteration
        if self.execution_id is not None and event.type.is_terminal:
            self.close()
        return event

    def offer(self, event: Optional[ExecutionEvent]) -> None:
        """Enqueue without blocking; the oldest event is dropped when full.

        Consumers see the drop as a ``seq`` gap and re-read it with ``replay``.
        """
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            dropped = self.queue.get_nowait()
            self.queue.put_nowait(event)
            logger.warning("Subscriber queue full, dropped oldest event",
                           execution_id=self.execution_id,
                           dropped_seq=dropped.seq if dropped else None)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._publisher._unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class EventPublisher:
    """Publishes per-execution ordered events to the store, subscribers and sinks."""

    def __init__(self, store, settings: Settings):
        self.store = store
        self.settings = settings
        self._locks: Dict[str, asyncio.Lock] = {}
        self._subscriptions: Set[Subscription] = set()
        self._sinks: List[EventSink] = []

    # =========================================================================
    # PUBLISH
    # =========================================================================

    async def publish(self, execution_id: str, event_type: EventType,
                      node_id: Optional[str] = None,
                      data: Optional[Dict[str, Any]] = None) -> ExecutionEvent:
        """Assign the next ``seq``, persist, then deliver.

        Raises:
            PersistenceError: the event could not be persisted.
        """
        event_type = EventType(event_type)
        lock = self._locks.setdefault(execution_id, asyncio.Lock())
        async with lock:
            seq = await self.store.next_event_seq(execution_id)
            event = ExecutionEvent(
                execution_id=execution_id,
                seq=seq,
                type=event_type,
                node_id=node_id,
                data=data or {},
            )
            await self.store.append_event(execution_id, event.to_dict())

            for subscription in list(self._subscriptions):
                if subscription.execution_id in (None, execution_id):
                    subscription.offer(event)

            await self._deliver_to_sinks(event)

        if event_type.is_terminal:
            self._locks.pop(execution_id, None)

        logger.debug("Published event", execution_id=execution_id, seq=seq,
                     type=event_type.value, node_id=node_id)
        return event

    async def _deliver_to_sinks(self, event: ExecutionEvent) -> None:
        if not self._sinks:
            return

        async def deliver(sink: EventSink):
            try:
                await sink(event)
            except Exception as e:
                logger.warning("Event sink failed", execution_id=event.execution_id,
                               seq=event.seq, error=str(e))

        try:
            async with asyncio.TaskGroup() as tg:
                for sink in list(self._sinks):
                    tg.create_task(deliver(sink))
        except* Exception as eg:
            for exc in eg.exceptions:
                logger.warning("Event sink TaskGroup exception", error=str(exc))

    # =========================================================================
    # SUBSCRIBE / REPLAY
    # =========================================================================

    def subscribe(self, execution_id: Optional[str] = None) -> Subscription:
        """Live events for one execution, or for all when ``execution_id`` is None."""
        subscription = Subscription(self, execution_id, self.settings.event_queue_size)
        self._subscriptions.add(subscription)
        logger.debug("Subscriber added", execution_id=execution_id,
                     subscribers=len(self._subscriptions))
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    async def replay(self, execution_id: str, after_seq: int = 0) -> List[ExecutionEvent]:
        """Persisted events with ``seq > after_seq`` (reconnect support)."""
        raw = await self.store.get_events(execution_id, after_seq)
        return [ExecutionEvent.from_dict(item) for item in raw]

    def release(self, execution_id: str) -> None:
        """Drop per-execution state once this process stops publishing for it."""
        self._locks.pop(execution_id, None)

    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def close(self) -> None:
        """End every open subscription."""
        for subscription in list(self._subscriptions):
            subscription.offer(None)
            subscription._closed = True
        self._subscriptions.clear()
