"""Tests for the event publisher: ordering, replay, subscriptions, sinks."""

import json

from flowengine.core.config import Settings
from flowengine.routers.executions import stream_events
from flowengine.services.events import EventPublisher, EventType, ExecutionEvent


class TestPublish:
    async def test_sequence_is_per_execution(self, publisher):
        a1 = await publisher.publish("exec-a", EventType.STARTED)
        b1 = await publisher.publish("exec-b", EventType.STARTED)
        a2 = await publisher.publish("exec-a", EventType.NODE_STARTED, "fetch", {"attempt": 1})

        assert (a1.seq, a2.seq, b1.seq) == (1, 2, 1)
        assert a2.node_id == "fetch"
        assert a2.data == {"attempt": 1}

    async def test_replay_after_seq(self, publisher):
        for event_type in (EventType.STARTED, EventType.NODE_STARTED, EventType.NODE_COMPLETED):
            await publisher.publish("exec-a", event_type, "n1")

        replayed = await publisher.replay("exec-a", after_seq=1)

        assert [e.seq for e in replayed] == [2, 3]
        assert [e.type for e in replayed] == [EventType.NODE_STARTED, EventType.NODE_COMPLETED]

    async def test_event_json_round_trip(self, publisher):
        event = await publisher.publish("exec-a", EventType.NODE_PARTIAL, "ask", {"delta": "hi"})
        assert ExecutionEvent.from_dict(event.to_dict()) == event
        assert '"type":"nodePartial"' in event.to_json()


class TestSubscriptions:
    async def test_scoped_subscription_ends_after_terminal_event(self, publisher):
        subscription = publisher.subscribe("exec-a")
        await publisher.publish("exec-b", EventType.STARTED)
        await publisher.publish("exec-a", EventType.STARTED)
        await publisher.publish("exec-a", EventType.COMPLETED)

        received = [event async for event in subscription]

        assert [(e.execution_id, e.type) for e in received] == [
            ("exec-a", EventType.STARTED), ("exec-a", EventType.COMPLETED),
        ]
        assert publisher.subscriber_count() == 0

    async def test_global_subscription_sees_every_execution(self, publisher):
        async with publisher.subscribe() as subscription:
            await publisher.publish("exec-a", EventType.STARTED)
            await publisher.publish("exec-b", EventType.STARTED)
            first = await subscription.__anext__()
            second = await subscription.__anext__()
        assert {first.execution_id, second.execution_id} == {"exec-a", "exec-b"}
        assert publisher.subscriber_count() == 0

    async def test_full_queue_drops_oldest(self, store):
        publisher = EventPublisher(store, Settings(_env_file=None, event_queue_size=10))
        subscription = publisher.subscribe("exec-a")
        for _ in range(12):
            await publisher.publish("exec-a", EventType.NODE_PARTIAL, "ask")

        assert subscription.queue.qsize() == 10
        assert (await subscription.__anext__()).seq == 3

    async def test_close_ends_open_subscriptions(self, publisher):
        subscription = publisher.subscribe("exec-a")

        await publisher.close()

        assert [event async for event in subscription] == []
        assert publisher.subscriber_count() == 0


    async def test_released_lock_is_recreated(self, publisher):
        await publisher.publish("exec-a", EventType.STARTED)
        publisher.release("exec-a")
        assert "exec-a" not in publisher._locks

        event = await publisher.publish("exec-a", EventType.NODE_STARTED, "n1")
        assert event.seq == 2

class TestSinks:
    async def test_failing_sink_does_not_block_others(self, publisher):
        delivered = []

        async def broken(event):
            raise RuntimeError("sink down")

        async def recording(event):
            delivered.append(event.seq)

        publisher.add_sink(broken)
        publisher.add_sink(recording)
        await publisher.publish("exec-a", EventType.STARTED)
        publisher.remove_sink(broken)
        await publisher.publish("exec-a", EventType.COMPLETED)

        assert delivered == [1, 2]


class FakeWebSocket:
    """Records sent ``seq`` values; runs ``on_first_send`` once."""

    def __init__(self, on_first_send=None):
        self.seqs = []
        self.on_first_send = on_first_send

    async def send_text(self, text):
        self.seqs.append(json.loads(text)["seq"])
        if self.on_first_send is not None:
            callback, self.on_first_send = self.on_first_send, None
            await callback()


class TestStreaming:
    async def test_dropped_live_events_are_refilled_from_replay(self, store):
        publisher = EventPublisher(store, Settings(_env_file=None, event_queue_size=10))
        await publisher.publish("exec-a", EventType.STARTED)

        async def burst():
            for _ in range(12):
                await publisher.publish("exec-a", EventType.NODE_PARTIAL, "ask", {"delta": "x"})
            await publisher.publish("exec-a", EventType.COMPLETED)

        websocket = FakeWebSocket(on_first_send=burst)
        async with publisher.subscribe("exec-a") as subscription:
            last = await stream_events(websocket, publisher, subscription, "exec-a")

        assert websocket.seqs == list(range(1, 15))
        assert last == 14

    async def test_events_seen_in_replay_and_live_are_sent_once(self, publisher):
        websocket = FakeWebSocket()
        async with publisher.subscribe("exec-a") as subscription:
            await publisher.publish("exec-a", EventType.STARTED)
            await publisher.publish("exec-a", EventType.NODE_STARTED, "n1")
            await publisher.publish("exec-a", EventType.COMPLETED)
            last = await stream_events(websocket, publisher, subscription, "exec-a")

        assert websocket.seqs == [1, 2, 3]
        assert last == 3

    async def test_resume_after_seq(self, publisher):
        for event_type in (EventType.STARTED, EventType.NODE_STARTED, EventType.COMPLETED):
            await publisher.publish("exec-a", event_type)

        websocket = FakeWebSocket()
        async with publisher.subscribe("exec-a") as subscription:
            await stream_events(websocket, publisher, subscription, "exec-a", after=1)

        assert websocket.seqs == [2, 3]
