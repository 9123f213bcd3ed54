"""
Tests for agentloop/core/events.py - Agent Events.

Tests:
- Event serialization
- Sink delivery (sync, async, failing)
- EventBus fan-out and shutdown
"""

import pytest

from agentloop.core.events import Event, EventBus, EventType, emit_event, iter_queue


class TestEvent:
    """Tests for the Event container."""

    def test_to_dict(self):
        event = Event(EventType.TOOL_CALL, {"tool_name": "echo"})

        data = event.to_dict()

        assert data["type"] == "tool_call"
        assert data["data"] == {"tool_name": "echo"}
        assert data["timestamp"] == event.timestamp

    def test_data_defaults_to_empty(self):
        assert Event(EventType.METADATA).data == {}


class TestEmitEvent:
    """Tests for emit_event."""

    @pytest.mark.asyncio
    async def test_sync_sink(self):
        received = []

        await emit_event(received.append, Event(EventType.PLAN))

        assert received[0].type == EventType.PLAN

    @pytest.mark.asyncio
    async def test_async_sink(self, events):
        await emit_event(events, Event(EventType.HANDOFF, {"to": "b"}))

        assert events.of_type(EventType.HANDOFF)[0].data == {"to": "b"}

    @pytest.mark.asyncio
    async def test_no_sink(self):
        await emit_event(None, Event(EventType.PLAN))

    @pytest.mark.asyncio
    async def test_failing_sink_is_swallowed(self):
        def sink(event):
            raise RuntimeError("sink down")

        await emit_event(sink, Event(EventType.PLAN))


class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_fan_out(self):
        bus = EventBus()
        first, second = bus.subscribe(), bus.subscribe()

        await emit_event(bus, Event(EventType.FINAL_ANSWER, {"content": "hi"}))

        assert (await first.get()).data == {"content": "hi"}
        assert (await second.get()).type == EventType.FINAL_ANSWER

    @pytest.mark.asyncio
    async def test_shutdown_ends_iteration(self):
        bus = EventBus()
        queue = bus.subscribe()
        await bus.publish(Event(EventType.PLAN))
        await bus.publish(Event(EventType.METADATA))
        await bus.shutdown()

        received = [event.type async for event in iter_queue(queue)]

        assert received == [EventType.PLAN, EventType.METADATA]

    @pytest.mark.asyncio
    async def test_publish_after_shutdown_ignored(self):
        bus = EventBus()
        queue = bus.subscribe()
        await bus.shutdown()

        await bus.publish(Event(EventType.PLAN))

        assert await queue.get() is None
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe()
        bus.unsubscribe(queue)

        await bus.publish(Event(EventType.PLAN))

        assert queue.empty()
