"""
Agent Events for agentloop.

Every observable step of a run is reported as an `Event` to an optional sink:
- tool_call: a tool was executed, errored, skipped, or rejected
- tool_approval: an approval-gated call is pending, approved, or rejected
- summarization: older tool outputs were compacted into a summary
- guardrail: a guardrail rule produced an incident
- handoff: control passed to another agent runtime
- final_answer: the run produced its final content
- plan: the todo plan was read or written
- metadata: free-form run metadata

A sink is any callable (sync or async) taking an Event, or an `EventBus`.
Sink failures are logged and never abort the run.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)


# ============================================================================
# EVENT TYPES
# ============================================================================

class EventType(str, Enum):
    """Event types emitted by the agent loop."""

    TOOL_CALL = "tool_call"
    TOOL_APPROVAL = "tool_approval"
    SUMMARIZATION = "summarization"
    GUARDRAIL = "guardrail"
    HANDOFF = "handoff"
    FINAL_ANSWER = "final_answer"
    PLAN = "plan"
    METADATA = "metadata"


# ============================================================================
# EVENT MODEL
# ============================================================================

class Event:
    """
    Generic event container.

    Attributes:
        type: Event type (from EventType enum).
        data: Event payload (dict with event-specific data).
        timestamp: ISO timestamp of event creation.
    """

    def __init__(self, event_type: EventType, data: Optional[Dict[str, Any]] = None):
        self.type = event_type
        self.data = data or {}
        self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}

    def __repr__(self) -> str:
        return f"Event(type={self.type}, data={self.data}, timestamp={self.timestamp})"


# ============================================================================
# EVENT BUS
# ============================================================================

class EventBus:
    """
    Fan-out event sink backed by asyncio.Queue subscribers.

    Pass an EventBus anywhere an event sink is accepted; each subscriber
    receives every published event.

    Example:
        >>> bus = EventBus()
        >>> queue = bus.subscribe()
        >>> result = await agent.invoke("hi", on_event=bus)
        >>> await bus.shutdown()
        >>> async for event in iter_queue(queue):
        ...     print(event.type)
    """

    def __init__(self):
        self._queues: list[asyncio.Queue] = []
        self._shutdown = False

        logger.debug("EventBus initialized")

    def subscribe(self) -> asyncio.Queue:
        """
        Subscribe to event stream.

        Returns:
            asyncio.Queue that will receive events.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        logger.debug(f"New subscriber (total: {len(self._queues)})")
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)
            logger.debug(f"Subscriber removed (total: {len(self._queues)})")

    async def publish(self, event: Event) -> None:
        """
        Publish event to all subscribers.

        Args:
            event: Event to publish.
        """
        if self._shutdown:
            logger.warning("EventBus is shutdown, ignoring event")
            return

        for queue in self._queues:
            await queue.put(event)

        logger.debug(f"Published event: {event.type} to {len(self._queues)} subscribers")

    async def __call__(self, event: Event) -> None:
        await self.publish(event)

    async def shutdown(self) -> None:
        """
        Shutdown event bus.

        Sends a None sentinel to every subscriber queue so `iter_queue` stops.
        """
        self._shutdown = True
        for queue in self._queues:
            await queue.put(None)
        self._queues.clear()
        logger.info("EventBus shutdown complete")


EventSink = Union[Callable[[Event], Any], EventBus]


# ============================================================================
# EMISSION
# ============================================================================

async def emit_event(sink: Optional[EventSink], event: Event) -> None:
    """
    Deliver an event to a sink, swallowing sink failures.

    Args:
        sink: Callable (sync or async) or EventBus; None disables emission.
        event: Event to deliver.
    """
    if sink is None:
        return
    try:
        result = sink(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Event sink failed for {event.type.value}: {e}")


async def iter_queue(queue: asyncio.Queue):
    """
    Async iterator for asyncio.Queue.

    Yields items from queue until None sentinel is received.
    """
    while True:
        item = await queue.get()
        if item is None:
            break
        yield item


__all__ = [
    "EventType",
    "Event",
    "EventBus",
    "EventSink",
    "emit_event",
    "iter_queue",
]
