"""
Lightweight event bus for decoupled Dag mutation notifications.

Follows publisher-subscriber pattern so observers (mutation logger, tests,
UIs) can watch a Dag without the container knowing about them.

Design Principles:
- Publisher-subscriber pattern (decoupled)
- Supports both sync and async handlers
- Non-blocking (async handlers scheduled via create_task)
- Handler failures are logged, never raised back into the Dag
- Type-safe events via msgspec

Architecture:
    Dag -> EventBus -> [MutationLogger, test recorders, ...]

Usage:
    from core.dag import Dag
    from infrastructure.event_bus import EventBus, EventType

    bus = EventBus()
    dag = Dag(event_bus=bus)

    def on_edge(event):
        print(event.payload["from_id"], "->", event.payload["to_id"])

    bus.subscribe(EventType.EDGE_INSERTED, on_edge)
"""
from typing import Callable, Iterable, List, Dict, Any, Optional, Set
from enum import Enum
import msgspec
import asyncio
import time
from collections import defaultdict
import logging


logger = logging.getLogger("dagstore.event_bus")


class EventType(str, Enum):
    """Types of events published by a Dag."""
    NODE_INSERTED = "node_inserted"
    NODE_UPDATED = "node_updated"
    NODE_REMOVED = "node_removed"
    EDGE_INSERTED = "edge_inserted"
    EDGE_UPDATED = "edge_updated"
    EDGE_REMOVED = "edge_removed"
    EDGE_REJECTED = "edge_rejected"


class DagEvent(msgspec.Struct, kw_only=True):
    """
    Event emitted when a Dag changes.

    Attributes:
        type: Type of event (NODE_INSERTED, EDGE_REJECTED, etc.)
        payload: Identifiers involved ("node_id", or "from_id"/"to_id").
                 Node and edge payloads are never included.
        timestamp: Unix timestamp when event occurred
        source: Publisher name
    """
    type: EventType
    payload: Dict[str, Any]
    timestamp: float
    source: str = "dag"


def make_event(event_type: EventType, source: str = "dag", **payload: Any) -> DagEvent:
    """Build a DagEvent stamped with the current time."""
    return DagEvent(type=event_type, payload=payload, timestamp=time.time(), source=source)


class EventBus:
    """
    Event bus for Dag change notifications.

    A Dag only publishes once a mutation is complete, so handlers always see
    consistent indices and may call back into the Dag. A multi-step mutation
    (node removal with its cascaded edges) is delivered through publish_many
    as one ordered batch.

    Thread Safety:
        NOT thread-safe. The Dag itself is single-threaded, and so is this.

    Async handlers:
        Scheduled as tasks on the running loop. The bus keeps a reference to
        each task until it finishes; `drain()` awaits whatever is still pending.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._async_subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType, handler: Callable[[DagEvent], None]):
        """
        Subscribe to events with a synchronous handler.

        Args:
            event_type: Type of event to listen for
            handler: Callable that takes DagEvent as argument
        """
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)
            logger.debug(f"Subscribed sync handler to {event_type.value}")

    def subscribe_all(self, handler: Callable[[DagEvent], None]):
        """Subscribe a synchronous handler to every event type."""
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def subscribe_async(self, event_type: EventType, handler: Callable[[DagEvent], Any]):
        """Subscribe an async handler; it runs as a task on the current loop."""
        if handler not in self._async_subscribers[event_type]:
            self._async_subscribers[event_type].append(handler)
            logger.debug(f"Subscribed async handler to {event_type.value}")

    # =========================================================================
    # DELIVERY
    # =========================================================================

    def _run_sync(self, event: DagEvent) -> None:
        for handler in list(self._subscribers[event.type]):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in sync handler for {event.type.value}: {e}",
                    exc_info=True
                )

    def _schedule_async(self, event: DagEvent) -> None:
        handlers = list(self._async_subscribers[event.type])
        if not handlers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"Cannot schedule {len(handlers)} async handler(s) for "
                f"{event.type.value}: no event loop running"
            )
            return

        for handler in handlers:
            coro = None
            try:
                coro = handler(event)
                task = loop.create_task(coro)
            except Exception as e:
                if asyncio.iscoroutine(coro):
                    coro.close()
                logger.error(
                    f"Error scheduling async handler for {event.type.value}: {e}",
                    exc_info=True
                )
                continue
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def publish(self, event: DagEvent):
        """
        Publish one event.

        Sync handlers run immediately, async ones are scheduled. Handler
        exceptions are logged and never reach the publisher.
        """
        logger.debug(
            f"Publishing {event.type.value} from {event.source} "
            f"(payload keys: {list(event.payload.keys())})"
        )
        self._run_sync(event)
        self._schedule_async(event)

    def publish_many(self, events: Iterable[DagEvent]):
        """Publish a batch of events in order."""
        for event in events:
            self.publish(event)

    @property
    def pending_tasks(self) -> int:
        """Async handler tasks that have not finished yet."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled async handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def unsubscribe(self, event_type: EventType, handler: Callable):
        """Unsubscribe a handler (must be the same instance)."""
        if handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)
            logger.debug(f"Unsubscribed sync handler from {event_type.value}")

        if handler in self._async_subscribers[event_type]:
            self._async_subscribers[event_type].remove(handler)
            logger.debug(f"Unsubscribed async handler from {event_type.value}")

    def unsubscribe_all(self, handler: Callable):
        """Remove a handler from every event type."""
        for event_type in EventType:
            self.unsubscribe(event_type, handler)

    def clear_subscribers(self, event_type: Optional[EventType] = None):
        """
        Clear all subscribers for an event type (or all types).

        Warning:
            This is primarily for testing.
        """
        if event_type is None:
            self._subscribers.clear()
            self._async_subscribers.clear()
            logger.info("Cleared all event subscribers")
        else:
            self._subscribers[event_type].clear()
            self._async_subscribers[event_type].clear()
            logger.info(f"Cleared subscribers for {event_type.value}")

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        """
        Get count of subscribers for an event type.

        Args:
            event_type: Event type to count (None = all types)

        Returns:
            Total number of subscribers (sync + async)
        """
        if event_type is None:
            total = sum(len(handlers) for handlers in self._subscribers.values())
            total += sum(len(handlers) for handlers in self._async_subscribers.values())
            return total
        return (
            len(self._subscribers[event_type]) +
            len(self._async_subscribers[event_type])
        )


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the process-wide event bus, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
        logger.info("Initialized global event bus")
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide event bus. Primarily for testing."""
    global _event_bus
    _event_bus = None
