"""
Lightweight event bus for decoupled graph change notifications.

Follows publisher-subscriber pattern so the WebSocket feed, the mutation
logger and tests can observe the mind map without coupling to the session.

Design Principles:
- Publisher-subscriber pattern (decoupled)
- Supports both sync and async handlers
- Non-blocking (async handlers scheduled via create_task)
- Singleton for global access
- Type-safe events via msgspec

Architecture:
    MindMapSession / SyncQueue -> EventBus -> [WebSocket clients, tests]

Usage:
    from infrastructure.event_bus import get_event_bus, EventType

    async def on_node_created(event: GraphEvent):
        await websocket.send_bytes(encode(event))

    get_event_bus().subscribe_async(EventType.NODE_CREATED, on_node_created)
"""
from typing import Callable, List, Dict, Any, Optional
from enum import Enum
import msgspec
import asyncio
import time
from collections import defaultdict
import logging


logger = logging.getLogger("labbuddy.event_bus")


class EventType(str, Enum):
    """Types of events published by the session and the sync queue."""
    NODE_CREATED = "node_created"
    NODE_UPDATED = "node_updated"
    NODE_DELETED = "node_deleted"
    EDGE_CREATED = "edge_created"
    EDGE_DELETED = "edge_deleted"
    GRAPH_LOADED = "graph_loaded"
    # Recommendation staging
    RECOMMENDATIONS_OFFERED = "recommendations_offered"
    RECOMMENDATION_ACCEPTED = "recommendation_accepted"
    RECOMMENDATIONS_DECLINED = "recommendations_declined"
    RECOMMENDATION_FAILED = "recommendation_failed"
    # Persistence collaborator
    SYNC_FAILED = "sync_failed"


class GraphEvent(msgspec.Struct, kw_only=True):
    """
    Event emitted when the mind map changes.

    Attributes:
        type: Type of event (NODE_CREATED, EDGE_CREATED, etc.)
        payload: Event-specific data, JSON-ready
        timestamp: Unix timestamp when event occurred
        source: Source of event ("session", "sync", "api")
    """
    type: EventType
    payload: Dict[str, Any]
    timestamp: float
    source: str


class EventBus:
    """
    Event bus for mind map change notifications.

    Thread Safety:
        NOT thread-safe. Publish from the event loop thread; async handlers
        are scheduled with create_task on the running loop.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._async_subscribers: Dict[EventType, List[Callable]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: Callable[[GraphEvent], None]):
        """Subscribe to events with a synchronous handler."""
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)
            logger.debug(f"Subscribed sync handler to {event_type.value}")

    def subscribe_async(self, event_type: EventType, handler: Callable[[GraphEvent], Any]):
        """Subscribe to events with an async handler."""
        if handler not in self._async_subscribers[event_type]:
            self._async_subscribers[event_type].append(handler)
            logger.debug(f"Subscribed async handler to {event_type.value}")

    def subscribe_all(self, handler: Callable[[GraphEvent], Any], is_async: bool = False):
        """Subscribe one handler to every event type."""
        for event_type in EventType:
            if is_async:
                self.subscribe_async(event_type, handler)
            else:
                self.subscribe(event_type, handler)

    def publish(self, event: GraphEvent):
        """
        Publish an event to all subscribers.

        Note:
            - Sync handlers run immediately (blocking)
            - Async handlers are scheduled and run in the background
            - Exceptions in handlers are logged but don't propagate
        """
        logger.debug(f"Publishing {event.type.value} from {event.source}")

        for handler in list(self._subscribers[event.type]):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in sync handler for {event.type.value}: {e}",
                    exc_info=True
                )

        async_handlers = list(self._async_subscribers[event.type])
        if not async_handlers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"Cannot schedule async handlers for {event.type.value}: "
                "no event loop running"
            )
            return
        for handler in async_handlers:
            loop.create_task(handler(event))

    def unsubscribe(self, event_type: EventType, handler: Callable):
        """Unsubscribe a handler (must be the same instance)."""
        if handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)
        if handler in self._async_subscribers[event_type]:
            self._async_subscribers[event_type].remove(handler)

    def unsubscribe_all(self, handler: Callable):
        for event_type in EventType:
            self.unsubscribe(event_type, handler)

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
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
    """Get the global event bus instance (singleton)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
        logger.info("Initialized global event bus")
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global bus and its subscribers (for testing)."""
    global _event_bus
    _event_bus = None


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def publish(event_type: EventType, payload: Dict[str, Any], source: str = "session") -> GraphEvent:
    """Build and publish one event on the global bus."""
    event = GraphEvent(
        type=event_type,
        payload=payload,
        timestamp=time.time(),
        source=source,
    )
    get_event_bus().publish(event)
    return event


def publish_mutation(result, source: str = "session") -> List[GraphEvent]:
    """
    Publish one event per entity a MutationResult touched.

    Removals go out before additions so a client replaying the feed never
    sees a reconnection edge before the node it replaces is gone.
    """
    events = []
    for node in result.nodes_removed:
        events.append(publish(EventType.NODE_DELETED, {"node_id": node.id}, source))
    for edge in result.edges_removed:
        events.append(publish(EventType.EDGE_DELETED, {"edge_id": edge.id}, source))
    for node in result.nodes_added:
        events.append(publish(EventType.NODE_CREATED, {"node": msgspec.to_builtins(node)}, source))
    for node in result.nodes_updated:
        events.append(publish(EventType.NODE_UPDATED, {"node": msgspec.to_builtins(node)}, source))
    for edge in result.edges_added:
        events.append(publish(EventType.EDGE_CREATED, {"edge": msgspec.to_builtins(edge)}, source))
    return events
