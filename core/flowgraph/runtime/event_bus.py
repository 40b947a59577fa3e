"""
Event Bus - Pub/sub notifications about graph runs.

Lets callers observe a run without touching node code:
- Run lifecycle (started / completed)
- Node lifecycle (started / completed / failed)
- Port firings along control-flow edges
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"

    # Control flow
    PORT_FIRED = "port_fired"

    # Custom events
    CUSTOM = "custom"


@dataclass
class FlowEvent:
    """An event emitted during a graph run."""

    type: EventType
    run_id: str | None = None
    node_id: str | None = None  # Which node emitted this event
    port: str | None = None  # For PORT_FIRED
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "port": self.port,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[FlowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for graph runs.

    Features:
    - Async event handling
    - Type-based subscriptions
    - Run/node filtering
    - Event history for debugging

    Example:
        bus = EventBus()

        async def on_failure(event: FlowEvent):
            print(f"Node {event.node_id} failed: {event.data['error']}")

        bus.subscribe(event_types=[EventType.NODE_FAILED], handler=on_failure)

        await graph.run(GraphExecutionContext(event_bus=bus))
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[FlowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_run: Only receive events from this run
            filter_node: Only receive events from this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")

        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from events.

        Returns:
            True if subscription was found and removed
        """
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: FlowEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            subscription.handler
            for subscription in self._subscriptions.values()
            if self._matches(subscription, event)
        ]

        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: FlowEvent) -> bool:
        """Check if a subscription matches an event."""
        if event.type not in subscription.event_types:
            return False

        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False

        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False

        return True

    async def _execute_handlers(
        self,
        event: FlowEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(
        self,
        run_id: str,
        entry_nodes: list[str],
        parameters: dict[str, str] | None = None,
    ) -> None:
        """Emit run started event."""
        await self.publish(
            FlowEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                data={"entry_nodes": entry_nodes, "parameters": parameters or {}},
            )
        )

    async def emit_run_completed(
        self,
        run_id: str,
        failed_nodes: list[str] | None = None,
    ) -> None:
        """Emit run completed event."""
        await self.publish(
            FlowEvent(
                type=EventType.RUN_COMPLETED,
                run_id=run_id,
                data={"failed_nodes": failed_nodes or []},
            )
        )

    async def emit_node_started(self, run_id: str | None, node_id: str, name: str) -> None:
        """Emit node started event."""
        await self.publish(
            FlowEvent(
                type=EventType.NODE_STARTED,
                run_id=run_id,
                node_id=node_id,
                data={"name": name},
            )
        )

    async def emit_node_completed(
        self,
        run_id: str | None,
        node_id: str,
        output: dict[str, Any] | None = None,
    ) -> None:
        """Emit node completed event."""
        await self.publish(
            FlowEvent(
                type=EventType.NODE_COMPLETED,
                run_id=run_id,
                node_id=node_id,
                data={"output": output or {}},
            )
        )

    async def emit_node_failed(self, run_id: str | None, node_id: str, error: str) -> None:
        """Emit node failed event."""
        await self.publish(
            FlowEvent(
                type=EventType.NODE_FAILED,
                run_id=run_id,
                node_id=node_id,
                data={"error": error},
            )
        )

    async def emit_port_fired(
        self,
        run_id: str | None,
        node_id: str,
        port: str,
        targets: list[str],
    ) -> None:
        """Emit port fired event."""
        await self.publish(
            FlowEvent(
                type=EventType.PORT_FIRED,
                run_id=run_id,
                node_id=node_id,
                port=port,
                data={"targets": targets},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        if node_id:
            events = [e for e in events if e.node_id == node_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: FlowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: FlowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_run=run_id,
            filter_node=node_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
