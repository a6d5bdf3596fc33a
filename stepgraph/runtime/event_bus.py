"""
Event Bus - Pub/sub for scheduler step events.

The scheduler publishes one event per lifecycle transition. Consumers either
subscribe on an EventBus (long-lived observers, dashboards) or iterate
``StepScheduler.stream()`` for a single run. Stream modes map onto event
types:

- values:   STEP_COMPLETED, full state after each committed step
- updates:  CHANNELS_UPDATED, only the channels whose version changed
- messages: NODE_MESSAGE, chunks a node emitted mid-step, passed through as-is
- debug:    every other lifecycle event
"""

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events the scheduler publishes."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_CANCELLED = "run_cancelled"

    # Step lifecycle
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    CHANNELS_UPDATED = "channels_updated"

    # Task lifecycle
    TASK_FAILED = "task_failed"
    NODE_MESSAGE = "node_message"


class StreamMode(StrEnum):
    VALUES = "values"
    UPDATES = "updates"
    MESSAGES = "messages"
    DEBUG = "debug"


_MODE_BY_TYPE = {
    EventType.STEP_COMPLETED: StreamMode.VALUES,
    EventType.CHANNELS_UPDATED: StreamMode.UPDATES,
    EventType.NODE_MESSAGE: StreamMode.MESSAGES,
}


@dataclass
class StepEvent:
    """An event emitted by the scheduler."""

    type: EventType
    thread_id: str
    run_id: str | None = None
    step: int | None = None
    node_id: str | None = None  # Which node emitted this event
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def mode(self) -> StreamMode:
        return _MODE_BY_TYPE.get(self.type, StreamMode.DEBUG)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "mode": self.mode.value,
            "thread_id": self.thread_id,
            "run_id": self.run_id,
            "step": self.step,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[StepEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_thread: str | None = None  # Only receive events from this thread
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for scheduler events.

    Example:
        bus = EventBus()

        async def on_step(event: StepEvent):
            print(f"step {event.step} of {event.thread_id}: {event.data['values']}")

        bus.subscribe(event_types=[EventType.STEP_COMPLETED], handler=on_step)
        scheduler = StepScheduler(graph, store, event_bus=bus)
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
        self._event_history: list[StepEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_thread: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_thread: Only receive events from this thread
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
            filter_thread=filter_thread,
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

    async def publish(self, event: StepEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: StepEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_thread and subscription.filter_thread != event.thread_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: StepEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    # Observers never break a run
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        thread_id: str | None = None,
        limit: int = 100,
    ) -> list[StepEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if thread_id:
            events = [e for e in events if e.thread_id == thread_id]
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
        thread_id: str | None = None,
        timeout: float | None = None,
    ) -> StepEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: StepEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: StepEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(event_types=[event_type], handler=handler, filter_thread=thread_id)
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


EventSink = Callable[[StepEvent], None]


class RunEmitter:
    """
    Fans the events of one run out to the bus and to a stream consumer.

    ``message()`` may be called from worker threads (synchronous nodes run in
    ``asyncio.to_thread``); it hops back onto the event loop before touching
    the sink or the bus.
    """

    def __init__(
        self,
        thread_id: str,
        run_id: str,
        event_bus: EventBus | None = None,
        sink: EventSink | None = None,
    ):
        self.thread_id = thread_id
        self.run_id = run_id
        self._bus = event_bus
        self._sink = sink
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._pending: set[asyncio.Task] = set()

    async def emit(
        self,
        event_type: EventType,
        step: int | None = None,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = StepEvent(
            type=event_type,
            thread_id=self.thread_id,
            run_id=self.run_id,
            step=step,
            node_id=node_id,
            data=data or {},
        )
        if self._sink is not None:
            self._sink(event)
        if self._bus is not None:
            await self._bus.publish(event)

    def message(self, step: int, node_id: str, chunk: Any) -> None:
        if threading.get_ident() == self._loop_thread:
            self._message_on_loop(step, node_id, chunk)
        else:
            self._loop.call_soon_threadsafe(self._message_on_loop, step, node_id, chunk)

    def _message_on_loop(self, step: int, node_id: str, chunk: Any) -> None:
        event = StepEvent(
            type=EventType.NODE_MESSAGE,
            thread_id=self.thread_id,
            run_id=self.run_id,
            step=step,
            node_id=node_id,
            data={"chunk": chunk},
        )
        if self._sink is not None:
            self._sink(event)
        if self._bus is not None:
            task = self._loop.create_task(self._bus.publish(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight message publications."""
        # Let call_soon_threadsafe callbacks scheduled by finished tasks run
        await asyncio.sleep(0)
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
