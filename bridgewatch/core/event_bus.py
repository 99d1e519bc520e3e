"""
Event Bus: status broadcaster for transfer transitions.

Every status transition of a transfer record is published here so that
interested listeners (the UI socket layer, metrics, logging) get a
low-latency notification. The transfer store stays the durable source of
truth; the bus is fire-and-forget.

Delivery semantics:
- Best-effort and non-durable: no event log, no replay
- The subscriber set is captured when an event is published, so a listener
  that subscribes later never receives earlier events
- Error isolation (one handler failure doesn't stop others)
- A full queue drops the event and counts it
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Dict, List, Optional, Tuple, Union

from bridgewatch.core.json_utils import dumps

log = logging.getLogger("bridgewatch")


class EventType(Enum):
    """
    Transfer lifecycle events.

    Naming convention: NOUN_STATE, one per status a record can enter.
    """
    TRANSFER_CREATED = auto()     # Record created, source tx submitted
    TRANSFER_SETTLED = auto()     # Source ledger reported success
    TRANSFER_FAILED = auto()      # Source ledger reported a failure code
    TRANSFER_WATCHING = auto()    # Arrival matcher started
    TRANSFER_ARRIVED = auto()     # Destination transfer matched
    TRANSFER_TIMEOUT = auto()     # Attempt ceiling reached in either phase


@dataclass
class Event:
    """
    Event container.

    - type: EventType enum value
    - data: Dict with event-specific payload (camelCase wire fields)
    - timestamp_ms: When event was created
    - source: Component that emitted it (optional)
    - correlation_id: source_tx_id of the transfer
    """
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None
    correlation_id: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name}, ts={self.timestamp_ms}, source={self.source})"


# Handler type: async function or sync function taking Event
Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    """Internal subscription record."""
    handler: Handler
    priority: int = 0  # Higher = called first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None


def to_wire(event: Event) -> Tuple[str, Dict[str, Any]]:
    """
    Render an event for the external UI stream.

    Returns ``("transferCreated", {...})`` for creations and
    ``("transferUpdated", {...})`` for everything else. Fields with no value
    are omitted so a consumer merging updates never sees a known value
    replaced by null.
    """
    payload = {k: v for k, v in event.data.items() if v is not None}
    if event.type is EventType.TRANSFER_CREATED:
        return "transferCreated", payload
    return "transferUpdated", payload


class EventBus:
    """
    Status broadcaster.

    Usage:
        bus = EventBus()

        bus.subscribe(EventType.TRANSFER_ARRIVED, on_arrived)
        bus.subscribe_all(push_to_sockets)

        await bus.emit(EventType.TRANSFER_SETTLED, source="settlement",
                       sourceTxId=tx_id, status="Settled")

        # Start processing (in background task)
        asyncio.create_task(bus.start())

        bus.stop()
    """

    DEFAULT_QUEUE_SIZE = 0

    def __init__(
        self,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        """
        Args:
            queue_size: Max queue size (0 = unlimited)
            log_event: Callback for structured logging
        """
        self._log = log_event or self._default_log

        self._subscribers: Dict[EventType, List[Subscription]] = {}
        self._global_subscribers: List[Subscription] = []

        # Each queued item carries the subscribers captured at publish time
        self._queue: asyncio.Queue[Tuple[Event, List[Subscription]]] = asyncio.Queue(
            maxsize=max(queue_size, 0)
        )

        self._running = False
        # Set by stop(); a start() that runs afterwards returns immediately
        self._stopped = False

        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
            "queue_high_water": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    @staticmethod
    def _insert_by_priority(subs: List[Subscription], sub: Subscription) -> None:
        insert_idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < sub.priority:
                insert_idx = i
                break
        subs.insert(insert_idx, sub)

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to a specific event type.

        Args:
            event_type: Type of events to receive
            handler: Async or sync function to handle events
            priority: Higher priority handlers called first (default 0)
            filter_fn: Optional filter function (receives event, returns bool)
            name: Optional name for debugging

        Returns:
            Subscription object (for unsubscribing)
        """
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert_by_priority(self._subscribers.setdefault(event_type, []), sub)

        self._log(
            "event_bus_subscribe",
            event_type=event_type.name,
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def subscribe_all(
        self,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to every event type. Global subscribers are called before
        type-specific ones.
        """
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert_by_priority(self._global_subscribers, sub)

        self._log(
            "event_bus_subscribe_all",
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def unsubscribe(
        self,
        event_type: Optional[EventType],
        subscription: Subscription,
    ) -> bool:
        """
        Remove a subscription (event_type None for a global one).

        Returns:
            True if removed, False if not found
        """
        subs = self._global_subscribers if event_type is None else self._subscribers.get(event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    # -------------------------------------------------------------------------
    # Event Publishing
    # -------------------------------------------------------------------------

    def _snapshot(self, event_type: EventType) -> List[Subscription]:
        handlers: List[Subscription] = []
        handlers.extend(self._global_subscribers)
        handlers.extend(self._subscribers.get(event_type, []))
        return handlers

    def publish_nowait(self, event: Event) -> bool:
        """
        Queue an event for delivery to the current subscribers.

        Returns:
            True if queued, False if the queue was full (event dropped)
        """
        try:
            self._queue.put_nowait((event, self._snapshot(event.type)))
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log("event_bus_queue_full", event_type=event.type.name, dropped=True)
            return False

        self._stats["events_published"] += 1
        qsize = self._queue.qsize()
        if qsize > self._stats["queue_high_water"]:
            self._stats["queue_high_water"] = qsize
        return True

    async def publish(self, event: Event) -> bool:
        """Publish an event. Never blocks on subscribers."""
        return self.publish_nowait(event)

    def create_event(
        self,
        event_type: EventType,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **data: Any,
    ) -> Event:
        return Event(type=event_type, data=data, source=source, correlation_id=correlation_id)

    async def emit(
        self,
        event_type: EventType,
        source: Optional[str] = None,
        **data: Any,
    ) -> bool:
        """
        Create and publish an event in one call. ``sourceTxId`` in data is
        used as the correlation id.
        """
        event = self.create_event(
            event_type, source=source, correlation_id=data.get("sourceTxId"), **data
        )
        return await self.publish(event)

    # -------------------------------------------------------------------------
    # Event Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Deliver queued events until stop() is called.
        Should be run as a background task.
        """
        if self._stopped:
            return
        self._running = True
        self._log("event_bus_started")

        while self._running:
            try:
                try:
                    event, handlers = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._deliver(event, handlers)
            except asyncio.CancelledError:
                self._log("event_bus_cancelled")
                break
            except Exception as e:
                self._log("event_bus_error", error=str(e), error_type=type(e).__name__)

        self._log("event_bus_stopped")

    async def _deliver(self, event: Event, handlers: List[Subscription]) -> None:
        for sub in handlers:
            if sub.filter_fn and not sub.filter_fn(event):
                continue

            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._stats["handler_errors"] += 1
                self._log(
                    "event_bus_handler_error",
                    event_type=event.type.name,
                    handler_name=sub.name or "unknown",
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self._stats["events_processed"] += 1

    def stop(self) -> None:
        """Stop processing events. Also applies to a start() not yet running."""
        self._stopped = True
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """
        Deliver all queued events.

        Returns:
            Number of events delivered
        """
        count = 0
        deadline = time.time() + timeout

        while not self._queue.empty() and time.time() < deadline:
            try:
                event, handlers = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._deliver(event, handlers)
            count += 1

        return count

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "global_subscriber_count": len(self._global_subscribers),
            "running": self._running,
        }

    def get_subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, []))
