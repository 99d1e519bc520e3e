"""
Core utilities package.

Status broadcaster, JSON helpers and time helpers.
"""

from bridgewatch.core.event_bus import EventBus, EventType, Event, Subscription, to_wire
from bridgewatch.core.utils import now_ms, utc_now, parse_iso8601, elapsed_ms, sleep_or_stop

__all__ = [
    "EventBus",
    "EventType",
    "Event",
    "Subscription",
    "to_wire",
    "now_ms",
    "utc_now",
    "parse_iso8601",
    "elapsed_ms",
    "sleep_or_stop",
]
