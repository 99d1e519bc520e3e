"""
Time and scheduling helpers.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone

# XRPL ledger times count seconds from 2000-01-01T00:00:00Z
RIPPLE_EPOCH_OFFSET = 946684800

_ONE_MS = timedelta(milliseconds=1)


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso8601(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the trailing ``Z`` used by both XRPL (``close_time_iso``) and
    Blockscout explorers, and fractional seconds of any length up to
    microseconds. Naive inputs are assumed to be UTC.
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        tail = rest[len(digits):]
        digits = (digits + "000000")[:6]
        text = f"{head}.{digits}{tail}"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def from_ripple_time(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds + RIPPLE_EPOCH_OFFSET, tz=timezone.utc)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds from start to end (negative if end precedes start)."""
    return (end - start) // _ONE_MS


async def sleep_or_stop(stop: asyncio.Event, delay: float) -> bool:
    """
    Wait ``delay`` seconds unless ``stop`` is set first.

    Returns:
        True if stopped, False if the full delay elapsed
    """
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
