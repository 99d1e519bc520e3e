"""
Fast JSON utilities backed by orjson.

Usage:
    from bridgewatch.core.json_utils import dumps, loads

    log.info(dumps({"event": "transfer_settled", "source_tx_id": tx}))
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

import orjson


def _default(obj: Any) -> Any:
    # orjson has no Decimal support; keep full precision as a string
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, BaseException):
        return f"{type(obj).__name__}: {obj}"
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def dumps(obj: Any) -> str:
    """JSON encode to string."""
    return orjson.dumps(obj, default=_default).decode("utf-8")


def dumps_bytes(obj: Any, indent: bool = False) -> bytes:
    """JSON encode to bytes."""
    option = orjson.OPT_INDENT_2 if indent else 0
    return orjson.dumps(obj, default=_default, option=option)


def loads(s: str | bytes) -> Any:
    """JSON decode."""
    return orjson.loads(s)


def iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None
