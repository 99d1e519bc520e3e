"""
State management package.

Durable storage of transfer records.
"""

from bridgewatch.state.transfer_store import (
    TransferStore,
    TransferRecord,
    TransferStatus,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
)

__all__ = [
    "TransferStore",
    "TransferRecord",
    "TransferStatus",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
]
