"""
Exception hierarchy for the reconciliation engine.
"""

from __future__ import annotations


class BridgewatchError(Exception):
    """Base class for all engine errors."""


class ConfigError(BridgewatchError):
    """Invalid or missing configuration. Fatal at startup."""


class StoreError(BridgewatchError):
    """Base class for transfer store errors."""


class StoreUnavailableError(StoreError):
    """Store could not be opened or written."""


class DuplicateKeyError(StoreError):
    def __init__(self, source_tx_id: str) -> None:
        super().__init__(f"transfer already exists: {source_tx_id}")
        self.source_tx_id = source_tx_id


class RecordNotFoundError(StoreError):
    def __init__(self, source_tx_id: str) -> None:
        super().__init__(f"transfer not found: {source_tx_id}")
        self.source_tx_id = source_tx_id


class InvalidTransitionError(StoreError):
    """Update would revert a terminal state, skip a state or rewrite a set-once field."""


class LedgerQueryError(BridgewatchError):
    """Source ledger query failed (transient)."""


class IndexFetchError(BridgewatchError):
    """Destination transfer index fetch failed (transient)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AmbiguousTransferError(BridgewatchError):
    """An active transfer already watches the same destination and amount."""
