"""
TransferStore: durable keyed storage of transfer records.

One record per source transaction, keyed by ``source_tx_id``. Records are
held in memory and mirrored to a JSON file (``transfers.json`` in the state
directory) written atomically: temp file then ``replace``. File IO runs in an
executor and all access is serialized by an ``asyncio.Lock``.

Ownership:
    The settlement poller writes settlement fields, the arrival matcher
    writes arrival fields. Every update is single-row and idempotent:
    repeating it with identical arguments returns the record unchanged
    and does not touch the file.

State Diagram:

    PENDING ──┬──> SETTLED ──> WATCHING ──┬──> ARRIVED
              │                           │
              ├──> FAILED                 └──> TIMEOUT
              │
              └──> TIMEOUT
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import logging

from bridgewatch.core.json_utils import dumps, dumps_bytes, iso, loads
from bridgewatch.core.utils import parse_iso8601, utc_now
from bridgewatch.errors import (
    DuplicateKeyError,
    InvalidTransitionError,
    RecordNotFoundError,
    StoreUnavailableError,
)

log = logging.getLogger("bridgewatch")

SCHEMA_VERSION = 1


class TransferStatus(str, Enum):
    """Externally visible summary of a transfer record."""
    PENDING = "Pending"
    SETTLED = "Settled"
    FAILED = "Failed"
    WATCHING = "Watching"
    ARRIVED = "Arrived"
    TIMEOUT = "Timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TransferStatus.ARRIVED, TransferStatus.FAILED, TransferStatus.TIMEOUT})

VALID_TRANSITIONS: Dict[TransferStatus, List[TransferStatus]] = {
    TransferStatus.PENDING: [
        TransferStatus.SETTLED,
        TransferStatus.FAILED,
        TransferStatus.TIMEOUT,
    ],
    TransferStatus.SETTLED: [TransferStatus.WATCHING],
    TransferStatus.WATCHING: [TransferStatus.ARRIVED, TransferStatus.TIMEOUT],
    TransferStatus.ARRIVED: [],
    TransferStatus.FAILED: [],
    TransferStatus.TIMEOUT: [],
}


@dataclass
class TransferRecord:
    """One reconciliation record per source transaction."""
    source_tx_id: str
    destination_address: str
    expected_amount: Decimal
    source_submitted_at: datetime

    status: TransferStatus = TransferStatus.PENDING

    # Settlement poller fields
    source_settled_at: Optional[datetime] = None
    source_result: Optional[str] = None

    # Arrival matcher fields
    destination_tx_id: Optional[str] = None
    destination_arrived_at: Optional[datetime] = None
    bridging_duration_ms: Optional[int] = None

    updated_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def timeout_phase(self) -> Optional[str]:
        """'source' or 'destination' for a timed-out record, else None."""
        if self.status is not TransferStatus.TIMEOUT:
            return None
        return "source" if self.source_settled_at is None else "destination"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_tx_id": self.source_tx_id,
            "destination_address": self.destination_address,
            "expected_amount": str(self.expected_amount),
            "source_submitted_at": iso(self.source_submitted_at),
            "status": self.status.value,
            "source_settled_at": iso(self.source_settled_at),
            "source_result": self.source_result,
            "destination_tx_id": self.destination_tx_id,
            "destination_arrived_at": iso(self.destination_arrived_at),
            "bridging_duration_ms": self.bridging_duration_ms,
            "updated_at": iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferRecord":
        def _ts(key: str) -> Optional[datetime]:
            raw = data.get(key)
            return parse_iso8601(raw) if raw else None

        duration = data.get("bridging_duration_ms")
        return cls(
            source_tx_id=data["source_tx_id"],
            destination_address=data["destination_address"],
            expected_amount=Decimal(str(data["expected_amount"])),
            source_submitted_at=parse_iso8601(data["source_submitted_at"]),
            status=TransferStatus(data.get("status", TransferStatus.PENDING.value)),
            source_settled_at=_ts("source_settled_at"),
            source_result=data.get("source_result"),
            destination_tx_id=data.get("destination_tx_id"),
            destination_arrived_at=_ts("destination_arrived_at"),
            bridging_duration_ms=int(duration) if duration is not None else None,
            updated_at=_ts("updated_at"),
        )


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


class TransferStore:
    """
    Keyed transfer storage with optional JSON file persistence.

    Usage:
        store = TransferStore(state_dir="state")
        await store.open()

        await store.create(record)
        await store.update_settlement(tx_id, settled_at, "tesSUCCESS")
        record = await store.get(tx_id)

    Pass ``state_dir=None`` for a purely in-memory store (tests).
    """

    FILE_NAME = "transfers.json"

    def __init__(
        self,
        state_dir: Optional[str] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.path: Optional[Path] = Path(state_dir) / self.FILE_NAME if state_dir else None
        self._records: Dict[str, TransferRecord] = {}
        self._lock = asyncio.Lock()
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def open(self) -> int:
        """
        Load persisted records. Fails fast if the store is unusable.

        Returns:
            Number of records loaded

        Raises:
            StoreUnavailableError: directory not writable or file corrupt
        """
        if self.path is None:
            return 0
        loop = asyncio.get_running_loop()
        async with self._lock:
            records = await loop.run_in_executor(None, self._load_file)
            self._records = records
        self._log_event("transfer_store_opened", path=str(self.path), records=len(records))
        return len(records)

    def _load_file(self) -> Dict[str, TransferRecord]:
        if self.path is None:
            raise StoreUnavailableError("in-memory store has no file")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            marker = self.path.with_suffix(".writecheck")
            marker.write_bytes(b"")
            marker.unlink()
        except OSError as exc:
            raise StoreUnavailableError(f"state directory not writable: {self.path.parent}: {exc}") from exc

        if not self.path.exists():
            return {}
        try:
            doc = loads(self.path.read_bytes())
            rows = doc.get("transfers", {})
            return {key: TransferRecord.from_dict(row) for key, row in rows.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise StoreUnavailableError(f"cannot read transfer store {self.path}: {exc}") from exc

    def _save_file(self, payload: bytes) -> None:
        if self.path is None:
            raise StoreUnavailableError("in-memory store has no file")
        tmp = self.path.with_suffix(".tmp")
        tmp.write_bytes(payload)
        tmp.replace(self.path)

    async def _flush(self, records: Dict[str, TransferRecord]) -> None:
        """Persist the given record set. Caller holds the lock."""
        if self.path is None:
            return
        payload = dumps_bytes(
            {
                "version": SCHEMA_VERSION,
                "transfers": {k: r.to_dict() for k, r in records.items()},
            },
            indent=True,
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._save_file, payload)
        except OSError as exc:
            raise StoreUnavailableError(f"cannot write transfer store {self.path}: {exc}") from exc

    async def _commit(self, record: TransferRecord) -> TransferRecord:
        """Persist a staged record, then make it visible. Caller holds the lock."""
        record.updated_at = utc_now()
        await self._flush({**self._records, record.source_tx_id: record})
        self._records[record.source_tx_id] = record
        return copy.copy(record)

    # -------------------------------------------------------------------------
    # Row operations
    # -------------------------------------------------------------------------

    def _require(self, source_tx_id: str) -> TransferRecord:
        record = self._records.get(source_tx_id)
        if record is None:
            raise RecordNotFoundError(source_tx_id)
        return record

    @staticmethod
    def _check_transition(record: TransferRecord, target: TransferStatus) -> None:
        if target not in VALID_TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"{record.source_tx_id}: {record.status.value} -> {target.value} not allowed"
            )

    @staticmethod
    def _check_set_once(record: TransferRecord, name: str, value: Any) -> None:
        current = getattr(record, name)
        if current is not None and current != value:
            raise InvalidTransitionError(
                f"{record.source_tx_id}: {name} already set to {current!r}"
            )

    async def create(self, record: TransferRecord) -> TransferRecord:
        """
        Insert a new record.

        Raises:
            DuplicateKeyError: a record with this source_tx_id exists
        """
        async with self._lock:
            if record.source_tx_id in self._records:
                raise DuplicateKeyError(record.source_tx_id)
            return await self._commit(copy.copy(record))

    async def update_settlement(
        self,
        source_tx_id: str,
        settled_at: datetime,
        result_code: Optional[str] = None,
    ) -> TransferRecord:
        """Record source settlement and move PENDING -> SETTLED."""
        async with self._lock:
            record = self._require(source_tx_id)
            if (
                record.source_settled_at == settled_at
                and record.source_result == result_code
                and record.status is not TransferStatus.PENDING
            ):
                return copy.copy(record)
            self._check_set_once(record, "source_settled_at", settled_at)
            self._check_set_once(record, "source_result", result_code)
            self._check_transition(record, TransferStatus.SETTLED)

            staged = copy.copy(record)
            staged.source_settled_at = settled_at
            staged.source_result = result_code
            staged.status = TransferStatus.SETTLED
            return await self._commit(staged)

    async def update_arrival(
        self,
        source_tx_id: str,
        destination_tx_id: str,
        arrived_at: datetime,
        bridging_duration_ms: int,
    ) -> TransferRecord:
        """Record the matched destination transfer and move WATCHING -> ARRIVED."""
        if bridging_duration_ms < 0:
            raise ValueError(f"bridging_duration_ms must be >= 0, got {bridging_duration_ms}")

        async with self._lock:
            record = self._require(source_tx_id)
            if (
                record.status is TransferStatus.ARRIVED
                and record.destination_tx_id == destination_tx_id
                and record.destination_arrived_at == arrived_at
                and record.bridging_duration_ms == bridging_duration_ms
            ):
                return copy.copy(record)
            self._check_set_once(record, "destination_tx_id", destination_tx_id)
            self._check_set_once(record, "destination_arrived_at", arrived_at)
            self._check_set_once(record, "bridging_duration_ms", bridging_duration_ms)
            self._check_transition(record, TransferStatus.ARRIVED)

            staged = copy.copy(record)
            staged.destination_tx_id = destination_tx_id
            staged.destination_arrived_at = arrived_at
            staged.bridging_duration_ms = bridging_duration_ms
            staged.status = TransferStatus.ARRIVED
            return await self._commit(staged)

    async def update_status(
        self,
        source_tx_id: str,
        status: TransferStatus,
        result_code: Optional[str] = None,
    ) -> TransferRecord:
        """
        Move a record to FAILED, WATCHING or TIMEOUT.

        SETTLED and ARRIVED carry data and go through update_settlement /
        update_arrival instead.
        """
        if status in (TransferStatus.SETTLED, TransferStatus.ARRIVED, TransferStatus.PENDING):
            raise InvalidTransitionError(f"use the dedicated update for {status.value}")

        async with self._lock:
            record = self._require(source_tx_id)
            if record.status is status and (result_code is None or record.source_result == result_code):
                return copy.copy(record)
            self._check_transition(record, status)
            staged = copy.copy(record)
            if result_code is not None:
                self._check_set_once(record, "source_result", result_code)
                staged.source_result = result_code
            staged.status = status
            return await self._commit(staged)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get(self, source_tx_id: str) -> TransferRecord:
        """
        Raises:
            RecordNotFoundError: no record for this id
        """
        async with self._lock:
            return copy.copy(self._require(source_tx_id))

    async def list_records(self, status: Optional[TransferStatus] = None) -> List[TransferRecord]:
        async with self._lock:
            return [
                copy.copy(r)
                for r in self._records.values()
                if status is None or r.status is status
            ]

    async def list_active(self) -> List[TransferRecord]:
        async with self._lock:
            return [copy.copy(r) for r in self._records.values() if not r.is_terminal]

    async def find_active(
        self,
        destination_address: str,
        expected_amount: Decimal,
    ) -> Optional[TransferRecord]:
        """Non-terminal record watching the same destination and amount, if any."""
        async with self._lock:
            for r in self._records.values():
                if (
                    not r.is_terminal
                    and _same_address(r.destination_address, destination_address)
                    and r.expected_amount == expected_amount
                ):
                    return copy.copy(r)
        return None

    async def count_for_address(self, destination_address: str) -> int:
        async with self._lock:
            return sum(
                1 for r in self._records.values()
                if _same_address(r.destination_address, destination_address)
            )

    def __len__(self) -> int:
        return len(self._records)
