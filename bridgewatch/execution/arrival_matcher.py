"""
ArrivalMatcher: finds the bridged transfer on the destination chain.

There is no identifier shared between the two ledgers, so the destination
transfer is matched by heuristic. An inbound transfer from the index matches
when ALL of:

1. its recipient equals the destination address (case-insensitive)
2. its decoded amount (raw_value / 10**decimals) is within the tolerance
   of the expected amount
3. its timestamp is strictly after the source settlement time

The first qualifying item in index order wins. Callers make the amount
unique per request (see AmountTagger) so concurrent transfers to the same
address stay distinguishable.

Arrival before settlement:
    Rejected by default. ``early_arrival_grace_ms`` widens the window to
    absorb clock skew between the chains; an early arrival accepted that
    way is recorded with a bridging duration of 0, never a negative one.

State: WATCHING ──┬──> ARRIVED
                  └──> TIMEOUT
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, TYPE_CHECKING

import httpx

from bridgewatch.core.event_bus import EventType
from bridgewatch.core.json_utils import dumps, iso
from bridgewatch.core.utils import elapsed_ms, parse_iso8601, sleep_or_stop
from bridgewatch.errors import IndexFetchError
from bridgewatch.state.transfer_store import TransferStatus

if TYPE_CHECKING:
    from bridgewatch.core.event_bus import EventBus
    from bridgewatch.infra.explorer_client import ExplorerClient
    from bridgewatch.monitoring.metrics_rich import ReconMetrics
    from bridgewatch.state.transfer_store import TransferStore

import logging

log = logging.getLogger("bridgewatch")

PHASE = "destination"

DEFAULT_DECIMALS = 18
DEFAULT_TOLERANCE = Decimal("1e-9")


@dataclass(frozen=True)
class IndexTransfer:
    """One inbound transfer reported by the destination index."""
    recipient: str
    amount: Decimal
    tx_id: str
    timestamp: datetime


def decode_amount(raw_value: Any, decimals: Any) -> Decimal:
    """
    Scale a raw integer token amount by its decimals.

    Raises:
        ValueError: raw_value or decimals is not numeric
    """
    try:
        raw = Decimal(str(raw_value))
        scale = int(decimals)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"bad amount {raw_value!r} / decimals {decimals!r}") from exc
    if not raw.is_finite():
        raise ValueError(f"bad amount {raw_value!r}")
    return raw.scaleb(-scale)


def parse_index_item(item: Dict[str, Any]) -> Optional[IndexTransfer]:
    """
    Normalize a Blockscout token-transfer item. Returns None for items
    missing a recipient, amount, transaction id or timestamp.

    Field variance handled:
    - recipient: ``to.hash`` or a bare ``to`` string
    - decimals: ``total.decimals``, else ``token.decimals``, else 18
    - tx id: ``transaction_hash`` or ``tx_hash``
    """
    to = item.get("to")
    recipient = to.get("hash") if isinstance(to, dict) else to
    if not isinstance(recipient, str) or not recipient:
        return None

    total = item.get("total")
    if not isinstance(total, dict) or total.get("value") in (None, ""):
        return None
    token = item.get("token") if isinstance(item.get("token"), dict) else {}
    decimals = total.get("decimals")
    if decimals in (None, ""):
        decimals = token.get("decimals")
    if decimals in (None, ""):
        decimals = DEFAULT_DECIMALS

    tx_id = item.get("transaction_hash") or item.get("tx_hash")
    timestamp = item.get("timestamp")
    if not tx_id or not timestamp:
        return None

    try:
        amount = decode_amount(total["value"], decimals)
        ts = parse_iso8601(str(timestamp))
    except ValueError:
        return None

    return IndexTransfer(recipient=recipient, amount=amount, tx_id=str(tx_id), timestamp=ts)


def find_match(
    items: Iterable[Dict[str, Any]],
    destination_address: str,
    expected_amount: Decimal,
    settled_at: datetime,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    early_arrival_grace_ms: int = 0,
) -> Optional[Tuple[IndexTransfer, int]]:
    """
    First index item satisfying recipient, amount and ordering checks.

    Returns:
        (transfer, bridging_duration_ms) or None. The duration is never
        negative.
    """
    wanted = destination_address.lower()
    earliest = settled_at - timedelta(milliseconds=early_arrival_grace_ms)

    for item in items:
        transfer = parse_index_item(item)
        if transfer is None:
            continue
        if transfer.recipient.lower() != wanted:
            continue
        if abs(transfer.amount - expected_amount) > tolerance:
            continue
        if transfer.timestamp <= earliest:
            continue
        return transfer, max(0, elapsed_ms(settled_at, transfer.timestamp))

    return None


class ArrivalState(Enum):
    ARRIVED = "Arrived"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"   # stop signal, nothing written


@dataclass
class MatcherConfig:
    """Configuration for ArrivalMatcher."""
    poll_interval_sec: float = 5.0
    max_attempts: int = 300
    amount_tolerance: Decimal = DEFAULT_TOLERANCE
    early_arrival_grace_ms: int = 0

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class ArrivalOutcome:
    """Result of one arrival watch."""
    source_tx_id: str
    state: ArrivalState
    attempts: int = 0
    errors: int = 0
    items_seen: int = 0
    destination_tx_id: Optional[str] = None
    arrived_at: Optional[datetime] = None
    bridging_duration_ms: Optional[int] = None
    last_error: Optional[str] = None


class ArrivalMatcher:
    """
    Destination arrival matcher.

    Usage:
        matcher = ArrivalMatcher(
            index=explorer,
            store=store,
            event_bus=bus,
            config=MatcherConfig(poll_interval_sec=5.0),
        )

        outcome = await matcher.run(
            tx_hash, "0xabc...", Decimal("90.0001"), settled_at, stop_event=stop,
        )
    """

    def __init__(
        self,
        index: "ExplorerClient",
        store: "TransferStore",
        event_bus: "EventBus",
        metrics: Optional["ReconMetrics"] = None,
        config: Optional[MatcherConfig] = None,
    ) -> None:
        """
        Args:
            index: Destination transfer index client
            store: Transfer record store
            event_bus: Status broadcaster
            metrics: Optional Prometheus metrics
            config: Optional configuration
        """
        self.index = index
        self.store = store
        self.event_bus = event_bus
        self.metrics = metrics
        self.config = config or MatcherConfig()

        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event.endswith("_error") else logging.INFO
        log.log(level, dumps({"event": event, **kwargs}))

    async def run(
        self,
        source_tx_id: str,
        destination_address: str,
        expected_amount: Decimal,
        settled_at: datetime,
        stop_event: Optional[asyncio.Event] = None,
    ) -> ArrivalOutcome:
        """
        Watch the index until a matching transfer appears, the ceiling is
        reached or stop_event is set.

        Raises:
            StoreError: persisting a transition failed
        """
        stop = stop_event or asyncio.Event()
        outcome = ArrivalOutcome(source_tx_id=source_tx_id, state=ArrivalState.TIMEOUT)

        await self._watch(source_tx_id)

        while outcome.attempts < self.config.max_attempts:
            if await sleep_or_stop(stop, self.config.poll_interval_sec):
                outcome.state = ArrivalState.CANCELLED
                self._log_event(
                    "arrival_poll_cancelled",
                    source_tx_id=source_tx_id,
                    attempts=outcome.attempts,
                )
                return outcome

            outcome.attempts += 1
            if self.metrics:
                self.metrics.record_poll(PHASE)

            try:
                items = await self.index.inbound_transfers(destination_address)
            except (IndexFetchError, httpx.HTTPError, asyncio.TimeoutError, OSError) as exc:
                outcome.errors += 1
                outcome.last_error = f"{type(exc).__name__}: {exc}"
                if self.metrics:
                    self.metrics.record_poll_error(PHASE)
                self._log_event(
                    "arrival_poll_error",
                    source_tx_id=source_tx_id,
                    attempt=outcome.attempts,
                    error=outcome.last_error,
                )
                continue

            outcome.items_seen += len(items)
            match = find_match(
                items,
                destination_address,
                expected_amount,
                settled_at,
                tolerance=self.config.amount_tolerance,
                early_arrival_grace_ms=self.config.early_arrival_grace_ms,
            )
            if match is None:
                continue

            transfer, duration_ms = match
            outcome.state = ArrivalState.ARRIVED
            outcome.destination_tx_id = transfer.tx_id
            outcome.arrived_at = transfer.timestamp
            outcome.bridging_duration_ms = duration_ms
            await self._arrive(outcome)
            return outcome

        await self._timeout(outcome)
        return outcome

    async def _watch(self, source_tx_id: str) -> None:
        record = await self.store.get(source_tx_id)
        if record.status is TransferStatus.WATCHING:
            # resumed after restart, already announced
            return
        await self.store.update_status(source_tx_id, TransferStatus.WATCHING)
        await self.event_bus.emit(
            EventType.TRANSFER_WATCHING,
            source="arrival",
            sourceTxId=source_tx_id,
            status=TransferStatus.WATCHING.value,
        )
        self._log_event(
            "arrival_watch_started",
            source_tx_id=source_tx_id,
            interval_sec=self.config.poll_interval_sec,
            max_attempts=self.config.max_attempts,
        )

    async def _arrive(self, outcome: ArrivalOutcome) -> None:
        if (
            outcome.destination_tx_id is None
            or outcome.arrived_at is None
            or outcome.bridging_duration_ms is None
        ):
            raise ValueError(f"{outcome.source_tx_id}: arrival outcome without a matched transfer")
        await self.store.update_arrival(
            outcome.source_tx_id,
            outcome.destination_tx_id,
            outcome.arrived_at,
            outcome.bridging_duration_ms,
        )
        await self.event_bus.emit(
            EventType.TRANSFER_ARRIVED,
            source="arrival",
            sourceTxId=outcome.source_tx_id,
            status=TransferStatus.ARRIVED.value,
            destinationTxId=outcome.destination_tx_id,
            bridgingDurationMs=outcome.bridging_duration_ms,
        )
        if self.metrics:
            self.metrics.record_terminal(TransferStatus.ARRIVED.value, PHASE)
            self.metrics.record_arrival(outcome.bridging_duration_ms)
        self._log_event(
            "transfer_arrived",
            source_tx_id=outcome.source_tx_id,
            destination_tx_id=outcome.destination_tx_id,
            arrived_at=iso(outcome.arrived_at),
            bridging_duration_ms=outcome.bridging_duration_ms,
            attempts=outcome.attempts,
        )

    async def _timeout(self, outcome: ArrivalOutcome) -> None:
        await self.store.update_status(outcome.source_tx_id, TransferStatus.TIMEOUT)
        await self.event_bus.emit(
            EventType.TRANSFER_TIMEOUT,
            source="arrival",
            sourceTxId=outcome.source_tx_id,
            status=TransferStatus.TIMEOUT.value,
            phase=PHASE,
        )
        if self.metrics:
            self.metrics.record_terminal(TransferStatus.TIMEOUT.value, PHASE)
        self._log_event(
            "transfer_timeout",
            source_tx_id=outcome.source_tx_id,
            phase=PHASE,
            attempts=outcome.attempts,
            errors=outcome.errors,
            items_seen=outcome.items_seen,
            last_error=outcome.last_error,
        )
