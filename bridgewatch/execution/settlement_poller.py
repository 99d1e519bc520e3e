"""
SettlementPoller: watches the source ledger until a transaction is final.

Polls the ledger for the transaction's result code on a fixed interval and
resolves to one of:

    PENDING ──┬──> SETTLED   (tesSUCCESS, close time captured)
              ├──> FAILED    (any other result code, no retry)
              └──> TIMEOUT   (attempt ceiling reached)

The settlement timestamp is the ledger's close time, never the time the
response was received: the arrival matcher orders destination transfers
against it.

Resources:
    One ledger connection is held for the whole poll and released on every
    exit path (settled, failed, timeout, stop signal, cancellation).

Errors:
    Query failures are transient: counted, logged and retried on the next
    tick. Only the three terminal states above are ever reported.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncContextManager, Callable, Optional, TYPE_CHECKING

import httpx

from bridgewatch.core.event_bus import EventType
from bridgewatch.core.json_utils import dumps, iso
from bridgewatch.core.utils import sleep_or_stop
from bridgewatch.errors import LedgerQueryError
from bridgewatch.state.transfer_store import TransferStatus

if TYPE_CHECKING:
    from bridgewatch.core.event_bus import EventBus
    from bridgewatch.infra.ledger_client import LedgerClient
    from bridgewatch.monitoring.metrics_rich import ReconMetrics
    from bridgewatch.state.transfer_store import TransferStore

import logging

log = logging.getLogger("bridgewatch")

PHASE = "source"

LedgerFactory = Callable[[], AsyncContextManager["LedgerClient"]]


class SettlementState(Enum):
    SETTLED = "Settled"
    FAILED = "Failed"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"   # stop signal, nothing written


@dataclass
class SettlementConfig:
    """Configuration for SettlementPoller."""
    poll_interval_sec: float = 5.0
    max_attempts: int = 300

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class SettlementOutcome:
    """Result of one settlement poll."""
    source_tx_id: str
    state: SettlementState
    attempts: int = 0
    errors: int = 0
    settled_at: Optional[datetime] = None
    result_code: Optional[str] = None
    last_error: Optional[str] = None


class SettlementPoller:
    """
    Source settlement poller.

    Usage:
        poller = SettlementPoller(
            ledger_factory=lambda: LedgerClient(cfg.xrpl_url),
            store=store,
            event_bus=bus,
            config=SettlementConfig(poll_interval_sec=5.0, max_attempts=300),
        )

        outcome = await poller.run(tx_hash, stop_event=stop)
        if outcome.state is SettlementState.SETTLED:
            ...
    """

    def __init__(
        self,
        ledger_factory: LedgerFactory,
        store: "TransferStore",
        event_bus: "EventBus",
        metrics: Optional["ReconMetrics"] = None,
        config: Optional[SettlementConfig] = None,
    ) -> None:
        """
        Args:
            ledger_factory: Returns a fresh ledger client (async context manager)
            store: Transfer record store
            event_bus: Status broadcaster
            metrics: Optional Prometheus metrics
            config: Optional configuration
        """
        self.ledger_factory = ledger_factory
        self.store = store
        self.event_bus = event_bus
        self.metrics = metrics
        self.config = config or SettlementConfig()

        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event.endswith("_error") else logging.INFO
        log.log(level, dumps({"event": event, **kwargs}))

    async def run(
        self,
        source_tx_id: str,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SettlementOutcome:
        """
        Poll until the transaction is final, the ceiling is reached or
        stop_event is set.

        Raises:
            StoreError: persisting a transition failed
        """
        stop = stop_event or asyncio.Event()
        outcome = SettlementOutcome(source_tx_id=source_tx_id, state=SettlementState.TIMEOUT)

        self._log_event(
            "settlement_poll_started",
            source_tx_id=source_tx_id,
            interval_sec=self.config.poll_interval_sec,
            max_attempts=self.config.max_attempts,
        )

        async with self.ledger_factory() as ledger:
            while outcome.attempts < self.config.max_attempts:
                if await sleep_or_stop(stop, self.config.poll_interval_sec):
                    outcome.state = SettlementState.CANCELLED
                    self._log_event(
                        "settlement_poll_cancelled",
                        source_tx_id=source_tx_id,
                        attempts=outcome.attempts,
                    )
                    return outcome

                outcome.attempts += 1
                if self.metrics:
                    self.metrics.record_poll(PHASE)

                try:
                    status = await ledger.transaction_status(source_tx_id)
                except (LedgerQueryError, httpx.HTTPError, asyncio.TimeoutError, OSError) as exc:
                    outcome.errors += 1
                    outcome.last_error = f"{type(exc).__name__}: {exc}"
                    if self.metrics:
                        self.metrics.record_poll_error(PHASE)
                    self._log_event(
                        "settlement_poll_error",
                        source_tx_id=source_tx_id,
                        attempt=outcome.attempts,
                        error=outcome.last_error,
                    )
                    continue

                if status.is_success:
                    outcome.state = SettlementState.SETTLED
                    outcome.settled_at = status.close_time
                    outcome.result_code = status.result_code
                    await self._settle(outcome)
                    return outcome

                if status.is_final:
                    outcome.state = SettlementState.FAILED
                    outcome.result_code = status.result_code
                    await self._fail(outcome)
                    return outcome

            await self._timeout(outcome)
            return outcome

    async def _settle(self, outcome: SettlementOutcome) -> None:
        if outcome.settled_at is None:
            raise ValueError(f"{outcome.source_tx_id}: settled outcome without a close time")
        await self.store.update_settlement(
            outcome.source_tx_id, outcome.settled_at, outcome.result_code
        )
        await self.event_bus.emit(
            EventType.TRANSFER_SETTLED,
            source="settlement",
            sourceTxId=outcome.source_tx_id,
            status=TransferStatus.SETTLED.value,
            sourceSettledAt=iso(outcome.settled_at),
            sourceResult=outcome.result_code,
        )
        self._log_event(
            "transfer_settled",
            source_tx_id=outcome.source_tx_id,
            settled_at=iso(outcome.settled_at),
            attempts=outcome.attempts,
            errors=outcome.errors,
        )

    async def _fail(self, outcome: SettlementOutcome) -> None:
        await self.store.update_status(
            outcome.source_tx_id, TransferStatus.FAILED, result_code=outcome.result_code
        )
        await self.event_bus.emit(
            EventType.TRANSFER_FAILED,
            source="settlement",
            sourceTxId=outcome.source_tx_id,
            status=TransferStatus.FAILED.value,
            sourceResult=outcome.result_code,
        )
        if self.metrics:
            self.metrics.record_terminal(TransferStatus.FAILED.value, PHASE)
        self._log_event(
            "transfer_failed",
            source_tx_id=outcome.source_tx_id,
            result_code=outcome.result_code,
            attempts=outcome.attempts,
        )

    async def _timeout(self, outcome: SettlementOutcome) -> None:
        await self.store.update_status(outcome.source_tx_id, TransferStatus.TIMEOUT)
        await self.event_bus.emit(
            EventType.TRANSFER_TIMEOUT,
            source="settlement",
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
            last_error=outcome.last_error,
        )
