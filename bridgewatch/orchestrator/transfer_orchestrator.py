"""
TransferOrchestrator: sequences the reconciliation of each transfer.

For every submitted source transaction the orchestrator creates the record,
announces it, and starts one background task that runs:

    SettlementPoller ── SETTLED ──> ArrivalMatcher
                    └─ FAILED / TIMEOUT: done, no destination funds expected

Submission returns as soon as the record exists; both phases continue in
the background. Transfers run concurrently and share only the store and
the event bus.

Guarantees:
    - One task per source_tx_id; the matcher only ever starts after the
      settlement poller reported SETTLED (sequencing, no lock)
    - Poll-phase errors never escape a task; they are logged and the record
      stays in its last consistent state
    - shutdown() signals every task to stop at its next wait and releases
      their ledger connections
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from bridgewatch.core.event_bus import EventType
from bridgewatch.core.json_utils import dumps, iso
from bridgewatch.core.utils import utc_now
from bridgewatch.errors import AmbiguousTransferError, DuplicateKeyError, InvalidTransitionError
from bridgewatch.execution.arrival_matcher import ArrivalOutcome
from bridgewatch.execution.settlement_poller import SettlementOutcome, SettlementState
from bridgewatch.state.transfer_store import TransferRecord, TransferStatus

if TYPE_CHECKING:
    from bridgewatch.core.event_bus import EventBus
    from bridgewatch.execution.arrival_matcher import ArrivalMatcher
    from bridgewatch.execution.settlement_poller import SettlementPoller
    from bridgewatch.monitoring.metrics_rich import ReconMetrics
    from bridgewatch.state.transfer_store import TransferStore

import logging

log = logging.getLogger("bridgewatch")


@dataclass
class OrchestratorConfig:
    """Configuration for TransferOrchestrator."""
    # Refuse a transfer whose (destination, amount) pair is already being watched
    reject_ambiguous: bool = True

    # Grace period for tasks to exit after a stop signal
    shutdown_timeout_sec: float = 10.0

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class ReconciliationResult:
    """Final result of one transfer task."""
    source_tx_id: str
    settlement: Optional[SettlementOutcome] = None
    arrival: Optional[ArrivalOutcome] = None
    error: Optional[str] = None


@dataclass
class _ActiveTransfer:
    task: "asyncio.Task[ReconciliationResult]"
    stop: asyncio.Event = field(default_factory=asyncio.Event)


class TransferOrchestrator:
    """
    Reconciliation orchestrator.

    Usage:
        orchestrator = TransferOrchestrator(
            store=store,
            event_bus=bus,
            settlement_poller=poller,
            arrival_matcher=matcher,
        )

        record = await orchestrator.submit(tx_hash, "0xabc...", Decimal("90.0001"))
        result = await orchestrator.wait(tx_hash)

        await orchestrator.shutdown()
    """

    def __init__(
        self,
        store: "TransferStore",
        event_bus: "EventBus",
        settlement_poller: "SettlementPoller",
        arrival_matcher: "ArrivalMatcher",
        metrics: Optional["ReconMetrics"] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.settlement_poller = settlement_poller
        self.arrival_matcher = arrival_matcher
        self.metrics = metrics
        self.config = config or OrchestratorConfig()

        self._active: Dict[str, _ActiveTransfer] = {}
        self._results: Dict[str, ReconciliationResult] = {}
        self._closing = False
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.ERROR if event.endswith("_error") else logging.INFO
        log.log(level, dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(
        self,
        source_tx_id: str,
        destination_address: str,
        expected_amount: Decimal,
        submitted_at: Optional[datetime] = None,
    ) -> TransferRecord:
        """
        Register a submitted source transaction and start reconciling it.

        Raises:
            DuplicateKeyError: source_tx_id already registered
            AmbiguousTransferError: an active transfer watches the same
                destination and amount
            RuntimeError: orchestrator is shutting down
        """
        if self._closing:
            raise RuntimeError("orchestrator is shutting down")
        if source_tx_id in self._active:
            raise DuplicateKeyError(source_tx_id)

        expected_amount = Decimal(expected_amount)
        if self.config.reject_ambiguous:
            clash = await self.store.find_active(destination_address, expected_amount)
            if clash is not None:
                raise AmbiguousTransferError(
                    f"{clash.source_tx_id} is already watching {destination_address} "
                    f"for amount {expected_amount}"
                )

        record = await self.store.create(
            TransferRecord(
                source_tx_id=source_tx_id,
                destination_address=destination_address,
                expected_amount=expected_amount,
                source_submitted_at=submitted_at or utc_now(),
            )
        )
        await self.event_bus.emit(
            EventType.TRANSFER_CREATED,
            source="orchestrator",
            sourceTxId=source_tx_id,
            status=record.status.value,
            destinationAddress=destination_address,
            expectedAmount=str(expected_amount),
            sourceSubmittedAt=iso(record.source_submitted_at),
        )
        if self.metrics:
            self.metrics.transfers_created.inc()
        self._log_event(
            "transfer_created",
            source_tx_id=source_tx_id,
            destination_address=destination_address,
            expected_amount=str(expected_amount),
        )

        self._spawn(record)
        return record

    async def resume(self) -> List[str]:
        """
        Re-attach tasks for non-terminal records left by a previous run.

        Returns:
            source_tx_ids that were resumed
        """
        resumed: List[str] = []
        for record in await self.store.list_active():
            if record.source_tx_id in self._active:
                continue
            self._spawn(record)
            resumed.append(record.source_tx_id)
            self._log_event(
                "transfer_resumed",
                source_tx_id=record.source_tx_id,
                status=record.status.value,
            )
        return resumed

    def _spawn(self, record: TransferRecord) -> None:
        stop = asyncio.Event()
        task = asyncio.create_task(
            self._reconcile(record, stop), name=f"reconcile-{record.source_tx_id}"
        )
        self._active[record.source_tx_id] = _ActiveTransfer(task=task, stop=stop)
        if self.metrics:
            self.metrics.transfers_active.set(len(self._active))
        task.add_done_callback(lambda t, key=record.source_tx_id: self._on_done(key, t))

    def _on_done(self, source_tx_id: str, task: "asyncio.Task[ReconciliationResult]") -> None:
        self._active.pop(source_tx_id, None)
        if not task.cancelled():
            self._results[source_tx_id] = task.result()
        if self.metrics:
            self.metrics.transfers_active.set(len(self._active))

    # -------------------------------------------------------------------------
    # Reconciliation task
    # -------------------------------------------------------------------------

    async def _reconcile(self, record: TransferRecord, stop: asyncio.Event) -> ReconciliationResult:
        result = ReconciliationResult(source_tx_id=record.source_tx_id)
        try:
            settled_at = record.source_settled_at
            if record.status is TransferStatus.PENDING:
                result.settlement = await self.settlement_poller.run(record.source_tx_id, stop_event=stop)
                if result.settlement.state is not SettlementState.SETTLED:
                    return result
                settled_at = result.settlement.settled_at

            if settled_at is None:
                raise InvalidTransitionError(
                    f"{record.source_tx_id}: {record.status.value} record has no settlement time"
                )
            result.arrival = await self.arrival_matcher.run(
                record.source_tx_id,
                record.destination_address,
                record.expected_amount,
                settled_at,
                stop_event=stop,
            )
            return result
        except asyncio.CancelledError:
            self._log_event("transfer_task_cancelled", source_tx_id=record.source_tx_id)
            raise
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            self._log_event(
                "transfer_task_error",
                source_tx_id=record.source_tx_id,
                error=result.error,
            )
            return result

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def active_transfers(self) -> List[str]:
        return list(self._active)

    def is_active(self, source_tx_id: str) -> bool:
        return source_tx_id in self._active

    async def wait(self, source_tx_id: str, timeout: Optional[float] = None) -> Optional[ReconciliationResult]:
        """
        Wait for a transfer task to finish. Returns None if this process
        never ran a task for the id or the task was cancelled.
        """
        active = self._active.get(source_tx_id)
        if active is None:
            return self._results.get(source_tx_id)
        return await asyncio.wait_for(asyncio.shield(active.task), timeout=timeout)

    async def cancel(self, source_tx_id: str) -> bool:
        """Stop watching one transfer. The record keeps its current status."""
        active = self._active.get(source_tx_id)
        if active is None:
            return False
        active.stop.set()
        await asyncio.gather(active.task, return_exceptions=True)
        return True

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop all transfer tasks. Tasks exit at their next wait; stragglers
        (blocked in a network call past the timeout) are cancelled.
        """
        self._closing = True
        active = list(self._active.values())
        if not active:
            return

        for entry in active:
            entry.stop.set()
        tasks = [entry.task for entry in active]
        done, pending = await asyncio.wait(
            tasks, timeout=timeout if timeout is not None else self.config.shutdown_timeout_sec
        )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._log_event(
            "orchestrator_shutdown",
            stopped=len(done),
            cancelled=len(pending),
        )
