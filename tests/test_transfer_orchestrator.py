"""
Tests for TransferOrchestrator: sequencing, concurrency, resume, shutdown.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from bridgewatch.core.event_bus import EventType
from bridgewatch.errors import AmbiguousTransferError, DuplicateKeyError
from bridgewatch.execution.arrival_matcher import ArrivalMatcher, ArrivalState, MatcherConfig
from bridgewatch.execution.settlement_poller import (
    SettlementConfig,
    SettlementOutcome,
    SettlementPoller,
    SettlementState,
)
from bridgewatch.infra.ledger_client import LedgerTxStatus, PENDING_STATUS
from bridgewatch.monitoring.metrics_rich import ReconMetrics
from bridgewatch.orchestrator.transfer_orchestrator import TransferOrchestrator
from bridgewatch.state.transfer_store import TransferStatus

from conftest import DEST, SETTLED_AT, FakeIndex, FakeLedger, index_item, make_record, settled

AMOUNT = Decimal("90.0001")

# Order in which a record's status may be observed
STATUS_RANK = {
    TransferStatus.PENDING.value: 0,
    TransferStatus.SETTLED.value: 1,
    TransferStatus.FAILED.value: 1,
    TransferStatus.WATCHING.value: 2,
    TransferStatus.ARRIVED.value: 3,
    TransferStatus.TIMEOUT.value: 3,
}


def build(store, bus, ledger, index, attempts=5, metrics=None):
    poller = SettlementPoller(
        ledger_factory=ledger,
        store=store,
        event_bus=bus,
        metrics=metrics,
        config=SettlementConfig(poll_interval_sec=0.01, max_attempts=attempts),
    )
    matcher = ArrivalMatcher(
        index=index,
        store=store,
        event_bus=bus,
        metrics=metrics,
        config=MatcherConfig(poll_interval_sec=0.01, max_attempts=attempts),
    )
    return TransferOrchestrator(
        store=store,
        event_bus=bus,
        settlement_poller=poller,
        arrival_matcher=matcher,
        metrics=metrics,
    )


class TestSequencing:

    @pytest.mark.asyncio
    async def test_happy_path(self, store, bus, captured):
        metrics = ReconMetrics()
        index = FakeIndex([[index_item()]])
        orch = build(store, bus, FakeLedger([PENDING_STATUS, settled()]), index, metrics=metrics)

        record = await orch.submit("SRC1", DEST, AMOUNT)
        assert record.status is TransferStatus.PENDING
        assert orch.is_active("SRC1")

        result = await orch.wait("SRC1", timeout=2.0)
        assert result.settlement.state is SettlementState.SETTLED
        assert result.arrival.state is ArrivalState.ARRIVED
        assert result.error is None
        assert not orch.is_active("SRC1")

        record = await store.get("SRC1")
        assert record.status is TransferStatus.ARRIVED
        assert record.bridging_duration_ms == 7000

        await bus.drain()
        assert [e.type for e in captured] == [
            EventType.TRANSFER_CREATED,
            EventType.TRANSFER_SETTLED,
            EventType.TRANSFER_WATCHING,
            EventType.TRANSFER_ARRIVED,
        ]
        assert metrics.registry.get_sample_value("transfers_created_total") == 1
        assert metrics.registry.get_sample_value("transfers_active") == 0

    @pytest.mark.asyncio
    async def test_failure_never_starts_matcher(self, store, bus, captured):
        index = FakeIndex([[index_item()]])
        ledger = FakeLedger([LedgerTxStatus(result_code="tecNO_DST", close_time=SETTLED_AT)])
        orch = build(store, bus, ledger, index)

        await orch.submit("SRC1", DEST, AMOUNT)
        result = await orch.wait("SRC1", timeout=2.0)

        assert result.settlement.state is SettlementState.FAILED
        assert result.arrival is None
        assert index.calls == 0
        assert (await store.get("SRC1")).status is TransferStatus.FAILED

        await bus.drain()
        assert EventType.TRANSFER_WATCHING not in [e.type for e in captured]

    @pytest.mark.asyncio
    async def test_source_timeout_never_starts_matcher(self, store, bus):
        index = FakeIndex([[index_item()]])
        orch = build(store, bus, FakeLedger([PENDING_STATUS]), index, attempts=2)

        await orch.submit("SRC1", DEST, AMOUNT)
        result = await orch.wait("SRC1", timeout=2.0)

        assert result.settlement.state is SettlementState.TIMEOUT
        assert index.calls == 0
        assert (await store.get("SRC1")).timeout_phase == "source"

    @pytest.mark.asyncio
    async def test_status_sequence_is_monotonic(self, store, bus, captured):
        index = FakeIndex([[], [], [index_item()]])
        orch = build(store, bus, FakeLedger([PENDING_STATUS, PENDING_STATUS, settled()]), index)

        await orch.submit("SRC1", DEST, AMOUNT)
        await orch.wait("SRC1", timeout=2.0)
        await bus.drain()

        ranks = [STATUS_RANK[e.data["status"]] for e in captured if e.correlation_id == "SRC1"]
        assert ranks == sorted(ranks)
        assert ranks[-1] == 3

    @pytest.mark.asyncio
    async def test_task_error_is_contained(self, store, bus):
        poller = MagicMock()
        poller.run = AsyncMock(side_effect=RuntimeError("boom"))
        orch = TransferOrchestrator(
            store=store, event_bus=bus, settlement_poller=poller, arrival_matcher=MagicMock(),
        )

        await orch.submit("SRC1", DEST, AMOUNT)
        result = await orch.wait("SRC1", timeout=2.0)

        assert result.error == "RuntimeError: boom"
        assert (await store.get("SRC1")).status is TransferStatus.PENDING

    @pytest.mark.asyncio
    async def test_settlement_without_time_is_contained(self, store, bus):
        poller = MagicMock()
        poller.run = AsyncMock(return_value=SettlementOutcome(
            source_tx_id="SRC1", state=SettlementState.SETTLED, result_code="tesSUCCESS",
        ))
        matcher = MagicMock()
        matcher.run = AsyncMock()
        orch = TransferOrchestrator(
            store=store, event_bus=bus, settlement_poller=poller, arrival_matcher=matcher,
        )

        await orch.submit("SRC1", DEST, AMOUNT)
        result = await orch.wait("SRC1", timeout=2.0)

        assert result.error.startswith("InvalidTransitionError: SRC1")
        matcher.run.assert_not_awaited()


class TestSubmission:

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, store, bus):
        orch = build(store, bus, FakeLedger(), FakeIndex(), attempts=1000)
        await orch.submit("SRC1", DEST, AMOUNT)
        with pytest.raises(DuplicateKeyError):
            await orch.submit("SRC1", DEST, Decimal("90.0002"))
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_ambiguous_amount_rejected(self, store, bus):
        orch = build(store, bus, FakeLedger(), FakeIndex(), attempts=1000)
        await orch.submit("SRC1", DEST, AMOUNT)
        with pytest.raises(AmbiguousTransferError):
            await orch.submit("SRC2", DEST.lower(), AMOUNT)
        await orch.submit("SRC3", DEST, Decimal("90.0002"))
        assert sorted(orch.active_transfers()) == ["SRC1", "SRC3"]
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_transfers_match_independently(self, store, bus):
        other = "0x2222222222222222222222222222222222222222"
        index = FakeIndex([[
            index_item(to=other, value="90000200000000000000", tx_hash="0xdest2"),
            index_item(tx_hash="0xdest1"),
        ]])
        orch = build(store, bus, FakeLedger([settled()]), index)

        await orch.submit("SRC1", DEST, AMOUNT)
        await orch.submit("SRC2", other, Decimal("90.0002"))
        await asyncio.gather(orch.wait("SRC1", timeout=2.0), orch.wait("SRC2", timeout=2.0))

        assert (await store.get("SRC1")).destination_tx_id == "0xdest1"
        assert (await store.get("SRC2")).destination_tx_id == "0xdest2"


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_resume_restarts_unfinished(self, store, bus):
        await store.create(make_record("PENDING1"))
        await store.create(make_record("SETTLED1", expected_amount=Decimal("90.0002")))
        await store.update_settlement("SETTLED1", SETTLED_AT, "tesSUCCESS")
        await store.create(make_record("DONE1", expected_amount=Decimal("90.0003")))
        await store.update_status("DONE1", TransferStatus.FAILED, result_code="tecNO_DST")

        index = FakeIndex([[
            index_item(tx_hash="0xa"),
            index_item(value="90000200000000000000", tx_hash="0xb"),
        ]])
        orch = build(store, bus, FakeLedger([settled()]), index)

        resumed = await orch.resume()
        assert sorted(resumed) == ["PENDING1", "SETTLED1"]
        pending_result = await orch.wait("PENDING1", timeout=2.0)
        settled_result = await orch.wait("SETTLED1", timeout=2.0)

        assert pending_result.settlement is not None
        # already settled: settlement phase skipped
        assert settled_result.settlement is None
        assert (await store.get("PENDING1")).destination_tx_id == "0xa"
        assert (await store.get("SETTLED1")).destination_tx_id == "0xb"
        assert (await store.get("DONE1")).status is TransferStatus.FAILED

    @pytest.mark.asyncio
    async def test_shutdown_stops_tasks_and_keeps_state(self, store, bus):
        ledger = FakeLedger()
        orch = build(store, bus, ledger, FakeIndex(), attempts=1000)
        await orch.submit("SRC1", DEST, AMOUNT)
        await asyncio.sleep(0.05)

        await orch.shutdown(timeout=1.0)

        assert orch.active_transfers() == []
        assert ledger.opened == ledger.closed == 1
        assert (await store.get("SRC1")).status is TransferStatus.PENDING
        with pytest.raises(RuntimeError):
            await orch.submit("SRC2", DEST, Decimal("90.0002"))

    @pytest.mark.asyncio
    async def test_cancel_one_transfer(self, store, bus):
        orch = build(store, bus, FakeLedger(), FakeIndex(), attempts=1000)
        await orch.submit("SRC1", DEST, AMOUNT)
        await orch.submit("SRC2", DEST, Decimal("90.0002"))

        assert await orch.cancel("SRC1")
        assert not await orch.cancel("SRC1")
        assert orch.active_transfers() == ["SRC2"]
        result = await orch.wait("SRC1")
        assert result.settlement.state is SettlementState.CANCELLED
        await orch.shutdown()
