"""
Tests for the status broadcaster.
"""
import asyncio
from unittest.mock import patch

import pytest

from bridgewatch.core.event_bus import EventBus, EventType, to_wire
from bridgewatch.core.json_utils import loads


class TestDelivery:

    @pytest.mark.asyncio
    async def test_subscriber_receives_event(self, bus, captured):
        await bus.emit(EventType.TRANSFER_SETTLED, source="settlement", sourceTxId="A", status="Settled")
        assert await bus.drain() == 1
        assert len(captured) == 1
        assert captured[0].correlation_id == "A"
        assert captured[0].data["status"] == "Settled"

    @pytest.mark.asyncio
    async def test_type_filter(self, bus):
        arrived = []
        bus.subscribe(EventType.TRANSFER_ARRIVED, arrived.append)
        await bus.emit(EventType.TRANSFER_SETTLED, sourceTxId="A")
        await bus.emit(EventType.TRANSFER_ARRIVED, sourceTxId="A")
        assert bus.get_subscriber_count(EventType.TRANSFER_ARRIVED) == 1
        assert bus.get_subscriber_count(EventType.TRANSFER_SETTLED) == 0
        await bus.drain()
        assert [e.type for e in arrived] == [EventType.TRANSFER_ARRIVED]

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_no_replay(self, bus):
        await bus.emit(EventType.TRANSFER_CREATED, sourceTxId="A")
        late = []
        bus.subscribe_all(late.append)
        await bus.drain()
        assert late == []

        await bus.emit(EventType.TRANSFER_SETTLED, sourceTxId="A")
        await bus.drain()
        assert [e.type for e in late] == [EventType.TRANSFER_SETTLED]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        seen = []
        sub = bus.subscribe_all(seen.append)
        assert bus.unsubscribe(None, sub)
        assert not bus.unsubscribe(None, sub)
        await bus.emit(EventType.TRANSFER_CREATED, sourceTxId="A")
        await bus.drain()
        assert seen == []

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self, bus):
        seen = []

        def broken(event):
            raise RuntimeError("socket closed")

        bus.subscribe_all(broken, priority=10, name="broken")
        bus.subscribe_all(seen.append)
        await bus.emit(EventType.TRANSFER_CREATED, sourceTxId="A")
        await bus.drain()

        assert len(seen) == 1
        assert bus.get_stats()["handler_errors"] == 1

    @pytest.mark.asyncio
    async def test_async_handler(self, bus):
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event)

        bus.subscribe_all(handler)
        await bus.emit(EventType.TRANSFER_CREATED, sourceTxId="A")
        await bus.drain()
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        bus = EventBus(queue_size=1)
        assert await bus.emit(EventType.TRANSFER_CREATED, sourceTxId="A")
        assert not await bus.emit(EventType.TRANSFER_SETTLED, sourceTxId="A")
        assert bus.get_stats()["events_dropped"] == 1

    @pytest.mark.asyncio
    async def test_background_delivery(self, bus, captured):
        task = asyncio.create_task(bus.start())
        await bus.emit(EventType.TRANSFER_CREATED, sourceTxId="A")
        for _ in range(50):
            if captured:
                break
            await asyncio.sleep(0.01)
        bus.stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert len(captured) == 1

    @pytest.mark.asyncio
    async def test_stop_before_task_runs(self, bus):
        task = asyncio.create_task(bus.start())
        bus.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert task.done()
        assert not bus.get_stats()["running"]

    @pytest.mark.asyncio
    async def test_stopped_bus_does_not_restart(self, bus):
        bus.stop()
        await asyncio.wait_for(bus.start(), timeout=1.0)
        assert not bus.get_stats()["running"]


class TestDefaultLogging:

    def test_log_lines_are_json(self):
        with patch("bridgewatch.core.event_bus.log") as fake_log:
            bus = EventBus()
            bus.subscribe(EventType.TRANSFER_ARRIVED, print, name="console")

        line = fake_log.debug.call_args.args[0]
        assert loads(line) == {
            "event": "event_bus_subscribe",
            "event_type": "TRANSFER_ARRIVED",
            "handler_name": "console",
            "priority": 0,
        }


class TestWireFormat:

    def test_created_event_name(self, bus):
        event = bus.create_event(EventType.TRANSFER_CREATED, sourceTxId="A", status="Pending")
        name, payload = to_wire(event)
        assert name == "transferCreated"
        assert payload == {"sourceTxId": "A", "status": "Pending"}

    def test_update_omits_unset_fields(self, bus):
        event = bus.create_event(
            EventType.TRANSFER_SETTLED,
            sourceTxId="A",
            status="Settled",
            sourceSettledAt="2025-03-01T12:00:00+00:00",
            destinationTxId=None,
        )
        name, payload = to_wire(event)
        assert name == "transferUpdated"
        assert "destinationTxId" not in payload
        assert payload["sourceSettledAt"] == "2025-03-01T12:00:00+00:00"
