"""
EngineFactory: wires the reconciliation engine from settings.

Every handle (store, event bus, explorer HTTP client, ledger client
factory) is constructed here once and injected into the components that
use it; nothing is held in module globals.

Usage:
    from bridgewatch.engine_factory import create_engine

    engine = await create_engine(cfg)
    await engine.orchestrator.submit(tx_hash, evm_address, amount)
    ...
    await engine.close()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

import httpx

from bridgewatch.core.event_bus import EventBus
from bridgewatch.execution.amount_tagger import AmountTagger
from bridgewatch.execution.arrival_matcher import ArrivalMatcher, MatcherConfig
from bridgewatch.execution.settlement_poller import SettlementConfig, SettlementPoller
from bridgewatch.infra.explorer_client import ExplorerClient
from bridgewatch.infra.ledger_client import LedgerClient
from bridgewatch.infra.logging_cfg import event_logger
from bridgewatch.monitoring.metrics_rich import ReconMetrics
from bridgewatch.orchestrator.transfer_orchestrator import OrchestratorConfig, TransferOrchestrator
from bridgewatch.state.transfer_store import TransferStore

if TYPE_CHECKING:
    from bridgewatch.config.config import Settings

import logging

log = logging.getLogger("bridgewatch")


@dataclass
class Engine:
    """A fully wired engine and the resources it owns."""
    store: TransferStore
    event_bus: EventBus
    explorer: ExplorerClient
    http_client: httpx.AsyncClient
    orchestrator: TransferOrchestrator
    amount_tagger: AmountTagger
    metrics: ReconMetrics
    bus_task: Optional["asyncio.Task[None]"] = None

    async def close(self, timeout: Optional[float] = None) -> None:
        """Stop transfer tasks, flush pending events, release connections."""
        await self.orchestrator.shutdown(timeout=timeout)
        await self.event_bus.drain()
        self.event_bus.stop()
        if self.bus_task is not None:
            self.bus_task.cancel()
            await asyncio.gather(self.bus_task, return_exceptions=True)
        await self.http_client.aclose()


async def create_engine(
    cfg: "Settings",
    metrics: Optional[ReconMetrics] = None,
    start_bus: bool = True,
) -> Engine:
    """
    Build and open the engine.

    Raises:
        StoreUnavailableError: the store cannot be opened (fatal)
    """
    metrics = metrics or ReconMetrics()

    store = TransferStore(state_dir=cfg.state_dir, log_event=event_logger(log, "store"))
    await store.open()

    event_bus = EventBus(log_event=event_logger(log, "event_bus"))

    http_client = httpx.AsyncClient(timeout=cfg.http_timeout)
    explorer = ExplorerClient(
        cfg.explorer_url,
        token_address=cfg.token_address,
        timeout=cfg.http_timeout,
        client=http_client,
    )

    settlement_poller = SettlementPoller(
        ledger_factory=lambda: LedgerClient(cfg.xrpl_url, timeout=cfg.http_timeout),
        store=store,
        event_bus=event_bus,
        metrics=metrics,
        config=SettlementConfig(
            poll_interval_sec=cfg.source_poll_interval,
            max_attempts=cfg.max_poll_attempts,
            log_event_callback=event_logger(log, "settlement"),
        ),
    )
    arrival_matcher = ArrivalMatcher(
        index=explorer,
        store=store,
        event_bus=event_bus,
        metrics=metrics,
        config=MatcherConfig(
            poll_interval_sec=cfg.dest_poll_interval,
            max_attempts=cfg.max_poll_attempts,
            amount_tolerance=cfg.amount_tolerance,
            early_arrival_grace_ms=cfg.early_arrival_grace_ms,
            log_event_callback=event_logger(log, "arrival"),
        ),
    )
    orchestrator = TransferOrchestrator(
        store=store,
        event_bus=event_bus,
        settlement_poller=settlement_poller,
        arrival_matcher=arrival_matcher,
        metrics=metrics,
        config=OrchestratorConfig(
            reject_ambiguous=cfg.reject_ambiguous,
            log_event_callback=event_logger(log, "orchestrator"),
        ),
    )

    engine = Engine(
        store=store,
        event_bus=event_bus,
        explorer=explorer,
        http_client=http_client,
        orchestrator=orchestrator,
        amount_tagger=AmountTagger(store, base_amount=cfg.base_amount, step=cfg.amount_step),
        metrics=metrics,
    )
    if start_bus:
        engine.bus_task = asyncio.create_task(event_bus.start(), name="event-bus")
    return engine
