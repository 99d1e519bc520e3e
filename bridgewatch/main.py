"""
Entry point wiring all components.

    python -m bridgewatch.main watch <source_tx_id> <destination_address> <amount>
    python -m bridgewatch.main resume
    python -m bridgewatch.main next-amount <destination_address>

Wire events are printed to stdout one JSON object per line; logs go to the
console (rich) and the JSON log file.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from prometheus_client import start_http_server

from bridgewatch.config.config import Settings
from bridgewatch.core.event_bus import Event, to_wire
from bridgewatch.core.json_utils import dumps
from bridgewatch.core.utils import parse_iso8601
from bridgewatch.engine_factory import create_engine
from bridgewatch.errors import AmbiguousTransferError, ConfigError, DuplicateKeyError, StoreUnavailableError
from bridgewatch.infra.logging_cfg import build_logger
from bridgewatch.monitoring.metrics_rich import ReconMetrics
from bridgewatch.state.transfer_store import TransferStatus

log = logging.getLogger("bridgewatch")


def _amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a decimal amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError(f"amount must be positive: {value!r}")
    return amount


def _timestamp(value: str):
    try:
        return parse_iso8601(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="bridgewatch", description="Cross-chain transfer reconciliation")
    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="reconcile one submitted source transaction")
    watch.add_argument("source_tx_id")
    watch.add_argument("destination_address")
    watch.add_argument("amount", type=_amount)
    watch.add_argument("--submitted-at", type=_timestamp, default=None,
                       help="ISO-8601 submission time (default: now)")

    sub.add_parser("resume", help="re-attach transfers left unfinished by a previous run")

    tag = sub.add_parser("next-amount", help="print the next tagged amount for an address")
    tag.add_argument("destination_address")

    return parser.parse_args(argv)


def _print_wire(event: Event) -> None:
    name, payload = to_wire(event)
    print(dumps({"event": name, "data": payload}), flush=True)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        cfg = Settings.load()
    except ConfigError as exc:
        build_logger(file_path=None).error(dumps({"event": "config_error", "error": str(exc)}))
        return 1

    build_logger(level=getattr(logging, cfg.log_level), file_path=cfg.log_file)
    log.info(dumps({"event": "startup", "command": args.command, "network": cfg.network}))

    metrics = ReconMetrics()
    if cfg.metrics_port > 0:
        start_http_server(cfg.metrics_port, registry=metrics.registry)
        log.info(dumps({"event": "metrics_server_started", "port": cfg.metrics_port}))

    try:
        engine = await create_engine(cfg, metrics=metrics)
    except StoreUnavailableError as exc:
        log.error(dumps({"event": "store_unavailable", "error": str(exc)}))
        return 1

    engine.event_bus.subscribe_all(_print_wire, name="stdout")

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            pass

    exit_code = 0
    try:
        if args.command == "next-amount":
            amount = await engine.amount_tagger.next_amount(args.destination_address)
            print(dumps({"destinationAddress": args.destination_address, "amount": str(amount)}))
            return 0

        if args.command == "watch":
            try:
                await engine.orchestrator.submit(
                    args.source_tx_id,
                    args.destination_address,
                    args.amount,
                    submitted_at=args.submitted_at,
                )
            except (DuplicateKeyError, AmbiguousTransferError) as exc:
                log.error(dumps({"event": "submit_rejected", "error": str(exc)}))
                return 2
            tx_ids = [args.source_tx_id]
        else:
            tx_ids = await engine.orchestrator.resume()
            log.info(dumps({"event": "resume", "transfers": tx_ids}))

        waiter = asyncio.ensure_future(
            asyncio.gather(*(engine.orchestrator.wait(tx_id) for tx_id in tx_ids), return_exceptions=True)
        )
        stopper = asyncio.ensure_future(stop_requested.wait())
        await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        if stop_requested.is_set():
            log.info("Shutdown signal received, cleaning up...")

        if args.command == "watch" and waiter.done():
            record = await engine.store.get(args.source_tx_id)
            exit_code = 0 if record.status is TransferStatus.ARRIVED else 1
    finally:
        log.info("Stopping transfer tasks and closing connections...")
        await engine.close()
        log.info("Shutdown complete")

    return exit_code


def run() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    run()
