"""
Infrastructure package.

Ledger and explorer clients plus logging configuration.
"""

from bridgewatch.infra.ledger_client import LedgerClient, LedgerTxStatus
from bridgewatch.infra.explorer_client import ExplorerClient
from bridgewatch.infra.logging_cfg import build_logger, log_event, event_logger

__all__ = [
    "LedgerClient",
    "LedgerTxStatus",
    "ExplorerClient",
    "build_logger",
    "log_event",
    "event_logger",
]
