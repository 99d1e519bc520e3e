"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import bridgewatch uninstalled.
"""

import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from bridgewatch.core.event_bus import EventBus  # noqa: E402
from bridgewatch.infra.ledger_client import LedgerTxStatus, PENDING_STATUS  # noqa: E402
from bridgewatch.state.transfer_store import TransferRecord, TransferStore  # noqa: E402

SETTLED_AT = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
DEST = "0xAbCdEf0000000000000000000000000000000001"


class FakeLedger:
    """
    Scripted ledger client. Each ``transaction_status`` call pops the next
    scripted reply (a LedgerTxStatus or an exception to raise); once the
    script is exhausted the last reply repeats.
    """

    def __init__(self, replies: Optional[List[Union[LedgerTxStatus, Exception]]] = None):
        self.replies = list(replies or [PENDING_STATUS])
        self.calls = 0
        self.opened = 0
        self.closed = 0

    def __call__(self) -> "FakeLedger":
        # Used directly as the poller's ledger_factory
        return self

    async def __aenter__(self) -> "FakeLedger":
        self.opened += 1
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.closed += 1

    async def transaction_status(self, tx_hash: str) -> LedgerTxStatus:
        self.calls += 1
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeIndex:
    """Scripted destination index, same reply semantics as FakeLedger."""

    def __init__(self, replies: Optional[List[Union[List[Dict[str, Any]], Exception]]] = None):
        self.replies = list(replies or [[]])
        self.calls = 0

    async def inbound_transfers(self, address: str) -> List[Dict[str, Any]]:
        self.calls += 1
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def settled(at: datetime = SETTLED_AT) -> LedgerTxStatus:
    return LedgerTxStatus(result_code="tesSUCCESS", close_time=at, ledger_index=100)


def index_item(
    to: str = DEST,
    value: str = "90000100000000000000",
    decimals: Any = "18",
    tx_hash: str = "0xdest1",
    timestamp: Union[str, datetime] = SETTLED_AT + timedelta(seconds=7),
) -> Dict[str, Any]:
    """A Blockscout token-transfer item (90.0001 tokens, 7s after settlement by default)."""
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat().replace("+00:00", "Z")
    return {
        "to": {"hash": to},
        "from": {"hash": "0x0000000000000000000000000000000000000000"},
        "total": {"value": value, "decimals": decimals},
        "token": {"decimals": "18", "symbol": "XRP"},
        "transaction_hash": tx_hash,
        "timestamp": timestamp,
    }


def make_record(
    source_tx_id: str = "SRC1",
    destination_address: str = DEST,
    expected_amount: Decimal = Decimal("90.0001"),
) -> TransferRecord:
    return TransferRecord(
        source_tx_id=source_tx_id,
        destination_address=destination_address,
        expected_amount=expected_amount,
        source_submitted_at=SETTLED_AT - timedelta(seconds=5),
    )


@pytest.fixture
def store():
    return TransferStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def captured(bus):
    """Events delivered to a subscriber registered before the test runs."""
    events = []
    bus.subscribe_all(events.append, name="capture")
    return events


ENV_KEYS = [
    "BW_NETWORK", "BW_XRPL_URL", "BW_EXPLORER_URL", "BW_TOKEN_ADDRESS",
    "BW_SOURCE_POLL_SEC", "BW_DEST_POLL_SEC", "BW_MAX_POLL_ATTEMPTS",
    "BW_AMOUNT_TOLERANCE", "BW_EARLY_ARRIVAL_GRACE_MS", "BW_HTTP_TIMEOUT",
    "BW_STATE_DIR", "BW_BASE_AMOUNT", "BW_AMOUNT_STEP", "BW_REJECT_AMBIGUOUS",
    "BW_LOG_LEVEL", "BW_LOG_FILE", "BW_METRICS_PORT",
]


@pytest.fixture
def env(monkeypatch):
    """Clean BW_* environment with only the ledger endpoint set."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("BW_XRPL_URL", "https://s.altnet.rippletest.net:51234")
    return monkeypatch
