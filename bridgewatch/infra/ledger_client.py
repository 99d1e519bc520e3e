"""
Minimal async JSON-RPC client for the source ledger (XRPL).

One client instance is one connection to the ledger: it is opened on
``__aenter__`` and released on ``__aexit__``. The settlement poller holds a
client for the lifetime of a single poll.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from bridgewatch.core.utils import from_ripple_time, parse_iso8601
from bridgewatch.errors import LedgerQueryError

SUCCESS_RESULT = "tesSUCCESS"

# rippled errors that mean "not final yet" rather than "query failed"
NOT_FOUND_ERRORS = frozenset({"txnNotFound"})


@dataclass(frozen=True)
class LedgerTxStatus:
    """Result of a transaction status query."""
    result_code: Optional[str]
    close_time: Optional[datetime] = None
    ledger_index: Optional[int] = None

    @property
    def is_final(self) -> bool:
        return self.result_code is not None

    @property
    def is_success(self) -> bool:
        return self.result_code == SUCCESS_RESULT


PENDING_STATUS = LedgerTxStatus(result_code=None)


def parse_tx_response(data: Any) -> LedgerTxStatus:
    """
    Interpret a rippled ``tx`` JSON-RPC response.

    Raises:
        LedgerQueryError: the RPC reported an error other than txnNotFound,
            or the payload is not a well-formed tx response
    """
    if not isinstance(data, dict) or not isinstance(data.get("result"), dict):
        raise LedgerQueryError(f"unexpected ledger response: {data!r}")
    result = data["result"]

    error = result.get("error")
    if error:
        if error in NOT_FOUND_ERRORS:
            return PENDING_STATUS
        detail = result.get("error_message")
        raise LedgerQueryError(f"ledger rpc error: {error}" + (f": {detail}" if detail else ""))

    # Results are provisional until the ledger holding the tx is validated
    if result.get("validated") is False:
        return PENDING_STATUS

    meta = result.get("meta")
    code = meta.get("TransactionResult") if isinstance(meta, dict) else None
    if code is None:
        return PENDING_STATUS

    close_time: Optional[datetime] = None
    ledger_index: Optional[int] = None
    try:
        if result.get("close_time_iso"):
            close_time = parse_iso8601(result["close_time_iso"])
        elif isinstance(result.get("date"), int):
            close_time = from_ripple_time(result["date"])
        if result.get("ledger_index") is not None:
            ledger_index = int(result["ledger_index"])
    except (ValueError, TypeError, AttributeError, OverflowError, OSError) as exc:
        raise LedgerQueryError(f"malformed tx response: {type(exc).__name__}: {exc}") from exc

    if code == SUCCESS_RESULT and close_time is None:
        raise LedgerQueryError("successful tx response without a close time")

    return LedgerTxStatus(result_code=code, close_time=close_time, ledger_index=ledger_index)


class LedgerClient:
    """
    Usage:
        async with LedgerClient("https://s.altnet.rippletest.net:51234") as ledger:
            status = await ledger.transaction_status(tx_hash)
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self._timeout = timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def close(self) -> None:
        if self.client is not None:
            client, self.client = self.client, None
            await client.aclose()

    @property
    def is_connected(self) -> bool:
        return self.client is not None

    async def __aenter__(self) -> "LedgerClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def transaction_status(self, tx_hash: str) -> LedgerTxStatus:
        """
        Query the result code of a transaction.

        Raises:
            LedgerQueryError: transport or RPC failure (transient)
        """
        payload = {"method": "tx", "params": [{"transaction": tx_hash, "binary": False}]}
        data = await self._rpc(payload)
        return parse_tx_response(data)

    async def _rpc(self, payload: dict[str, Any]) -> Any:
        if self.client is None:
            raise LedgerQueryError("ledger client is not connected")
        try:
            resp = await self.client.post(self.endpoint, json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            raise LedgerQueryError(f"ledger request failed: {type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise LedgerQueryError(f"ledger returned invalid JSON: {exc}") from exc
