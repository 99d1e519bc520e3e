"""
Async client for the destination chain's transfer index (Blockscout API v2).

Shares one ``httpx.AsyncClient`` across all arrival matchers. If a client is
passed in it is not closed by ``close()``; otherwise the explorer owns it.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from bridgewatch.errors import IndexFetchError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class ExplorerClient:
    def __init__(
        self,
        base_url: str,
        token_address: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token_address = token_address
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _params(self, address: str) -> Dict[str, str]:
        params = {
            "type": "ERC-20",
            # inbound only: transfers to the address or mints from the zero address
            "filter": f"{address} | {ZERO_ADDRESS}",
        }
        if self.token_address:
            params["token"] = self.token_address
        return params

    async def inbound_transfers(self, address: str) -> List[Dict[str, Any]]:
        """
        Fetch the most recent inbound token transfers for an address.

        A 404 means the explorer has not indexed the address yet and is
        returned as an empty list.

        Raises:
            IndexFetchError: any other HTTP or transport failure
        """
        url = f"{self.base_url}/addresses/{address}/token-transfers"
        try:
            resp = await self.client.get(url, params=self._params(address))
        except httpx.HTTPError as exc:
            raise IndexFetchError(f"explorer request failed: {type(exc).__name__}: {exc}") from exc

        if resp.status_code == 404:
            return []
        if resp.status_code >= 400:
            raise IndexFetchError(
                f"explorer returned HTTP {resp.status_code}", status_code=resp.status_code
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise IndexFetchError(f"explorer returned invalid JSON: {exc}") from exc

        if isinstance(data, dict):
            items = data.get("items") or []
        elif isinstance(data, list):
            items = data
        else:
            raise IndexFetchError(f"unexpected explorer payload: {type(data).__name__}")
        return [item for item in items if isinstance(item, dict)]
