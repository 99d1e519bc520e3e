"""
AmountTagger: makes each request's bridged amount unique per address.

The arrival matcher identifies a destination transfer only by recipient,
amount and time. Adding a small per-request fraction to the base amount
keeps repeated requests to the same address distinguishable:

    1st request  90.0001
    2nd request  90.0002
    ...
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bridgewatch.state.transfer_store import TransferStore


class AmountTagger:
    def __init__(
        self,
        store: "TransferStore",
        base_amount: Decimal = Decimal("90"),
        step: Decimal = Decimal("0.0001"),
    ) -> None:
        if base_amount <= 0 or step <= 0:
            raise ValueError("base_amount and step must be > 0")
        self.store = store
        self.base_amount = base_amount
        self.step = step

    async def next_amount(self, destination_address: str) -> Decimal:
        """Base amount plus (previous requests for the address + 1) steps."""
        count = await self.store.count_for_address(destination_address)
        return self.base_amount + (count + 1) * self.step

    @staticmethod
    def to_drops(amount: Decimal) -> str:
        """XRP amount as an integer drops string (1 XRP = 1,000,000 drops)."""
        return str((amount * 1_000_000).quantize(Decimal(1)))
