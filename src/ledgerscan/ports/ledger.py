# ledgerscan/ports/ledger.py
from __future__ import annotations

from typing import Protocol
from ..domain.models import RawTransfer
from ..domain.value_types import Address, Direction


class LedgerReader(Protocol):
    """Port defining the minimal read-only ledger the scan engine consumes."""

    async def get_current_tip(self) -> int:
        """Return the latest confirmed block number."""

    async def query_transfer_events(
        self,
        direction: Direction,
        address: Address,
        from_block: int,
        to_block: int,
    ) -> list[RawTransfer]:
        """
        Return Transfer logs in [from_block, to_block] inclusive where `address`
        is the sender ("sent") or the recipient ("received").
        May raise RangeTooLargeError when the provider rejects the span.
        """

    async def get_block_timestamp(self, block_number: int) -> int:
        """Return the block's timestamp in seconds."""
