from __future__ import annotations

import asyncio
from typing import Iterable

from loguru import logger

from ..ports.ledger import LedgerReader


class BlockTimestampCache:
    """
    Per-scan block -> timestamp memo. Owned by one ScanSession and dropped
    with it; events sharing a block cost a single metadata read.
    """

    def __init__(self, ledger: LedgerReader, concurrency: int = 16) -> None:
        self._ledger = ledger
        self._ts: dict[int, int] = {}
        self._inflight: dict[int, asyncio.Future[int]] = {}
        self._sem = asyncio.Semaphore(max(1, concurrency))
        self.fetches = 0

    def __contains__(self, block_number: int) -> bool:
        return block_number in self._ts

    def __len__(self) -> int:
        return len(self._ts)

    def get(self, block_number: int) -> int:
        """Synchronous lookup of an already warmed block (KeyError otherwise)."""
        return self._ts[block_number]

    async def _fetch(self, block_number: int) -> int:
        async with self._sem:
            self.fetches += 1
            return int(await self._ledger.get_block_timestamp(block_number))

    async def timestamp_of(self, block_number: int) -> int:
        """Concurrent lookups of the same block share one in-flight read."""
        if block_number in self._ts:
            return self._ts[block_number]
        fut = self._inflight.get(block_number)
        if fut is None:
            fut = asyncio.ensure_future(self._fetch(block_number))
            self._inflight[block_number] = fut
            fut.add_done_callback(lambda _f: self._inflight.pop(block_number, None))
        ts = await asyncio.shield(fut)
        self._ts[block_number] = ts
        return ts

    async def warm(self, blocks: Iterable[int]) -> dict[int, BaseException]:
        """
        Fetch every missing block concurrently. Returns the blocks whose
        lookup failed, mapped to the error.
        """
        missing = sorted({b for b in blocks if b not in self._ts})
        if not missing:
            return {}
        results = await asyncio.gather(*(self.timestamp_of(b) for b in missing), return_exceptions=True)
        failed: dict[int, BaseException] = {}
        for b, res in zip(missing, results):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                failed[b] = res
        if failed:
            logger.warning(f"Timestamp lookup failed for {len(failed)} block(s), first: {min(failed)}")
        return failed
