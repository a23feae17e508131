from __future__ import annotations

import asyncio
from typing import Sequence

from loguru import logger

from ..domain.errors import RangeTooLargeError
from ..domain.models import BlockRange, ChunkFailure, ChunkFetchOutcome, ChunkSuccess
from ..domain.value_types import Address
from ..ports.ledger import LedgerReader
from .planning import split_range


def _describe(e: BaseException) -> str:
    msg = str(e)
    return f"{type(e).__name__}: {msg}" if msg else type(e).__name__


class ConcurrentFetcher:
    """
    Runs chunk queries through a bounded pool. Every chunk issues its two
    directional queries side by side; a failing chunk never aborts the batch.
    Range-too-large rejections are retried on halves until `min_chunk_size`
    or `max_shrink_steps` is reached.
    """

    def __init__(
        self,
        ledger: LedgerReader,
        *,
        concurrency: int,
        min_chunk_size: int = 16,
        max_shrink_steps: int = 6,
    ) -> None:
        self._ledger = ledger
        self.concurrency = max(1, concurrency)
        self.min_chunk_size = max(1, min_chunk_size)
        self.max_shrink_steps = max(0, max_shrink_steps)
        self._sem = asyncio.Semaphore(self.concurrency)
        self.splits = 0

    async def _query_pair(self, address: Address, rng: BlockRange) -> ChunkSuccess:
        sent, received = await asyncio.gather(
            self._ledger.query_transfer_events("sent", address, rng.start, rng.end),
            self._ledger.query_transfer_events("received", address, rng.start, rng.end),
            return_exceptions=True,
        )
        errors = [r for r in (sent, received) if isinstance(r, BaseException)]
        if errors:
            # a width rejection wins so the caller can shrink deterministically
            too_large = [e for e in errors if isinstance(e, RangeTooLargeError)]
            raise (too_large or errors)[0]
        return ChunkSuccess(chunk=rng, sent=tuple(sent), received=tuple(received))

    async def fetch_single(self, rng: BlockRange, address: Address) -> ChunkFetchOutcome:
        """One attempt over `rng`, no splitting."""
        try:
            return await self._query_pair(address, rng)
        except RangeTooLargeError as e:
            logger.debug(f"Range {rng} rejected as too large: {e}")
            return ChunkFailure(chunk=rng, error=_describe(e), kind="range_too_large")
        except Exception as e:
            logger.warning(f"Chunk {rng} failed: {_describe(e)}")
            return ChunkFailure(chunk=rng, error=_describe(e), kind="transport")

    async def run_chunk(self, rng: BlockRange, address: Address) -> list[ChunkFetchOutcome]:
        out: list[ChunkFetchOutcome] = []
        stack: list[tuple[BlockRange, int]] = [(rng, 0)]
        while stack:
            piece, depth = stack.pop()
            async with self._sem:
                outcome = await self.fetch_single(piece, address)
            if isinstance(outcome, ChunkFailure) and outcome.kind == "range_too_large":
                halves = split_range(piece) if (
                    depth < self.max_shrink_steps and piece.span() > self.min_chunk_size
                ) else None
                if halves is not None:
                    left, right = halves
                    stack.append((right, depth + 1))
                    stack.append((left, depth + 1))
                    self.splits += 1
                    continue
                logger.warning(f"Range {piece} still too large after {depth} halving(s); giving up on it")
            out.append(outcome)
        out.sort(key=lambda o: o.chunk.start)
        return out

    async def fetch_batch(self, chunks: Sequence[BlockRange], address: Address) -> list[ChunkFetchOutcome]:
        """Outcomes for every chunk (split pieces included), in input chunk order."""
        per_chunk = await asyncio.gather(*(self.run_chunk(c, address) for c in chunks))
        return [o for outs in per_chunk for o in outs]
