from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from ..domain.block_spec import BlockSpec, BlockTag, parse_block_spec, resolve_block_spec
from ..domain.errors import InvalidRangeError, LedgerUnavailableError
from ..domain.models import (
    BlockRange, ChunkFailure, ChunkFetchOutcome, ChunkingInfo, EventRecord,
    ScanDiagnostics, ScanRequest, ScanResult, normalize_address,
)
from ..domain.value_types import Address, StopReason, Strategy
from ..ports.ledger import LedgerReader
from .aggregation import ResultAggregator
from .fetching import ConcurrentFetcher
from .planning import BackwardPlanner, clamp_floor, plan_forward
from .timestamps import BlockTimestampCache


@dataclass(slots=True, frozen=True)
class ScanTuning:
    # reverse/bounded: wide chunks, high fan-out
    bounded_chunk_size: int = 50_000
    bounded_concurrency: int = 15
    default_limit: int = 10
    # forward/exhaustive: narrow chunks, one at a time, paced
    exhaustive_chunk_size: int = 5_000
    exhaustive_pause_s: float = 0.1
    single_shot_max_span: int = 100_000
    # range-too-large recovery
    min_chunk_size: int = 16
    max_shrink_steps: int = 6
    timestamp_concurrency: int = 16


@dataclass(slots=True)
class ScanSession:
    """Mutable state of one scan. Created per call, never shared."""
    address: Address
    aggregator: ResultAggregator
    cache: BlockTimestampCache
    records: list[EventRecord] = field(default_factory=list)
    failures: list[ChunkFailure] = field(default_factory=list)
    chunks_succeeded: int = 0
    chunks_failed: int = 0

    async def absorb(self, outcomes: list[ChunkFetchOutcome]) -> list[ChunkFetchOutcome]:
        """Aggregation step: runs only after the batch's fetches all completed."""
        outcomes = await self.aggregator.enrich(outcomes, self.cache)
        self.records.extend(self.aggregator.merge(outcomes, self.cache))
        for o in outcomes:
            if isinstance(o, ChunkFailure):
                self.chunks_failed += 1
                self.failures.append(o)
            else:
                self.chunks_succeeded += 1
        return outcomes


class ScanEngine:
    """
    Reconstructs the Transfer history of one address for one token contract.

    Two strategies share the planner, fetcher and aggregator:
    - scan_bounded: walks back from the tip in parallel batches and stops as
      soon as `limit` records are found or the floor is reached.
    - scan_exhaustive: walks forward from the floor to the tip, one paced
      chunk at a time, and returns everything.
    """

    def __init__(
        self,
        ledger: LedgerReader,
        *,
        known_first_block: int = 0,
        decimals: int = 18,
        contract_address: str | None = None,
        tuning: ScanTuning | None = None,
    ) -> None:
        if known_first_block < 0:
            raise ValueError(f"known_first_block must be >= 0, got {known_first_block}")
        self.ledger = ledger
        self.known_first_block = known_first_block
        self.decimals = decimals
        self.contract_address = contract_address
        self.tuning = tuning or ScanTuning()

    # ---------- setup ---------------------------------------------------------

    async def _tip(self) -> int:
        try:
            return int(await self.ledger.get_current_tip())
        except Exception as e:
            raise LedgerUnavailableError(f"Could not read the ledger tip: {e}") from e

    async def _resolve(self, from_block: object, to_block: object) -> tuple[int, int, int]:
        """Return (tip, start, end). Caller errors are raised before any ledger call when possible."""
        from_spec: BlockSpec = parse_block_spec(from_block, 0)
        to_spec: BlockSpec = parse_block_spec(to_block, BlockTag.LATEST)
        if BlockTag.PENDING in (from_spec, to_spec):
            raise InvalidRangeError("'pending' has no history to scan")
        if isinstance(from_spec, int) and isinstance(to_spec, int) and from_spec > to_spec:
            raise InvalidRangeError(f"from_block ({from_spec}) must be <= to_block ({to_spec})")

        tip = await self._tip()
        start = resolve_block_spec(from_spec, tip)
        end = resolve_block_spec(to_spec, tip)
        if end > tip:
            logger.debug(f"to_block {end} is beyond the tip, clamping to {tip}")
            end = tip
        if start > end:
            raise InvalidRangeError(f"from_block ({start}) must be <= to_block ({end})")
        return tip, start, end

    def _session(self, address: Address) -> ScanSession:
        return ScanSession(
            address=address,
            aggregator=ResultAggregator(address, self.decimals),
            cache=BlockTimestampCache(self.ledger, self.tuning.timestamp_concurrency),
        )

    def _fetcher(self, concurrency: int) -> ConcurrentFetcher:
        return ConcurrentFetcher(
            self.ledger,
            concurrency=concurrency,
            min_chunk_size=self.tuning.min_chunk_size,
            max_shrink_steps=self.tuning.max_shrink_steps,
        )

    def _result(
        self,
        session: ScanSession,
        records: list[EventRecord],
        *,
        strategy: Strategy,
        tip: int,
        floor: int,
        scanned: BlockRange | None,
        stopped_at: int | None,
        stop_reason: StopReason,
        chunking: ChunkingInfo,
        limit: int | None,
    ) -> ScanResult:
        diagnostics = ScanDiagnostics(
            strategy=strategy,
            tip=tip,
            effective_floor=floor,
            scanned_range=scanned,
            stopped_at_block=stopped_at,
            stop_reason=stop_reason,
            chunking=chunking,
            failures=tuple(sorted(session.failures, key=lambda f: f.chunk.start)),
        )
        logger.info(
            f"[{strategy}] {session.address}: {len(records)} record(s), stop={stop_reason}, "
            f"range={scanned}, failed_chunks={chunking.chunks_failed}"
        )
        return ScanResult(
            address=session.address,
            contract_address=self.contract_address,
            records=tuple(records),
            diagnostics=diagnostics,
            limit=limit,
        )

    # ---------- reverse / bounded --------------------------------------------

    async def scan_bounded(self, request: ScanRequest) -> ScanResult:
        t = self.tuning
        limit = request.limit or t.default_limit
        strategy: Strategy = "reverse_chunk_scan"

        tip, start, end = await self._resolve(request.from_block, request.to_block)
        floor = clamp_floor(start, self.known_first_block)
        session = self._session(request.address)
        fetcher = self._fetcher(t.bounded_concurrency)
        logger.info(
            f"[{strategy}] {request.address}: {end} -> {floor} "
            f"(requested from {start}, first block {self.known_first_block}), limit={limit}"
        )

        if floor > end:
            return self._result(
                session, [], strategy=strategy, tip=tip, floor=floor, scanned=None, stopped_at=None,
                stop_reason="empty_range", limit=limit,
                chunking=ChunkingInfo(chunk_size=t.bounded_chunk_size, concurrency=fetcher.concurrency),
            )

        planner = BackwardPlanner(floor, end, t.bounded_chunk_size)
        batches = 0
        stop_reason: StopReason = "floor_reached"
        while True:
            chunks = planner.next_batch(fetcher.concurrency)
            batches += 1
            logger.debug(
                f"[{strategy}] state=fetching batch={batches}: "
                f"{chunks[0].end} -> {chunks[-1].start} ({len(chunks)} chunks)"
            )
            outcomes = await fetcher.fetch_batch(chunks, request.address)

            logger.debug(f"[{strategy}] state=aggregating batch={batches}")
            outcomes = await session.absorb(outcomes)

            if len(session.records) >= limit:
                stop_reason = "limit_reached"
                break
            if any(isinstance(o, ChunkFailure) and o.kind == "range_too_large" for o in outcomes):
                stop_reason = "range_too_large"
                logger.warning(f"[{strategy}] provider keeps rejecting ranges near {planner.cursor}; stopping early")
                break
            if planner.exhausted:
                stop_reason = "floor_reached"
                break
            logger.debug(f"[{strategy}] state=continue ({len(session.records)}/{limit} records)")

        records = session.aggregator.finalize(session.records, limit)
        stopped_at = planner.cursor
        return self._result(
            session, records, strategy=strategy, tip=tip, floor=floor,
            scanned=BlockRange(stopped_at, end), stopped_at=stopped_at, stop_reason=stop_reason, limit=limit,
            chunking=ChunkingInfo(
                chunk_size=t.bounded_chunk_size,
                concurrency=fetcher.concurrency,
                chunks_planned=planner.chunks_emitted,
                chunks_succeeded=session.chunks_succeeded,
                chunks_failed=session.chunks_failed,
                splits=fetcher.splits,
                batches=batches,
            ),
        )

    # ---------- forward / exhaustive -----------------------------------------

    async def _single_shot(
        self, session: ScanSession, fetcher: ConcurrentFetcher, floor: int, end: int,
    ) -> tuple[int, int, int]:
        """
        Try the whole range in one query pair. On a width rejection, probe the
        first chunk with halving widths and keep the first accepted one.
        Returns (next block to scan, chunk size to continue with, queries planned).
        """
        t = self.tuning
        whole = BlockRange(floor, end)
        outcome = await fetcher.fetch_single(whole, session.address)
        if not isinstance(outcome, ChunkFailure):
            await session.absorb([outcome])
            return end + 1, t.exhaustive_chunk_size, 1
        if outcome.kind != "range_too_large":
            logger.warning(f"Single-shot read of {whole} failed ({outcome.error}); falling back to chunks")
            return floor, t.exhaustive_chunk_size, 1

        planned = 1
        width = whole.span()
        for _ in range(t.max_shrink_steps):
            width //= 2
            if width <= t.exhaustive_chunk_size:
                break
            probe = BlockRange(floor, floor + width - 1)
            planned += 1
            fetcher.splits += 1
            outcome = await fetcher.fetch_single(probe, session.address)
            if not isinstance(outcome, ChunkFailure):
                logger.info(f"Provider accepts {width}-block ranges; continuing with that chunk size")
                await session.absorb([outcome])
                return probe.end + 1, width, planned
            if outcome.kind != "range_too_large":
                break
        logger.info(f"Falling back to the default chunk size ({t.exhaustive_chunk_size} blocks)")
        return floor, t.exhaustive_chunk_size, planned

    async def scan_exhaustive(
        self,
        address: str,
        from_block: BlockSpec | str | None = 0,
        to_block: BlockSpec | str | None = BlockTag.LATEST,
    ) -> ScanResult:
        t = self.tuning
        strategy: Strategy = "forward_chunk_scan"
        addr = normalize_address(address)

        tip, start, end = await self._resolve(from_block, to_block)
        floor = clamp_floor(start, self.known_first_block)
        session = self._session(addr)
        fetcher = self._fetcher(1)
        logger.info(
            f"[{strategy}] {addr}: {floor} -> {end} "
            f"(requested from {start}, first block {self.known_first_block})"
        )

        if floor > end:
            return self._result(
                session, [], strategy=strategy, tip=tip, floor=floor, scanned=None, stopped_at=None,
                stop_reason="empty_range", limit=None,
                chunking=ChunkingInfo(chunk_size=t.exhaustive_chunk_size, concurrency=1),
            )

        cursor, chunk_size, planned = floor, t.exhaustive_chunk_size, 0
        single_shot = end - floor + 1 <= t.single_shot_max_span
        if single_shot:
            cursor, chunk_size, planned = await self._single_shot(session, fetcher, floor, end)

        plan = plan_forward(cursor, end, chunk_size)
        planned += len(plan)
        logger.debug(f"[{strategy}] state=planning: {len(plan)} chunk(s) of {chunk_size} blocks")
        for i, chunk in enumerate(plan, start=1):
            if i > 1 or single_shot:
                await asyncio.sleep(t.exhaustive_pause_s)
            logger.debug(f"[{strategy}] state=fetching chunk {i}/{len(plan)}: {chunk}")
            outcomes = await fetcher.fetch_batch([chunk], addr)
            await session.absorb(outcomes)

        records = session.aggregator.finalize(session.records)
        return self._result(
            session, records, strategy=strategy, tip=tip, floor=floor,
            scanned=BlockRange(floor, end), stopped_at=end, stop_reason="complete", limit=None,
            chunking=ChunkingInfo(
                chunk_size=chunk_size,
                concurrency=1,
                chunks_planned=planned,
                chunks_succeeded=session.chunks_succeeded,
                chunks_failed=session.chunks_failed,
                splits=fetcher.splits,
                batches=len(plan) + (1 if single_shot else 0),
                single_shot=single_shot,
            ),
        )
