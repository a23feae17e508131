from __future__ import annotations

from typing import Iterable, Sequence

from ..domain.decoding import format_units
from ..domain.models import ChunkFailure, ChunkFetchOutcome, ChunkSuccess, EventRecord, RawTransfer
from ..domain.value_types import Address, Direction
from .timestamps import BlockTimestampCache


def classify(sender: str, address: Address) -> Direction:
    return "sent" if sender.lower() == address.lower() else "received"

def _order_key(r: EventRecord) -> tuple:
    ti = -1 if r.transaction_index is None else r.transaction_index
    return (-r.block_number, -ti, -r.log_index, r.tx_hash)


class ResultAggregator:
    """Turns chunk outcomes into enriched, ordered EventRecords."""

    def __init__(self, address: Address, decimals: int) -> None:
        self.address = address
        self.decimals = decimals

    def to_record(self, t: RawTransfer, timestamp: int) -> EventRecord:
        return EventRecord(
            tx_hash=t.tx_hash,
            block_number=t.block_number,
            timestamp=timestamp,
            counterparty_from=t.sender,
            counterparty_to=t.recipient,
            value_raw=str(t.value_raw),
            value_formatted=format_units(t.value_raw, self.decimals),
            direction=classify(t.sender, self.address),
            log_index=t.log_index,
            transaction_index=t.transaction_index,
        )

    async def enrich(
        self, outcomes: Sequence[ChunkFetchOutcome], cache: BlockTimestampCache,
    ) -> list[ChunkFetchOutcome]:
        """
        Warm the timestamp cache for every successful chunk. A chunk with a
        block whose timestamp could not be read is turned into a failure so
        its events are reported as unread rather than silently dropped.
        """
        blocks = {t.block_number for o in outcomes if isinstance(o, ChunkSuccess) for t in (*o.sent, *o.received)}
        failed = await cache.warm(blocks)
        if not failed:
            return list(outcomes)
        out: list[ChunkFetchOutcome] = []
        for o in outcomes:
            if isinstance(o, ChunkSuccess):
                bad = sorted({t.block_number for t in (*o.sent, *o.received)} & failed.keys())
                if bad:
                    err = failed[bad[0]]
                    o = ChunkFailure(
                        chunk=o.chunk,
                        error=f"timestamp of block {bad[0]} unavailable: {type(err).__name__}: {err}",
                        kind="metadata",
                    )
            out.append(o)
        return out

    def merge(self, outcomes: Iterable[ChunkFetchOutcome], cache: BlockTimestampCache) -> list[EventRecord]:
        """Records of every successful outcome; cache must already be warm."""
        seen: set[tuple[str, int]] = set()
        out: list[EventRecord] = []
        for o in outcomes:
            if not isinstance(o, ChunkSuccess):
                continue
            # sent first: a self-transfer shows up in both lists and stays "sent"
            for t in (*o.sent, *o.received):
                key = (t.tx_hash, t.log_index)
                if key in seen:
                    continue
                seen.add(key)
                out.append(self.to_record(t, cache.get(t.block_number)))
        return out

    def order_records(self, records: Iterable[EventRecord]) -> list[EventRecord]:
        """Most recent first; deterministic regardless of fetch completion order."""
        uniq: dict[tuple[str, int], EventRecord] = {}
        for r in records:
            uniq.setdefault((r.tx_hash, r.log_index), r)
        return sorted(uniq.values(), key=_order_key)

    def finalize(self, records: Iterable[EventRecord], limit: int | None = None) -> list[EventRecord]:
        """Sort, then truncate to exactly `limit` (never before the sort)."""
        ordered = self.order_records(records)
        return ordered if limit is None else ordered[:limit]
