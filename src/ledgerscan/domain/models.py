from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Union

from eth_utils import is_address

from .block_spec import BlockSpec, BlockTag
from .errors import InvalidAddressError, InvalidRequestError
from .value_types import Address, Direction, FailureKind, StopReason, Strategy, TxHash


def normalize_address(value: str) -> Address:
    """Validate a 20-byte hex address and return it lowercased."""
    s = str(value).strip() if value is not None else ""
    if not is_address(s):
        raise InvalidAddressError(f"Invalid address: {value!r}")
    return Address(s.lower())


def merge_intervals(intervals: list[tuple[int,int]]) -> list[tuple[int,int]]:
    if not intervals: return []
    intervals = sorted(intervals)
    merged: list[list[int]] = [[intervals[0][0], intervals[0][1]]]
    for s, e in intervals[1:]:
        ms, me = merged[-1]
        if s <= me + 1: merged[-1][1] = max(me, e)
        else: merged.append([s, e])
    return [(s, e) for s, e in merged]


@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int
    def span(self) -> int: return self.end - self.start + 1
    def __str__(self) -> str: return f"{self.start}-{self.end}"

@dataclass(slots=True, frozen=True)
class RawTransfer:
    """A Transfer log as returned by the ledger, before enrichment."""
    tx_hash: TxHash
    block_number: int
    log_index: int
    sender: str
    recipient: str
    value_raw: int
    transaction_index: int | None = None

@dataclass(slots=True, frozen=True)
class EventRecord:
    tx_hash: TxHash
    block_number: int
    timestamp: int
    counterparty_from: str
    counterparty_to: str
    value_raw: str             # big ints as strings
    value_formatted: str
    direction: Direction
    log_index: int = 0
    transaction_index: int | None = None

@dataclass(slots=True, frozen=True)
class ScanRequest:
    address: Address
    from_block: BlockSpec = 0
    to_block: BlockSpec = BlockTag.LATEST
    limit: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", normalize_address(self.address))
        if self.limit is None:
            return
        bad = InvalidRequestError(f"limit must be a positive integer, got {self.limit!r}")
        if isinstance(self.limit, (bool, float)):
            raise bad
        try:
            limit = int(self.limit)
        except (TypeError, ValueError):
            raise bad from None
        if limit <= 0:
            raise bad
        object.__setattr__(self, "limit", limit)

@dataclass(slots=True, frozen=True)
class ChunkSuccess:
    chunk: BlockRange
    sent: tuple[RawTransfer, ...] = ()
    received: tuple[RawTransfer, ...] = ()

    @property
    def ok(self) -> bool: return True
    def events(self) -> int: return len(self.sent) + len(self.received)

@dataclass(slots=True, frozen=True)
class ChunkFailure:
    chunk: BlockRange
    error: str
    kind: FailureKind = "transport"

    @property
    def ok(self) -> bool: return False

ChunkFetchOutcome = Union[ChunkSuccess, ChunkFailure]

@dataclass(slots=True, frozen=True)
class ChunkingInfo:
    chunk_size: int
    concurrency: int
    chunks_planned: int = 0
    chunks_succeeded: int = 0
    chunks_failed: int = 0
    splits: int = 0
    batches: int = 0
    single_shot: bool = False

@dataclass(slots=True, frozen=True)
class ScanDiagnostics:
    strategy: Strategy
    tip: int
    effective_floor: int
    scanned_range: BlockRange | None
    stopped_at_block: int | None
    stop_reason: StopReason
    chunking: ChunkingInfo
    failures: tuple[ChunkFailure, ...] = ()

    @property
    def failed_ranges(self) -> list[tuple[int, int]]:
        return merge_intervals([(f.chunk.start, f.chunk.end) for f in self.failures])

@dataclass(slots=True, frozen=True)
class ScanResult:
    address: Address
    contract_address: str | None
    records: tuple[EventRecord, ...]
    diagnostics: ScanDiagnostics
    limit: int | None = field(default=None)

    @property
    def total(self) -> int: return len(self.records)

    def as_dict(self) -> dict[str, Any]:
        d = self.diagnostics
        return {
            "address": self.address,
            "contract_address": self.contract_address,
            "total_transactions": self.total,
            "transactions": [asdict(r) for r in self.records],
            "diagnostics": {
                "strategy": d.strategy,
                "tip": d.tip,
                "effective_floor": d.effective_floor,
                "scanned_range": str(d.scanned_range) if d.scanned_range else None,
                "stopped_at_block": d.stopped_at_block,
                "stop_reason": d.stop_reason,
                "limit": self.limit,
                "chunking": asdict(d.chunking),
                "failed_ranges": [list(r) for r in d.failed_ranges],
                "failures": [
                    {"from_block": f.chunk.start, "to_block": f.chunk.end, "kind": f.kind, "error": f.error}
                    for f in d.failures
                ],
            },
        }
