# ledgerscan/ports/storage.py
from __future__ import annotations

from typing import Iterable, Protocol
from ..domain.models import EventRecord, ScanResult


class RecordSink(Protocol):
    """Port for dumping the records of a finished scan (e.g., Parquet)."""

    async def write_records(self, records: Iterable[EventRecord]) -> str:
        """Persist the records and return the written location."""


class ManifestSink(Protocol):
    """Port for appending scan/chunk status records (e.g., JSONL manifest)."""

    async def append_result(self, result: ScanResult) -> None:
        """Append one line per failed range plus a summary line."""
