from __future__ import annotations
import os, pyarrow as pa, pyarrow.parquet as pq
from typing import Iterable

from ..ports.storage import RecordSink
from ..domain.models import EventRecord

RECORD_SCHEMA = pa.schema([
    pa.field("block_number",      pa.int64()),
    pa.field("timestamp",         pa.int64()),
    pa.field("tx_hash",           pa.large_string()),
    pa.field("log_index",         pa.int32()),
    pa.field("transaction_index", pa.int32()),     # null when the ledger omits it
    pa.field("direction",         pa.large_string()),
    pa.field("counterparty_from", pa.large_string()),
    pa.field("counterparty_to",   pa.large_string()),
    pa.field("value_raw",         pa.large_string()),   # uint256 does not fit int64
    pa.field("value_formatted",   pa.large_string()),
])

def records_to_table(records: Iterable[EventRecord]) -> pa.Table:
    recs = list(records)
    return pa.Table.from_pydict(
        {
            "block_number":      [r.block_number for r in recs],
            "timestamp":         [r.timestamp for r in recs],
            "tx_hash":           [r.tx_hash for r in recs],
            "log_index":         [r.log_index for r in recs],
            "transaction_index": [r.transaction_index for r in recs],
            "direction":         [r.direction for r in recs],
            "counterparty_from": [r.counterparty_from for r in recs],
            "counterparty_to":   [r.counterparty_to for r in recs],
            "value_raw":         [r.value_raw for r in recs],
            "value_formatted":   [r.value_formatted for r in recs],
        },
        schema=RECORD_SCHEMA,
    )

class ParquetRecordSink(RecordSink):
    """Writes the records of one scan to a single Parquet file, in scan order."""
    def __init__(self, path: str, codec: str = "zstd") -> None:
        self.path = path
        self.codec = codec
        os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)

    async def write_records(self, records: Iterable[EventRecord]) -> str:
        tmp = self.path + ".tmp"
        pq.write_table(records_to_table(records), tmp, compression=self.codec)
        os.replace(tmp, self.path)
        return self.path
