"""Tests for settings loading and the Parquet / JSONL output sinks."""

import json

import pyarrow.parquet as pq
import pytest
from pydantic import ValidationError

from conftest import ADDR_A, TOKEN
from ledgerscan.adapters.manifest_jsonl import JSONLManifest
from ledgerscan.adapters.parquet_sink import RECORD_SCHEMA, ParquetRecordSink
from ledgerscan.config import Settings
from ledgerscan.domain.models import (
    BlockRange,
    ChunkFailure,
    ChunkingInfo,
    EventRecord,
    ScanDiagnostics,
    ScanResult,
)


def make_result(failures=()):
    records = (
        EventRecord(
            tx_hash="0x" + "ab" * 32,
            block_number=200,
            timestamp=1_700_002_400,
            counterparty_from=ADDR_A,
            counterparty_to=TOKEN,
            value_raw=str(2**200),
            value_formatted="1.0",
            direction="sent",
            log_index=3,
        ),
    )
    diagnostics = ScanDiagnostics(
        strategy="reverse_chunk_scan",
        tip=250,
        effective_floor=50,
        scanned_range=BlockRange(50, 250),
        stopped_at_block=50,
        stop_reason="floor_reached",
        chunking=ChunkingInfo(
            chunk_size=100, concurrency=2, chunks_planned=3, chunks_succeeded=3 - len(failures),
            chunks_failed=len(failures), splits=0, batches=2, single_shot=False,
        ),
        failures=tuple(failures),
    )
    return ScanResult(address=ADDR_A, contract_address=TOKEN, records=records, diagnostics=diagnostics, limit=10)


class TestSettings:
    @pytest.fixture(autouse=True)
    def _isolated(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)

    def test_env_prefix_and_tuning(self, monkeypatch):
        monkeypatch.setenv("LEDGERSCAN_RPC_URL", "http://node:8545")
        monkeypatch.setenv("LEDGERSCAN_TOKEN_ADDRESS", TOKEN.upper().replace("0X", "0x"))
        monkeypatch.setenv("LEDGERSCAN_BOUNDED_CHUNK_SIZE", "1000")
        monkeypatch.setenv("LEDGERSCAN_EXHAUSTIVE_PAUSE_S", "0")

        settings = Settings()
        tuning = settings.tuning()

        assert settings.rpc_url == "http://node:8545"
        assert settings.token_address == TOKEN
        assert tuning.bounded_chunk_size == 1000
        assert tuning.exhaustive_pause_s == 0
        assert tuning.bounded_concurrency == 15
        assert tuning.exhaustive_chunk_size == 5_000

    def test_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("LEDGERSCAN_DEPLOYMENT_BLOCK=1234\nLEDGERSCAN_LOG_LEVEL=debug\n")

        settings = Settings()

        assert settings.deployment_block == 1234
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("field, value", [
        ("token_address", "0x123"),
        ("log_level", "LOUD"),
        ("bounded_concurrency", 0),
        ("deployment_block", -1),
    ])
    def test_rejects_invalid(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})


class TestParquetSink:
    @pytest.mark.asyncio
    async def test_write_and_read_back(self, tmp_path):
        path = tmp_path / "nested" / "records.parquet"

        written = await ParquetRecordSink(str(path)).write_records(make_result().records)

        table = pq.read_table(written)
        assert table.schema.equals(RECORD_SCHEMA)
        row = table.to_pylist()[0]
        assert row["block_number"] == 200
        assert row["value_raw"] == str(2**200)
        assert not (tmp_path / "nested" / "records.parquet.tmp").exists()

    @pytest.mark.asyncio
    async def test_empty_records(self, tmp_path):
        path = tmp_path / "empty.parquet"

        await ParquetRecordSink(str(path)).write_records([])

        assert pq.read_table(path).num_rows == 0


class TestJSONLManifest:
    @pytest.mark.asyncio
    async def test_failures_then_summary(self, tmp_path):
        path = tmp_path / "manifest.jsonl"
        failure = ChunkFailure(BlockRange(101, 150), "ChunkFetchError: reset", kind="transport")
        manifest = JSONLManifest(str(path))

        await manifest.append_result(make_result([failure]))
        await manifest.append_result(make_result())

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert [ln["kind"] for ln in lines] == ["chunk", "scan", "scan"]
        assert (lines[0]["from_block"], lines[0]["to_block"]) == (101, 150)
        assert lines[0]["error_kind"] == "transport"
        assert lines[1]["chunks_failed"] == 1
        assert lines[2]["stop_reason"] == "floor_reached"
