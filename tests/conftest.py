"""Pytest configuration and shared fixtures for all tests."""

import asyncio
import random

import pytest
from loguru import logger

from ledgerscan.application.use_cases import ScanEngine, ScanTuning
from ledgerscan.domain.errors import ChunkFetchError, RangeTooLargeError
from ledgerscan.domain.models import RawTransfer

# Fixture ledger: token deployed at block 50, tip at 250.
DEPLOYMENT_BLOCK = 50
TIP = 250
ADDR_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
ADDR_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
TOKEN = "0xcccccccccccccccccccccccccccccccccccccccc"
SENT_BLOCKS = (100, 150, 200)
RECEIVED_BLOCKS = (120, 180)


def tx_hash(block: int, n: int = 0) -> str:
    return "0x" + f"{block:056x}{n:08x}"


def transfer(block: int, sender: str, recipient: str, value: int = 10**18, log_index: int = 0,
             tx_index: int | None = None) -> RawTransfer:
    return RawTransfer(
        tx_hash=tx_hash(block, log_index),
        block_number=block,
        log_index=log_index,
        sender=sender,
        recipient=recipient,
        value_raw=value,
        transaction_index=tx_index,
    )


def fixture_transfers() -> list[RawTransfer]:
    out = [transfer(b, ADDR_A, ADDR_B, value=b * 10**16) for b in SENT_BLOCKS]
    out += [transfer(b, ADDR_B, ADDR_A, value=b * 10**16) for b in RECEIVED_BLOCKS]
    return out


def _overlaps(fb: int, tb: int, ranges) -> bool:
    return any(fb <= e and tb >= s for s, e in ranges)


class FakeLedger:
    """In-memory LedgerReader with configurable provider misbehaviour."""

    def __init__(
        self,
        transfers=None,
        tip: int = TIP,
        *,
        max_span: int | None = None,
        reject_ranges=(),
        fail_ranges=(),
        tip_error: Exception | None = None,
        timestamp_error_blocks=(),
        jitter: random.Random | None = None,
        decimals: int = 18,
    ) -> None:
        self.transfers = list(fixture_transfers() if transfers is None else transfers)
        self.tip = tip
        self.max_span = max_span
        self.reject_ranges = list(reject_ranges)
        self.fail_ranges = list(fail_ranges)
        self.tip_error = tip_error
        self.timestamp_error_blocks = set(timestamp_error_blocks)
        self.jitter = jitter
        self.decimals = decimals
        self.calls: list[tuple[str, int, int]] = []
        self.timestamp_calls: list[int] = []
        self.tip_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    async def token_decimals(self) -> int:
        return self.decimals

    async def get_current_tip(self) -> int:
        self.tip_calls += 1
        if self.tip_error is not None:
            raise self.tip_error
        return self.tip

    async def query_transfer_events(self, direction, address, from_block, to_block):
        self.calls.append((direction, from_block, to_block))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.jitter.random() / 500 if self.jitter else 0.001)
            if self.max_span is not None and to_block - from_block + 1 > self.max_span:
                raise RangeTooLargeError("block range too large", from_block, to_block)
            if _overlaps(from_block, to_block, self.reject_ranges):
                raise RangeTooLargeError("block range too large", from_block, to_block)
            if _overlaps(from_block, to_block, self.fail_ranges):
                raise ChunkFetchError("connection reset")
            key = "sender" if direction == "sent" else "recipient"
            return [
                t for t in self.transfers
                if from_block <= t.block_number <= to_block and getattr(t, key).lower() == address.lower()
            ]
        finally:
            self.in_flight -= 1

    async def get_block_timestamp(self, block_number: int) -> int:
        self.timestamp_calls.append(block_number)
        await asyncio.sleep(0)
        if block_number in self.timestamp_error_blocks:
            raise ChunkFetchError(f"block {block_number} unavailable")
        return 1_700_000_000 + block_number * 12

    def min_queried_block(self) -> int:
        return min(fb for _, fb, _ in self.calls)


def fast_tuning(**overrides) -> ScanTuning:
    base = dict(exhaustive_pause_s=0.0)
    base.update(overrides)
    return ScanTuning(**base)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def make_engine():
    def _make(ledger, **tuning):
        return ScanEngine(
            ledger,
            known_first_block=DEPLOYMENT_BLOCK,
            decimals=18,
            contract_address=TOKEN,
            tuning=fast_tuning(**tuning),
        )
    return _make


@pytest.fixture(autouse=True)
def _reset_logger():
    """Keep loguru sinks added by the CLI from leaking into other tests."""
    yield
    logger.remove()
    logger.add(lambda _msg: None, level="WARNING")
