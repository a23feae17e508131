from __future__ import annotations
import asyncio, itertools, httpx
from typing import Any
from loguru import logger

from ..domain.decoding import DECIMALS_SELECTOR, TRANSFER_T0, address_topic, decode_transfer_log, decode_uint, hex_to_int
from ..domain.errors import ChunkFetchError, RangeTooLargeError
from ..domain.models import RawTransfer, normalize_address
from ..domain.value_types import Address, Direction
from ..ports.ledger import LedgerReader

def _to_hex_block(n: int) -> str: return hex(int(n))

# -32005 is shared between "narrow your query" and rate limiting, so the
# message decides; throttling is transient and must never trigger a split.
_THROTTLE_FRAGMENTS = (
    "rate limit",
    "request count exceeded",
    "too many requests",
    "requests per second",
)
_RANGE_FRAGMENTS = (
    "block range",
    "range is too large",
    "range too large",
    "too many results",
    "query returned more than",
    "response size",
    "exceed maximum block range",
)

def _is_range_error(msg: str) -> bool:
    m = msg.lower()
    if any(f in m for f in _THROTTLE_FRAGMENTS):
        return False
    return any(f in m for f in _RANGE_FRAGMENTS)


class HttpxLedger(LedgerReader):
    """Read-only ledger over Ethereum-style JSON-RPC, scoped to one ERC-20 contract."""

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        timeout_s: float = 20,
        max_conn: int = 64,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.token_address = normalize_address(token_address)
        self.max_retries = max(1, max_retries)
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn//2)),
            transport=transport,
        )

    async def __aenter__(self) -> "HttpxLedger":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _call(self, method: str, params: list[Any], *, span: tuple[int, int] | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        # retry on 429 with simple backoff
        for attempt in range(self.max_retries):
            try:
                r = await self.client.post(self.rpc_url, json=payload)
            except httpx.HTTPError as e:
                raise ChunkFetchError(f"{method} transport error: {type(e).__name__}: {e}") from e
            if r.status_code == 429:
                ra = r.headers.get("Retry-After")
                delay = max(1.0, float(ra)) if ra and ra.isdigit() else (1.0 * (2**attempt))
                logger.debug(f"{method} throttled (429), retrying in {delay:.1f}s")
                await asyncio.sleep(delay); continue
            if r.status_code == 413:
                raise RangeTooLargeError(f"{method} payload too large (HTTP 413)", *(span or (None, None)))
            try:
                r.raise_for_status()
                data = r.json()
            except (httpx.HTTPStatusError, ValueError) as e:
                raise ChunkFetchError(f"{method} bad response: {e}") from e
            if "error" in data:
                err = data["error"]
                code = err.get("code") if isinstance(err, dict) else None
                msg = (err.get("message") if isinstance(err, dict) else str(err)) or ""
                if span is not None and _is_range_error(msg):
                    raise RangeTooLargeError(f"RPC error code={code} message={msg}", *span)
                raise ChunkFetchError(f"{method} RPC error code={code} message={msg}")
            return data.get("result")
        raise ChunkFetchError(f"Retries exhausted for {method}")

    async def get_current_tip(self) -> int:
        return hex_to_int(await self._call("eth_blockNumber", []))

    async def query_transfer_events(
        self, direction: Direction, address: Address, from_block: int, to_block: int,
    ) -> list[RawTransfer]:
        topic = address_topic(address)
        topics = [TRANSFER_T0, topic, None] if direction == "sent" else [TRANSFER_T0, None, topic]
        res = await self._call("eth_getLogs", [{
            "address": self.token_address,
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": topics,
        }], span=(from_block, to_block))
        typed: list[RawTransfer] = []
        for rl in res or []:
            if rl.get("removed"):
                continue
            t = decode_transfer_log(rl)
            if t is not None:
                typed.append(t)
        return typed

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self._call("eth_getBlockByNumber", [_to_hex_block(block_number), False])
        if not block:
            raise ChunkFetchError(f"Block {block_number} not found")
        return hex_to_int(block["timestamp"])

    async def token_decimals(self) -> int:
        res = await self._call("eth_call", [{"to": self.token_address, "data": DECIMALS_SELECTOR}, "latest"])
        return decode_uint(res)
