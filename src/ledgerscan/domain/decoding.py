from __future__ import annotations

from typing import Any, Mapping

from eth_utils import to_checksum_address

from .models import RawTransfer
from .value_types import TxHash


# keccak("Transfer(address,address,uint256)")
TRANSFER_T0 = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# selector of decimals()
DECIMALS_SELECTOR = "0x313ce567"

# ---------- hex helpers -------------------------------------------------------

def hex_to_int(v: Any) -> int:
    """Handles 0x..., decimal strings, and native ints; None -> 0."""
    if v is None:
        return 0
    if isinstance(v, int):
        return v
    s = str(v).lower()
    if s in ("0x", ""):
        return 0
    return int(s, 16) if s.startswith("0x") else int(s)

def _hexstr_to_bytes(v: str | None) -> bytes:
    if not v:
        return b""
    h = v[2:] if v[:2].lower() == "0x" else v
    if len(h) % 2: h = "0" + h
    return bytes.fromhex(h) if h else b""

# --------- 32B word slicing (fast, no eth_abi) --------------------------------
def _word(b: bytes, i: int) -> bytes:
    return b[i*32:(i+1)*32]

def _u256(w: bytes) -> int:
    return int.from_bytes(w, "big")

def _addr_from_topic(t: str) -> str:
    h = t[2:] if t[:2].lower() == "0x" else t
    return to_checksum_address("0x" + h[-40:].lower())

# ---------------------------- public API --------------------------------------

def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte topic (lowercase, 0x)."""
    h = address.lower()
    h = h[2:] if h.startswith("0x") else h
    return "0x" + h.rjust(64, "0")

def decode_transfer_log(rl: Mapping[str, Any]) -> RawTransfer | None:
    """
    Decode one raw eth_getLogs entry for an ERC-20 Transfer.
    Returns None for logs that are not a 3-topic Transfer (e.g. ERC-721,
    which indexes the value as a fourth topic).
    """
    topics = rl.get("topics") or []
    if len(topics) != 3 or str(topics[0]).lower() != TRANSFER_T0:
        return None
    data_b = _hexstr_to_bytes(rl.get("data"))
    value = _u256(_word(data_b, 0)) if len(data_b) >= 32 else 0
    tx_index = rl.get("transactionIndex")
    return RawTransfer(
        tx_hash=TxHash(str(rl["transactionHash"]).lower()),
        block_number=hex_to_int(rl["blockNumber"]),
        log_index=hex_to_int(rl.get("logIndex")),
        sender=_addr_from_topic(topics[1]),
        recipient=_addr_from_topic(topics[2]),
        value_raw=value,
        transaction_index=hex_to_int(tx_index) if tx_index is not None else None,
    )

def decode_uint(result_hex: str | None) -> int:
    """Decode a single uint word returned by eth_call."""
    data_b = _hexstr_to_bytes(result_hex)
    return _u256(_word(data_b, 0)) if data_b else 0

def format_units(value: int, decimals: int) -> str:
    """Integer base units -> decimal string ("1.5", "10.0"), never scientific."""
    if decimals <= 0:
        return f"{value}.0"
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10 ** decimals)
    frac_s = str(frac).rjust(decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_s}"
