from __future__ import annotations
from enum import Enum
from typing import Union

from .errors import InvalidRangeError


class BlockTag(str, Enum):
    LATEST = "latest"
    EARLIEST = "earliest"
    PENDING = "pending"


BlockSpec = Union[int, BlockTag]

_ALIASES = {
    "latest": BlockTag.LATEST,
    "earliest": BlockTag.EARLIEST,
    "genesis": BlockTag.EARLIEST,
    "pending": BlockTag.PENDING,
}

MAX_BLOCK = 2**64 - 1


def _check_number(n: int, raw: object) -> int:
    if n < 0 or n > MAX_BLOCK:
        raise InvalidRangeError(f"Block number out of range: {raw!r}")
    return n


def parse_block_spec(value: object, default: BlockSpec) -> BlockSpec:
    """
    Map a user-facing endpoint (query param, CLI option, int) to a BlockSpec.
    None/"" -> default; tags are case-insensitive; decimal and 0x-hex strings
    are accepted.
    """
    if value is None:
        return default
    if isinstance(value, BlockTag):
        return value
    if isinstance(value, bool):
        raise InvalidRangeError(f"Invalid block spec: {value!r}")
    if isinstance(value, int):
        return _check_number(value, value)
    if not isinstance(value, str):
        raise InvalidRangeError(f"Invalid block spec: {value!r}")

    s = value.strip().lower()
    if not s:
        return default
    if s in _ALIASES:
        return _ALIASES[s]
    try:
        n = int(s, 16) if s.startswith("0x") else int(s, 10)
    except ValueError:
        raise InvalidRangeError(f"Invalid block spec: {value!r} (expected a block number, 'latest' or 'earliest')") from None
    return _check_number(n, value)


def resolve_block_spec(spec: BlockSpec, tip: int) -> int:
    """Resolve a BlockSpec against the tip fetched once at scan start."""
    if spec is BlockTag.PENDING:
        raise InvalidRangeError("'pending' has no history to scan")
    if spec is BlockTag.LATEST:
        return tip
    if spec is BlockTag.EARLIEST:
        return 0
    if isinstance(spec, bool) or not isinstance(spec, int):
        raise InvalidRangeError(f"Unresolvable block spec: {spec!r}")
    return _check_number(spec, spec)
