from __future__ import annotations


class LedgerScanError(Exception):
    """Base class for every error raised by the scanning engine."""


class InvalidRequestError(LedgerScanError, ValueError):
    """The caller asked for something that can never be scanned."""


class InvalidRangeError(InvalidRequestError):
    """Unresolvable block spec, from > to, or a 'pending' endpoint."""


class InvalidAddressError(InvalidRequestError):
    pass


class RangeTooLargeError(LedgerScanError):
    """The provider rejected a query because its block span is too wide."""

    def __init__(self, message: str, from_block: int | None = None, to_block: int | None = None) -> None:
        super().__init__(message)
        self.from_block = from_block
        self.to_block = to_block


class ChunkFetchError(LedgerScanError):
    """Transport-level failure of a single ledger read (absorbed per chunk)."""


class LedgerUnavailableError(LedgerScanError):
    """The ledger tip could not be read; the scan cannot start."""
