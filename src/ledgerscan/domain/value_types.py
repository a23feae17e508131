from __future__ import annotations
from typing import NewType, Literal

Address   = NewType("Address", str)   # 0x-prefixed, lowercase
TxHash    = NewType("TxHash", str)    # 0x-prefixed, lowercase
Direction = Literal["sent", "received"]
FailureKind = Literal["range_too_large", "transport", "metadata"]
Strategy  = Literal["reverse_chunk_scan", "forward_chunk_scan"]
StopReason = Literal["limit_reached", "floor_reached", "range_too_large", "complete", "empty_range"]
