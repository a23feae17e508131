from __future__ import annotations
from ..domain.models import BlockRange, merge_intervals

__all__ = ["clamp_floor", "plan_forward", "BackwardPlanner", "merge_intervals", "split_range"]


def clamp_floor(requested_floor: int, known_first_block: int) -> int:
    """Never scan below the block where the token contract came into existence."""
    return max(requested_floor, known_first_block)

def plan_forward(start_block: int, end_block: int, step: int) -> list[BlockRange]:
    if step <= 0:
        raise ValueError(f"chunk size must be positive, got {step}")
    out: list[BlockRange] = []
    b = start_block
    while b <= end_block:
        fb, tb = b, min(end_block, b + step - 1)
        out.append(BlockRange(fb, tb))
        b = tb + 1
    return out

def split_range(rng: BlockRange) -> tuple[BlockRange, BlockRange] | None:
    """Halve a range; None when it is a single block."""
    if rng.start >= rng.end:
        return None
    mid = (rng.start + rng.end) // 2
    return BlockRange(rng.start, mid), BlockRange(mid + 1, rng.end)


class BackwardPlanner:
    """
    Lazily walks [floor, tip] from the tip downwards, handing out descending,
    contiguous chunks a batch at a time so a scan that stops early never
    plans the rest of the range.
    """

    def __init__(self, floor: int, tip: int, step: int) -> None:
        if step <= 0:
            raise ValueError(f"chunk size must be positive, got {step}")
        self.floor = floor
        self.tip = tip
        self.step = step
        self._next_to = tip
        self.chunks_emitted = 0

    @property
    def exhausted(self) -> bool:
        return self._next_to < self.floor

    @property
    def cursor(self) -> int:
        """Lowest block handed out so far (tip + 1 before the first batch)."""
        return self._next_to + 1

    def next_batch(self, k: int) -> list[BlockRange]:
        out: list[BlockRange] = []
        while len(out) < k and not self.exhausted:
            tb = self._next_to
            fb = max(self.floor, tb - self.step + 1)
            out.append(BlockRange(fb, tb))
            self._next_to = fb - 1
        self.chunks_emitted += len(out)
        return out
