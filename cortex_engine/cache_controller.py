"""
Cache controller: operations over the (sequence, position) grid of a context's
KV memory, plus usage statistics and the sliding-window helpers built on them.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from . import config
from .errors import ConfigurationError
from .kv_mirror import KVMirror, validate_seq_id
from .metrics import inc_counter, set_gauge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KVCacheStats:
    used_tokens: int
    max_tokens: int
    used_cells: int
    max_cells: int

    def usage_percent(self) -> float:
        if self.max_tokens <= 0:
            return 0.0
        return self.used_tokens * 100.0 / self.max_tokens

    def is_nearly_full(self, threshold: float = config.CACHE_NEARLY_FULL_THRESHOLD) -> bool:
        return self.used_tokens >= self.max_tokens * threshold


class CacheController:
    """Structural operations on a KVMirror (or a tensor-backed subclass of it)."""

    def __init__(self, memory: KVMirror):
        self.memory = memory

    def clear(self, include_data: bool = True) -> None:
        """Release every entry of every sequence.

        `include_data` is accepted for API parity; cells are always released.
        """
        self.memory.clear()
        inc_counter("cache_clear_total")
        logger.debug("KV cache cleared")

    def remove_range(self, seq_id: int, pos0: int = config.UNBOUNDED, pos1: int = config.UNBOUNDED) -> bool:
        """
        Delete positions [pos0, pos1) of `seq_id`.

        Returns:
            False when the memory cannot remove part of a sequence (nothing changed)
        """
        removed = self.memory.seq_rm(seq_id, pos0, pos1)
        if not removed:
            inc_counter("cache_remove_unsupported_total")
            logger.info(f"Partial removal [{pos0}, {pos1}) of sequence {seq_id} not supported by this memory")
        return removed

    def copy_range(self, src: int, dst: int, pos0: int = config.UNBOUNDED, pos1: int = config.UNBOUNDED) -> None:
        self.memory.seq_cp(src, dst, pos0, pos1)

    def keep_only(self, seq_id: int) -> None:
        self.memory.seq_keep(seq_id)

    def shift_positions(self, seq_id: int, pos0: int, pos1: int, delta: int) -> None:
        self.memory.seq_add(seq_id, pos0, pos1, delta)

    def divide_positions(self, seq_id: int, pos0: int, pos1: int, divisor: int) -> None:
        self.memory.seq_div(seq_id, pos0, pos1, divisor)

    def stats(self) -> KVCacheStats:
        stats = KVCacheStats(
            used_tokens=self.memory.used_tokens(),
            max_tokens=self.memory.capacity,
            used_cells=self.memory.used_cells(),
            max_cells=self.memory.capacity,
        )
        set_gauge("kv_cache_used_cells", stats.used_cells)
        return stats

    def token_count(self, seq_id: int = 0) -> int:
        """Number of positions in use by a sequence (its max position + 1)."""
        validate_seq_id(seq_id, allow_any=False)
        return self.memory.seq_pos_max(seq_id) + 1

    def apply_sliding_window(self, window_size: int, seq_id: int = 0) -> bool:
        """
        Keep only the most recent `window_size` positions of a sequence and move
        them back so the window starts at position 0.

        Returns:
            The result of the underlying removal (False if unsupported)
        """
        if window_size <= 0:
            raise ConfigurationError(f"window_size must be > 0, got {window_size}")
        count = self.token_count(seq_id)
        if count <= window_size:
            return True
        discard = count - window_size
        if not self.remove_range(seq_id, 0, discard):
            return False
        self.shift_positions(seq_id, discard, config.UNBOUNDED, -discard)
        logger.debug(f"Sliding window on sequence {seq_id}: dropped {discard} positions")
        return True

    def context_shift(self, seq_id: int = 0, keep_first: int = 0, discard: Optional[int] = None) -> int:
        """
        Free room in a full context: keep the first `keep_first` positions, drop
        the next `discard` (half of the remainder by default) and move the tail
        left to close the gap.

        Returns:
            Number of positions discarded (0 when removal is unsupported)
        """
        if keep_first < 0:
            raise ConfigurationError(f"keep_first must be >= 0, got {keep_first}")
        count = self.token_count(seq_id)
        remaining = count - keep_first
        if remaining <= 0:
            return 0
        if discard is None:
            discard = remaining // 2
        discard = min(discard, remaining)
        if discard <= 0:
            return 0
        if not self.remove_range(seq_id, keep_first, keep_first + discard):
            return 0
        self.shift_positions(seq_id, keep_first + discard, config.UNBOUNDED, -discard)
        inc_counter("cache_context_shift_total")
        logger.info(f"Context shift on sequence {seq_id}: kept {keep_first}, discarded {discard}")
        return discard
