"""
KV Mirror - the cell grid that mirrors the structure of the KV cache.

Each cell is one physical cache slot: it holds a position, the token that was
decoded into it, and the set of sequences that share it. The index of a cell in
`cells` is the index of its entry along the sequence dimension of the cache
tensors, so backends that hold real tensors can follow every structural change
through the `_on_cells_removed` and `_on_positions_moved` hooks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from . import config
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class KVCell:
    pos: int
    token_id: int
    seq_ids: Set[int] = field(default_factory=set)


def validate_seq_id(seq_id: int, allow_any: bool = True) -> None:
    if seq_id == config.ANY_SEQUENCE and allow_any:
        return
    if seq_id < 0:
        raise ConfigurationError(f"invalid sequence id {seq_id}")


def validate_region(seq_id: int, pos0: int, pos1: int) -> None:
    validate_seq_id(seq_id)
    if pos0 < config.UNBOUNDED or pos1 < config.UNBOUNDED:
        raise ConfigurationError(f"invalid positions [{pos0}, {pos1})")
    if pos0 >= 0 and pos1 >= 0 and pos1 < pos0:
        raise ConfigurationError(f"region end {pos1} is before start {pos0}")


class KVMirror:
    """
    KVMirror keeps the (sequence, position) bookkeeping of a KV cache.

    Operations follow the usual cache semantics: positions are half-open
    ranges [pos0, pos1) where -1 means "from the start" or "to the end", and
    sequence id -1 addresses every sequence.
    """

    def __init__(self, capacity: int = config.CONTEXT_SIZE, supports_partial_removal: bool = True):
        """Initialize an empty mirror holding at most `capacity` cells."""
        self.capacity = capacity
        self.supports_partial_removal = supports_partial_removal
        self.cells: List[KVCell] = []

    # --- Hooks for tensor-backed subclasses ---

    def _on_cells_removed(self, indices: List[int]) -> None:
        """Called after the cells at `indices` (pre-removal indices, ascending) were dropped."""

    def _on_positions_moved(self, indices: List[int], deltas: List[int]) -> None:
        """Called after the cells at `indices` had their positions changed by `deltas`."""

    # --- Queries ---

    @staticmethod
    def _matches(cell: KVCell, seq_id: int, pos0: int, pos1: int) -> bool:
        if seq_id != config.ANY_SEQUENCE and seq_id not in cell.seq_ids:
            return False
        if pos0 >= 0 and cell.pos < pos0:
            return False
        if pos1 >= 0 and cell.pos >= pos1:
            return False
        return True

    def cell_indices(self, seq_id: int) -> List[int]:
        """Indices of the cells used by `seq_id`, in cache order."""
        return [i for i, cell in enumerate(self.cells) if seq_id in cell.seq_ids]

    def positions(self, seq_id: int) -> List[int]:
        return sorted(cell.pos for cell in self.cells if seq_id in cell.seq_ids)

    def tokens(self, seq_id: int) -> List[int]:
        """Token ids of a sequence ordered by position."""
        owned = sorted((cell for cell in self.cells if seq_id in cell.seq_ids), key=lambda c: c.pos)
        return [cell.token_id for cell in owned]

    def seq_pos_max(self, seq_id: int) -> int:
        """Largest position of a sequence, -1 if it has none."""
        return max((cell.pos for cell in self.cells if seq_id in cell.seq_ids), default=-1)

    def seq_pos_min(self, seq_id: int) -> int:
        return min((cell.pos for cell in self.cells if seq_id in cell.seq_ids), default=-1)

    def used_tokens(self) -> int:
        return sum(len(cell.seq_ids) for cell in self.cells)

    def used_cells(self) -> int:
        return len(self.cells)

    # --- Structural operations ---

    def _drop(self, indices: Sequence[int], notify: bool = True) -> None:
        if not indices:
            return
        doomed = set(indices)
        self.cells = [cell for i, cell in enumerate(self.cells) if i not in doomed]
        if notify:
            self._on_cells_removed(sorted(doomed))

    def clear(self) -> None:
        """Remove every cell of every sequence."""
        self._drop(list(range(len(self.cells))))

    def seq_rm(self, seq_id: int, pos0: int = config.UNBOUNDED, pos1: int = config.UNBOUNDED) -> bool:
        """
        Remove the positions [pos0, pos1) of `seq_id` (every sequence for -1).

        Returns:
            False, with nothing changed, when the memory cannot drop part of a
            sequence; True otherwise.
        """
        validate_region(seq_id, pos0, pos1)
        if not self.supports_partial_removal:
            for cell in self.cells:
                owned = seq_id == config.ANY_SEQUENCE or seq_id in cell.seq_ids
                if owned and not self._matches(cell, seq_id, pos0, pos1):
                    logger.debug(f"Partial removal of sequence {seq_id} not supported")
                    return False

        emptied = []
        for i, cell in enumerate(self.cells):
            if not self._matches(cell, seq_id, pos0, pos1):
                continue
            if seq_id == config.ANY_SEQUENCE:
                cell.seq_ids.clear()
            else:
                cell.seq_ids.discard(seq_id)
            if not cell.seq_ids:
                emptied.append(i)
        self._drop(emptied)
        return True

    def seq_cp(self, src: int, dst: int, pos0: int = config.UNBOUNDED, pos1: int = config.UNBOUNDED) -> None:
        """Make `dst` share the cells of `src` in [pos0, pos1)."""
        validate_region(src, pos0, pos1)
        validate_seq_id(src, allow_any=False)
        validate_seq_id(dst, allow_any=False)
        if src == dst:
            return
        for cell in self.cells:
            if self._matches(cell, src, pos0, pos1):
                cell.seq_ids.add(dst)

    def seq_keep(self, seq_id: int) -> None:
        """Drop every cell not used by `seq_id` and detach other sequences from the rest."""
        validate_seq_id(seq_id, allow_any=False)
        doomed = []
        for i, cell in enumerate(self.cells):
            if seq_id in cell.seq_ids:
                cell.seq_ids = {seq_id}
            else:
                doomed.append(i)
        self._drop(doomed)

    def _move(self, seq_id: int, pos0: int, pos1: int, new_pos) -> None:
        moved, deltas, dropped = [], [], []
        for i, cell in enumerate(self.cells):
            if not self._matches(cell, seq_id, pos0, pos1):
                continue
            target = new_pos(cell.pos)
            if target < 0:
                dropped.append(i)
            elif target != cell.pos:
                moved.append(i)
                deltas.append(target - cell.pos)
                cell.pos = target
        if moved:
            self._on_positions_moved(moved, deltas)
        self._drop(dropped)

    def seq_add(self, seq_id: int, pos0: int, pos1: int, delta: int) -> None:
        """Add `delta` to the positions in [pos0, pos1); cells pushed below 0 are released."""
        validate_region(seq_id, pos0, pos1)
        if delta == 0:
            return
        self._move(seq_id, pos0, pos1, lambda pos: pos + delta)

    def seq_div(self, seq_id: int, pos0: int, pos1: int, divisor: int) -> None:
        """Integer-divide the positions in [pos0, pos1) by `divisor`."""
        validate_region(seq_id, pos0, pos1)
        if divisor <= 1:
            raise ConfigurationError(f"divisor must be > 1, got {divisor}")
        self._move(seq_id, pos0, pos1, lambda pos: pos // divisor)

    # --- Decode bookkeeping ---

    def allocate(self, token_ids: Sequence[int], seq_id: int = 0) -> Optional[List[int]]:
        """
        Append one cell per token for `seq_id`, continuing after its last position.

        Args:
            token_ids: Tokens about to be decoded
            seq_id: Owning sequence

        Returns:
            The positions assigned to the new cells, or None if the capacity
            would be exceeded (nothing is allocated then)
        """
        validate_seq_id(seq_id, allow_any=False)
        if len(self.cells) + len(token_ids) > self.capacity:
            return None
        start = self.seq_pos_max(seq_id) + 1
        positions = list(range(start, start + len(token_ids)))
        for pos, token_id in zip(positions, token_ids):
            self.cells.append(KVCell(pos=pos, token_id=int(token_id), seq_ids={seq_id}))
        return positions

    def rollback(self, count: int) -> None:
        """Forget the last `count` allocated cells without notifying the backend."""
        if count > 0:
            self._drop(list(range(len(self.cells) - count, len(self.cells))), notify=False)

    def snapshot(self) -> Dict[str, Any]:
        """
        Create a snapshot of the current grid.

        Returns:
            Dictionary with the capacity and one entry per cell
        """
        return {
            "capacity": self.capacity,
            "cells": [
                {"pos": cell.pos, "token_id": cell.token_id, "seq_ids": sorted(cell.seq_ids)}
                for cell in self.cells
            ],
        }

    def load_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """Replace the grid with the content of `snapshot` (no backend notification)."""
        self.capacity = snapshot["capacity"]
        self.cells = [
            KVCell(pos=c["pos"], token_id=c["token_id"], seq_ids=set(c["seq_ids"]))
            for c in snapshot["cells"]
        ]
