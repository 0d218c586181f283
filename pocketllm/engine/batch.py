"""Reusable decode batch.

A `Batch` is an arena: storage for `capacity` records is allocated up front and
reused across decode calls. `clear()` only resets the logical length; storage is
reallocated by `ensure_capacity()` when a larger batch is needed and is never
shrunk automatically.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence


@dataclass(frozen=True)
class BatchRecord:
    """One `(token, position, sequence ids, emit logits)` entry of a batch."""

    token: int
    position: int
    seq_ids: tuple[int, ...]
    emit_logits: bool


class Batch:
    """Capacity-bounded sequence of per-token records submitted to one decode call."""

    def __init__(self, capacity: int, *, n_seq_max: int = 1) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if n_seq_max <= 0:
            raise ValueError(f"n_seq_max must be positive, got {n_seq_max}")
        self.n_seq_max = n_seq_max
        self._n_tokens = 0
        self._allocate(capacity)

    def _allocate(self, capacity: int) -> None:
        self._capacity = capacity
        self._token = [0] * capacity
        self._pos = [0] * capacity
        self._seq_id: list[tuple[int, ...]] = [()] * capacity
        self._logits = [False] * capacity

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def n_tokens(self) -> int:
        return self._n_tokens

    @property
    def last_index(self) -> int:
        """Index of the last record (-1 when empty)."""
        return self._n_tokens - 1

    def space_left(self) -> int:
        return self._capacity - self._n_tokens

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def clear(self) -> None:
        """Reset the logical length to zero without releasing storage."""
        self._n_tokens = 0

    def add(self, token: int, position: int, seq_ids: Sequence[int], emit_logits: bool) -> None:
        """Append one record. The caller must have sized the batch beforehand."""
        idx = self._n_tokens
        if idx >= self._capacity:
            raise IndexError(f"Batch overflow: cannot add token, capacity {self._capacity} reached.")
        if not seq_ids:
            raise ValueError("Each batch record needs at least one sequence id.")
        if len(seq_ids) > self.n_seq_max:
            raise ValueError(f"Record belongs to {len(seq_ids)} sequences (max={self.n_seq_max}).")

        self._token[idx] = int(token)
        self._pos[idx] = int(position)
        self._seq_id[idx] = tuple(int(s) for s in seq_ids)
        self._logits[idx] = bool(emit_logits)
        self._n_tokens += 1

    def set_logits(self, index: int, emit_logits: bool) -> None:
        if not 0 <= index < self._n_tokens:
            raise IndexError(f"Batch index {index} out of range (n_tokens={self._n_tokens}).")
        self._logits[index] = bool(emit_logits)

    def ensure_capacity(self, required: int) -> bool:
        """Grow storage to exactly `required` slots if it is currently smaller.

        Returns True when storage was reallocated. Reallocation discards the
        current contents.
        """
        if required <= self._capacity:
            return False
        self.release()
        self._allocate(int(required))
        return True

    def release(self) -> None:
        """Drop the record storage; only used on teardown or before reallocation."""
        self._n_tokens = 0
        self._capacity = 0
        self._token = []
        self._pos = []
        self._seq_id = []
        self._logits = []

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return self._n_tokens

    def __getitem__(self, index: int) -> BatchRecord:
        if index < 0:
            index += self._n_tokens
        if not 0 <= index < self._n_tokens:
            raise IndexError(f"Batch index {index} out of range (n_tokens={self._n_tokens}).")
        return BatchRecord(
            token=self._token[index],
            position=self._pos[index],
            seq_ids=self._seq_id[index],
            emit_logits=self._logits[index],
        )

    def __iter__(self) -> Iterator[BatchRecord]:
        for i in range(self._n_tokens):
            yield self[i]

    def logits_indices(self) -> list[int]:
        return [i for i in range(self._n_tokens) if self._logits[i]]
