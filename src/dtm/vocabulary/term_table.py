"""
Purpose
-------
Provide `TermTable`, the index-stable, pre-sized table that backs vocabulary
discovery: a hash map from term to slot plus a preallocated count array.

Key behaviors
-------------
- Slots are assigned in insertion order and never move, so a term's slot is
  its column index for the lifetime of the table.
- Counts live in a preallocated `numpy.uint64` array sized to the table's
  capacity; `reserve` grows it explicitly.
- Inserting a new term into a full table raises `CapacityError`; terms are
  never dropped silently.

Conventions
-----------
- Capacity is clamped to `VOCABULARY_SIZE_CEILING` (2**31 - 1).
- `fill_ratio` is `size / capacity`; callers compare it against the growth
  policy between batches.

Downstream usage
----------------
`count_words` seeds a table from an existing vocabulary, streams a batch into
it with `add`, and reads the result back with `unique_terms` and
`word_counts`.
"""

from typing import List, Sequence

import numpy as np

from dtm.dtm_config import VOCABULARY_SIZE_CEILING
from dtm.dtm_errors import CapacityError, UsageError


class TermTable:
    """
    Purpose
    -------
    Pre-sized, index-stable term -> count table.

    Parameters
    ----------
    capacity : int
        Number of slots to preallocate; must be non-negative.

    Attributes
    ----------
    capacity : int
        Current number of allocated slots.
    size : int
        Number of occupied slots (unique terms inserted so far).

    Notes
    -----
    - The table is not thread-safe; each process owns its own table.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise UsageError(f"Term table capacity must be non-negative, got {capacity}")
        self.capacity: int = min(int(capacity), VOCABULARY_SIZE_CEILING)
        self._slots: dict[str, int] = {}
        self._terms: List[str] = []
        self._counts: np.ndarray = np.zeros(self.capacity, dtype=np.uint64)

    @classmethod
    def from_counts(
        cls, terms: Sequence[str], counts: Sequence[int] | np.ndarray, capacity: int
    ) -> "TermTable":
        """
        Seed a table from an existing vocabulary and reserve `capacity` slots.

        Parameters
        ----------
        terms : Sequence[str]
            Existing unique terms, in column order.
        counts : Sequence[int] or numpy.ndarray
            Counts aligned with `terms`.
        capacity : int
            Total slots wanted after seeding.

        Returns
        -------
        TermTable
            Table whose first `len(terms)` slots hold the existing vocabulary.

        Raises
        ------
        UsageError
            If `terms` and `counts` differ in length or `terms` repeats a term.
        CapacityError
            If the existing vocabulary alone exceeds `capacity`.
        """

        if len(terms) != len(counts):
            raise UsageError(
                f"Existing vocabulary has {len(terms)} terms but {len(counts)} counts"
            )
        if len(terms) > capacity:
            raise CapacityError(
                "term_table",
                capacity,
                f"existing vocabulary already holds {len(terms)} terms",
            )
        table = cls(len(terms))
        table._counts[: len(terms)] = np.asarray(counts, dtype=np.uint64)
        for slot, term in enumerate(terms):
            if term in table._slots:
                raise UsageError(f"Existing vocabulary repeats the term {term!r}")
            table._slots[term] = slot
        table._terms = list(terms)
        table.reserve(capacity)
        return table

    @property
    def size(self) -> int:
        return len(self._terms)

    @property
    def fill_ratio(self) -> float:
        if self.capacity == 0:
            return 1.0
        return self.size / self.capacity

    def reserve(self, capacity: int) -> None:
        """
        Grow the count array to at least `capacity` slots.

        Parameters
        ----------
        capacity : int
            Requested capacity; smaller values are a no-op.

        Returns
        -------
        None
        """

        capacity = min(int(capacity), VOCABULARY_SIZE_CEILING)
        if capacity <= self.capacity:
            return
        grown = np.zeros(capacity, dtype=np.uint64)
        grown[: self.size] = self._counts[: self.size]
        self._counts = grown
        self.capacity = capacity

    def add(self, term: str, count: int = 1) -> int:
        """
        Add `count` to `term`, inserting it at the next free slot if new.

        Parameters
        ----------
        term : str
            Term to count.
        count : int, default=1
            Occurrences to add.

        Returns
        -------
        int
            Slot (column index) of the term.

        Raises
        ------
        CapacityError
            If `term` is new and every slot is occupied.
        """

        slot = self._slots.get(term)
        if slot is None:
            slot = len(self._terms)
            if slot >= self.capacity:
                raise CapacityError(
                    "term_table", self.capacity, f"cannot insert new term {term!r}"
                )
            self._slots[term] = slot
            self._terms.append(term)
        self._counts[slot] += np.uint64(count)
        return slot

    def slot_of(self, term: str) -> int | None:
        return self._slots.get(term)

    def unique_terms(self) -> List[str]:
        return list(self._terms)

    def word_counts(self) -> np.ndarray:
        """Copy of the occupied part of the count array."""
        return self._counts[: self.size].copy()
