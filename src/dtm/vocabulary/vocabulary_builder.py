"""
Purpose
-------
Discover the vocabulary of a batch of tokenized documents and its
corpus-wide term frequencies, optionally folding the batch into a vocabulary
discovered from earlier batches.

Key behaviors
-------------
- `count_words` pre-sizes a `TermTable` to the requested maximum vocabulary
  size (or to an upper bound derived from the batch when the size is -1),
  seeds it with any existing vocabulary, and streams every `(term, count)`
  pair of the batch into it.
- `GrowthPolicy` decides, between batches, whether the caller should enlarge
  the vocabulary bound (default: x1.5 once more than 80% full).
- `merge_word_counts` folds one discovered state into another.

Conventions
-----------
- Unique terms are returned in first-seen order; column order therefore
  depends on batch order, while the set of terms and their totals do not.
- Terms are never dropped: a full table raises `CapacityError` and the
  caller decides whether to grow the bound and retry.
- Zero counts contribute nothing and do not introduce a term.

Downstream usage
----------------
Block aggregation calls `count_words` once per block, applying
`GrowthPolicy.next_bound` between calls. In-memory matrix generation calls it
once with an unbounded size to build a vocabulary on the fly.
"""

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from dtm.dtm_config import (
    UNBOUNDED_VOCABULARY_SIZE,
    VOCABULARY_FILL_RATIO,
    VOCABULARY_GROWTH_FACTOR,
)
from dtm.dtm_errors import UsageError
from dtm.dtm_types import DocumentTermBatch, WordCountResult
from dtm.vocabulary.term_table import TermTable


@dataclass(frozen=True)
class GrowthPolicy:
    """
    Purpose
    -------
    Fill-ratio-triggered growth rule for the vocabulary bound.

    Parameters
    ----------
    fill_ratio : float
        Growth triggers once `total_unique / bound` exceeds this ratio.
    growth_factor : float
        Multiplier applied to the bound when growth triggers.

    Raises
    ------
    UsageError
        If `fill_ratio` is not in (0, 1] or `growth_factor` is not above 1.
    """

    fill_ratio: float = VOCABULARY_FILL_RATIO
    growth_factor: float = VOCABULARY_GROWTH_FACTOR

    def __post_init__(self) -> None:
        if not 0 < self.fill_ratio <= 1:
            raise UsageError(f"fill_ratio must be in (0, 1], got {self.fill_ratio}")
        if self.growth_factor <= 1:
            raise UsageError(f"growth_factor must exceed 1, got {self.growth_factor}")

    def next_bound(self, total_unique: int, bound: int) -> int:
        """
        Return the bound to use for the next batch.

        Parameters
        ----------
        total_unique : int
            Unique terms discovered so far.
        bound : int
            Current bound; `UNBOUNDED_VOCABULARY_SIZE` is returned unchanged.

        Returns
        -------
        int
            `ceil(bound * growth_factor)` when the fill ratio is exceeded,
            otherwise `bound`.
        """

        if bound == UNBOUNDED_VOCABULARY_SIZE or bound <= 0:
            return bound
        if total_unique / bound > self.fill_ratio:
            return int(math.ceil(bound * self.growth_factor))
        return bound


def count_words(
    batch: Sequence[Sequence[str]] | DocumentTermBatch,
    max_vocab_size: int,
    existing_vocabulary: Sequence[str] | None = None,
    existing_counts: Sequence[int] | np.ndarray | None = None,
    term_count_lists: Sequence[Sequence[int]] | None = None,
) -> WordCountResult:
    """
    Count the unique terms of a batch, optionally on top of an existing vocabulary.

    Parameters
    ----------
    batch : Sequence[Sequence[str]] or DocumentTermBatch
        One term sequence per document. A `DocumentTermBatch` carries its own
        counts, in which case `term_count_lists` must be None.
    max_vocab_size : int
        Capacity of the term table. `-1` sizes it to the existing vocabulary
        plus the batch's total number of term entries, which can never be
        exceeded.
    existing_vocabulary : Sequence[str], optional
        Unique terms discovered from earlier batches.
    existing_counts : Sequence[int] or numpy.ndarray, optional
        Counts aligned with `existing_vocabulary`.
    term_count_lists : Sequence[Sequence[int]], optional
        Per-document counts aligned with `batch`; when absent every literal
        occurrence counts once.

    Returns
    -------
    WordCountResult
        `(unique_terms, word_counts, total_unique)` with terms in first-seen
        order (existing terms first).

    Raises
    ------
    UsageError
        If only one of `existing_vocabulary` / `existing_counts` is given,
        if `max_vocab_size` is neither -1 nor positive, or if counts are
        supplied twice.
    ShapeError
        If `term_count_lists` is misaligned with `batch`.
    CapacityError
        If the batch introduces more unique terms than the table can hold.
    """

    if (existing_vocabulary is None) != (existing_counts is None):
        raise UsageError("existing_vocabulary and existing_counts must be supplied together")
    if max_vocab_size != UNBOUNDED_VOCABULARY_SIZE and max_vocab_size <= 0:
        raise UsageError(f"max_vocab_size must be -1 or positive, got {max_vocab_size}")

    if isinstance(batch, DocumentTermBatch):
        if term_count_lists is not None:
            raise UsageError("term_count_lists must not be given alongside a DocumentTermBatch")
        document_batch = batch
    else:
        document_batch = DocumentTermBatch.from_lists(batch, term_count_lists)

    existing_terms: Sequence[str] = existing_vocabulary if existing_vocabulary is not None else []
    capacity: int = int(max_vocab_size)
    if capacity == UNBOUNDED_VOCABULARY_SIZE:
        capacity = len(existing_terms) + document_batch.total_terms

    table = TermTable.from_counts(
        existing_terms,
        existing_counts if existing_counts is not None else np.zeros(0, dtype=np.uint64),
        capacity,
    )
    for document_index in range(document_batch.document_count):
        for term, count in document_batch.iter_document(document_index):
            if count == 0:
                continue
            table.add(term, count)

    return WordCountResult(
        unique_terms=table.unique_terms(),
        word_counts=table.word_counts(),
        total_unique=table.size,
    )


def merge_word_counts(
    left: WordCountResult,
    right: WordCountResult,
    max_vocab_size: int = UNBOUNDED_VOCABULARY_SIZE,
) -> WordCountResult:
    """
    Fold `right` into `left`.

    Parameters
    ----------
    left : WordCountResult
        State whose terms keep their columns.
    right : WordCountResult
        State whose terms are added; new terms are appended in its order.
    max_vocab_size : int, default=-1
        Capacity for the merged table; -1 sizes it to both states combined.

    Returns
    -------
    WordCountResult
        Merged state. The set of terms and their totals do not depend on
        argument order; only column order does.
    """

    return count_words(
        [right.unique_terms],
        max_vocab_size,
        existing_vocabulary=left.unique_terms,
        existing_counts=left.word_counts,
        term_count_lists=[[int(count) for count in right.word_counts]],
    )
