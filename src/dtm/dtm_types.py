"""
Purpose
-------
Shared data types for the document-term matrix builder: the per-block batch
of tokenized documents and the result of vocabulary discovery.

Key behaviors
-------------
- `DocumentTermBatch` holds one term sequence per document plus an optional
  parallel count sequence, and validates their alignment on construction.
- `WordCountResult` is the `(unique_terms, word_counts, total_unique)` triple
  returned by `count_words`; it unpacks like a plain tuple.

Conventions
-----------
- Terms are exact strings; no normalization happens in this package.
- When counts are supplied, `counts[d][k]` is the occurrence count of
  `terms[d][k]`, so a document may be stored as its unique terms plus counts.
- `word_counts` arrays are `numpy.uint64` aligned positionally with
  `unique_terms`.

Downstream usage
----------------
Block sources return `DocumentTermBatch` objects; `count_words` and
`assemble_matrix` consume them; `WordCountResult` flows from vocabulary
discovery into stem indexing and snapshots.
"""

from dataclasses import dataclass
from typing import Iterator, List, NamedTuple, Sequence, TypeAlias

import numpy as np

from dtm.dtm_errors import ShapeError, UsageError

DocumentTerms: TypeAlias = List[List[str]]
DocumentCounts: TypeAlias = List[List[int]]

NUMERIC_COUNT_TYPES = (int, float, np.integer, np.floating)


def coerce_count(count: object) -> int:
    """
    Convert one caller-supplied count to `int`, truncating toward zero.

    Raises
    ------
    UsageError
        If `count` is not a number or is not finite.
    """

    if not isinstance(count, NUMERIC_COUNT_TYPES):
        raise UsageError(f"Term count {count!r} is not a number")
    if isinstance(count, (float, np.floating)) and not np.isfinite(count):
        raise UsageError(f"Term count {count!r} is not finite")
    return int(count)


class WordCountResult(NamedTuple):
    """
    Purpose
    -------
    Vocabulary discovered so far and its corpus-wide counts.

    Fields
    ------
    unique_terms : list[str]
        Unique terms in first-seen order.
    word_counts : numpy.ndarray
        `uint64` counts aligned with `unique_terms`.
    total_unique : int
        Number of unique terms; equals `len(unique_terms)`.
    """

    unique_terms: List[str]
    word_counts: np.ndarray
    total_unique: int


@dataclass
class DocumentTermBatch:
    """
    Purpose
    -------
    One block's worth of tokenized documents.

    Parameters
    ----------
    terms : list[list[str]]
        One term sequence per document.
    counts : list[list[int]] or None
        Optional per-document count sequences aligned with `terms`.

    Raises
    ------
    ShapeError
        If `counts` has a different number of documents than `terms`, or a
        document's count list differs in length from its term list.
    UsageError
        If any supplied count is negative.
    """

    terms: DocumentTerms
    counts: DocumentCounts | None = None

    def __post_init__(self) -> None:
        if self.counts is None:
            return
        if len(self.counts) != len(self.terms):
            raise ShapeError(
                f"Term lists cover {len(self.terms)} documents but count lists cover "
                f"{len(self.counts)}"
            )
        for document_index, (document_terms, document_counts) in enumerate(
            zip(self.terms, self.counts)
        ):
            if len(document_terms) != len(document_counts):
                raise ShapeError(
                    f"Document {document_index} has {len(document_terms)} terms but "
                    f"{len(document_counts)} counts"
                )
            if any(count < 0 for count in document_counts):
                raise UsageError(f"Document {document_index} has a negative term count")

    @classmethod
    def from_lists(
        cls,
        document_terms: Sequence[Sequence[str]],
        term_count_lists: Sequence[Sequence[int]] | Sequence[int] | None = None,
    ) -> "DocumentTermBatch":
        """
        Build a batch from caller-supplied sequences.

        Parameters
        ----------
        document_terms : Sequence[Sequence[str]]
            One term sequence per document.
        term_count_lists : Sequence[Sequence[int]] | Sequence[int] | None
            Per-document counts. A flat sequence of numbers is taken as the
            count list of a single document. Floating-point counts are
            truncated toward zero.

        Returns
        -------
        DocumentTermBatch
            Batch with list-typed, validated contents.

        Raises
        ------
        UsageError
            If `term_count_lists` mixes numbers and sequences, holds an entry
            that is neither, or holds a non-finite count.
        ShapeError
            If counts and terms are misaligned.
        """

        terms: DocumentTerms = [list(document) for document in document_terms]
        if term_count_lists is None:
            return cls(terms=terms)
        count_items = list(term_count_lists)
        is_scalar = [isinstance(item, NUMERIC_COUNT_TYPES) for item in count_items]
        if count_items and all(is_scalar):
            counts: DocumentCounts = [[coerce_count(count) for count in count_items]]
        elif any(is_scalar):
            raise UsageError(
                "term_count_lists must be a list of count sequences or a single count sequence"
            )
        else:
            counts = []
            for document in count_items:
                if isinstance(document, (str, bytes)) or not isinstance(
                    document, (Sequence, np.ndarray)
                ):
                    raise UsageError(f"Count entry {document!r} is not a sequence of counts")
                counts.append([coerce_count(count) for count in document])
        return cls(terms=terms, counts=counts)

    @property
    def document_count(self) -> int:
        return len(self.terms)

    @property
    def total_terms(self) -> int:
        """Number of (term, count) entries across all documents."""
        return sum(len(document) for document in self.terms)

    def iter_document(self, document_index: int) -> Iterator[tuple[str, int]]:
        """
        Yield `(term, count)` pairs of one document.

        Parameters
        ----------
        document_index : int
            Position of the document in the batch.

        Returns
        -------
        Iterator[tuple[str, int]]
            Count is 1 per literal occurrence when no counts were supplied.
        """

        document_terms = self.terms[document_index]
        if self.counts is None:
            for term in document_terms:
                yield term, 1
        else:
            yield from zip(document_terms, self.counts[document_index])
