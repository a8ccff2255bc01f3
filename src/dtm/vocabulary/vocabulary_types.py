"""
Purpose
-------
Define the two vocabulary representations used to resolve terms to matrix
columns, behind one capability: `resolve(term) -> column | None`.

Key behaviors
-------------
- `StandardVocabulary` is a flat term sequence; column = position. Lookup
  uses a term -> column dict built once on first use.
- `StemLookupVocabulary` is a flat retained-term sequence partitioned into
  per-stem half-open ranges `[start, end)`; lookup is a binary search over the
  sorted stems followed by a binary search within the stem's range.
- `as_vocabulary` coerces caller input (plain string sequences or either
  variant) into a variant and rejects everything else.

Conventions
-----------
- The variant is chosen once, at construction; downstream code only calls
  `resolve`, `terms`, and `size` and never inspects the variant again.
- Vocabularies are immutable after construction and safe to share read-only
  across workers (they pickle cleanly; the lookup dict is rebuilt lazily).
- Within a stem range terms are sorted, so `stems` and every range are
  ascending.

Downstream usage
----------------
`build_stem_lookup_index` creates `StemLookupVocabulary` objects; matrix
assembly and block aggregation accept either variant through `Vocabulary`.
"""

from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Any, List, Sequence, TypeAlias

import numpy as np

from dtm.dtm_errors import UsageError


@dataclass(eq=False)
class StandardVocabulary:
    """
    Purpose
    -------
    Flat vocabulary: column index equals position in `terms`.

    Parameters
    ----------
    terms : list[str]
        Unique terms in column order.
    word_counts : numpy.ndarray or None
        Optional corpus counts aligned with `terms`.

    Raises
    ------
    UsageError
        If `terms` contains a non-string or a repeated term, or `word_counts`
        is misaligned.
    """

    terms: List[str]
    word_counts: np.ndarray | None = None
    _columns: dict[str, int] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.terms = list(self.terms)
        if any(not isinstance(term, str) for term in self.terms):
            raise UsageError("A vocabulary must contain only strings")
        if len(set(self.terms)) != len(self.terms):
            raise UsageError("A vocabulary must not repeat terms")
        if self.word_counts is not None and len(self.word_counts) != len(self.terms):
            raise UsageError(
                f"Vocabulary has {len(self.terms)} terms but {len(self.word_counts)} counts"
            )

    def __getstate__(self) -> dict[str, Any]:
        state = dict(self.__dict__)
        state["_columns"] = None
        return state

    @property
    def size(self) -> int:
        return len(self.terms)

    def resolve(self, term: str) -> int | None:
        if self._columns is None:
            self._columns = {term: column for column, term in enumerate(self.terms)}
        return self._columns.get(term)


@dataclass(eq=False)
class StemLookupVocabulary:
    """
    Purpose
    -------
    Stem-indexed vocabulary for very large term sets.

    Parameters
    ----------
    terms : list[str]
        Flat retained-term sequence; position is the column index.
    stems : list[str]
        Sorted, unique stem keys.
    starts : numpy.ndarray
        `int64` inclusive start of each stem's range in `terms`.
    ends : numpy.ndarray
        `int64` exclusive end of each stem's range in `terms`.
    stem_length : int
        Number of leading characters forming a term's stem.
    word_counts : numpy.ndarray or None
        Corpus counts aligned with `terms`.

    Notes
    -----
    - Ranges partition `terms` with no gaps or overlaps; `validate` checks
      this and is run by snapshot loading.
    """

    terms: List[str]
    stems: List[str]
    starts: np.ndarray
    ends: np.ndarray
    stem_length: int
    word_counts: np.ndarray | None = None

    @property
    def size(self) -> int:
        return len(self.terms)

    def stem_of(self, term: str) -> str:
        return term[: self.stem_length]

    def find(self, term: str) -> int | None:
        """
        Return the column of `term`, or None if it is not indexed.

        Parameters
        ----------
        term : str
            Term to look up.

        Returns
        -------
        int or None
            Column index in `terms`; None when the stem is absent or the term
            is absent from its stem's range (never observed, or filtered by
            the frequency threshold).
        """

        stem = self.stem_of(term)
        stem_position = bisect_left(self.stems, stem)
        if stem_position == len(self.stems) or self.stems[stem_position] != stem:
            return None
        start = int(self.starts[stem_position])
        end = int(self.ends[stem_position])
        column = bisect_left(self.terms, term, start, end)
        if column < end and self.terms[column] == term:
            return column
        return None

    def resolve(self, term: str) -> int | None:
        return self.find(term)

    def validate(self) -> None:
        """
        Check the stem table invariants.

        Raises
        ------
        UsageError
            If stems are unsorted or repeated, bounds are misaligned, or the
            ranges do not partition `terms` exactly.
        """

        if not len(self.stems) == len(self.starts) == len(self.ends):
            raise UsageError("Stem lookup table has misaligned stems and bounds")
        if any(left >= right for left, right in zip(self.stems, self.stems[1:])):
            raise UsageError("Stem lookup table stems must be strictly increasing")
        expected_start = 0
        for stem, start, end in zip(self.stems, self.starts, self.ends):
            if int(start) != expected_start or int(end) <= int(start):
                raise UsageError(f"Stem {stem!r} range [{start}, {end}) breaks the partition")
            expected_start = int(end)
        if expected_start != len(self.terms):
            raise UsageError("Stem ranges do not cover the whole term sequence")


Vocabulary: TypeAlias = StandardVocabulary | StemLookupVocabulary


def as_vocabulary(vocabulary: Any) -> Vocabulary | None:
    """
    Coerce a caller-supplied vocabulary into one of the two variants.

    Parameters
    ----------
    vocabulary : Any
        None, a `StandardVocabulary`, a `StemLookupVocabulary`, or a sequence
        of strings.

    Returns
    -------
    Vocabulary or None
        None passes through; sequences become `StandardVocabulary`.

    Raises
    ------
    UsageError
        For any other object, including a bare string and sequences holding
        non-strings or repeated terms.
    """

    if vocabulary is None or isinstance(vocabulary, (StandardVocabulary, StemLookupVocabulary)):
        return vocabulary
    if isinstance(vocabulary, (str, bytes, dict)):
        raise UsageError(
            "A caller-supplied vocabulary must be a sequence of terms or a vocabulary object"
        )
    if isinstance(vocabulary, (Sequence, np.ndarray)):
        return StandardVocabulary(terms=[term for term in vocabulary])
    raise UsageError(
        f"Unsupported vocabulary object of type {type(vocabulary).__name__}; provide a "
        "sequence of terms or a vocabulary object"
    )
