"""
Purpose
-------
Persist and restore the vocabulary discovered during block aggregation, so a
later run can resume vocabulary discovery or skip it entirely.

Key behaviors
-------------
- `save_vocabulary_snapshot` writes the aggregate word counts (every
  discovered term with its count), the finalized lookup vocabulary, and a
  small JSON metadata file into one directory.
- `load_vocabulary_snapshot` reads them back into a `WordCountResult` and a
  `StandardVocabulary` or `StemLookupVocabulary`, validating the stem table.

Conventions
-----------
- File names come from `dtm.dtm_config`:
    - `WORD_COUNTS_SNAPSHOT_FILE`: columns `term`, `count`.
    - `VOCABULARY_SNAPSHOT_FILE`: columns `term`, `count` (retained terms in
      column order; `count` is null when the vocabulary carries none).
    - `STEM_TABLE_SNAPSHOT_FILE`: columns `stem`, `start`, `end`, written
      only for the stem-lookup form; ranges are half-open.
    - `SNAPSHOT_META_FILE`: `{"type", "total_unique", "stem_length"}`.
- Counts are stored as `uint64`.

Downstream usage
----------------
`aggregate_blocks(..., snapshot_dir=...)` saves a snapshot after vocabulary
discovery. Load it later and pass `snapshot.vocabulary` as the vocabulary
argument, or pass `snapshot.word_counts` as `initial_word_counts` to
`discover_vocabulary` to continue over additional blocks.
"""

import json
import os
from dataclasses import dataclass

import numpy as np
import pandas as pd

from dtm.dtm_config import (
    SNAPSHOT_META_FILE,
    STEM_TABLE_SNAPSHOT_FILE,
    VOCABULARY_SNAPSHOT_FILE,
    WORD_COUNTS_SNAPSHOT_FILE,
)
from dtm.dtm_errors import UsageError
from dtm.dtm_types import WordCountResult
from dtm.vocabulary.vocabulary_types import StandardVocabulary, StemLookupVocabulary, Vocabulary

STANDARD_TYPE: str = "standard"
STEM_LOOKUP_TYPE: str = "stem-lookup"


@dataclass
class VocabularySnapshot:
    """
    Purpose
    -------
    Restored snapshot contents.

    Attributes
    ----------
    word_counts : WordCountResult
        Every discovered term and its corpus count, in discovery order.
    vocabulary : Vocabulary
        Finalized lookup vocabulary.
    """

    word_counts: WordCountResult
    vocabulary: Vocabulary


def save_vocabulary_snapshot(
    directory: str, word_counts: WordCountResult, vocabulary: Vocabulary
) -> None:
    """
    Write a vocabulary snapshot into `directory`.

    Parameters
    ----------
    directory : str
        Target directory; created if missing. Existing snapshot files are
        overwritten.
    word_counts : WordCountResult
        Aggregate discovery result.
    vocabulary : Vocabulary
        Finalized vocabulary derived from `word_counts`.

    Returns
    -------
    None

    Raises
    ------
    OSError
        If a file cannot be written.
    """

    os.makedirs(directory, exist_ok=True)
    pd.DataFrame(
        {
            "term": pd.Series(word_counts.unique_terms, dtype=object),
            "count": np.asarray(word_counts.word_counts, dtype=np.uint64),
        }
    ).to_parquet(os.path.join(directory, WORD_COUNTS_SNAPSHOT_FILE), index=False)

    vocabulary_counts = (
        pd.Series(np.asarray(vocabulary.word_counts, dtype=np.uint64))
        if vocabulary.word_counts is not None
        else pd.Series([None] * vocabulary.size, dtype="UInt64")
    )
    pd.DataFrame(
        {"term": pd.Series(vocabulary.terms, dtype=object), "count": vocabulary_counts}
    ).to_parquet(os.path.join(directory, VOCABULARY_SNAPSHOT_FILE), index=False)

    meta: dict = {"type": STANDARD_TYPE, "total_unique": int(word_counts.total_unique)}
    if isinstance(vocabulary, StemLookupVocabulary):
        meta["type"] = STEM_LOOKUP_TYPE
        meta["stem_length"] = vocabulary.stem_length
        pd.DataFrame(
            {
                "stem": pd.Series(vocabulary.stems, dtype=object),
                "start": np.asarray(vocabulary.starts, dtype=np.int64),
                "end": np.asarray(vocabulary.ends, dtype=np.int64),
            }
        ).to_parquet(os.path.join(directory, STEM_TABLE_SNAPSHOT_FILE), index=False)

    with open(os.path.join(directory, SNAPSHOT_META_FILE), "w", encoding="utf-8") as f:
        json.dump(meta, f)


def load_vocabulary_snapshot(directory: str) -> VocabularySnapshot:
    """
    Read a snapshot written by `save_vocabulary_snapshot`.

    Parameters
    ----------
    directory : str
        Snapshot directory.

    Returns
    -------
    VocabularySnapshot
        Restored word counts and vocabulary.

    Raises
    ------
    UsageError
        If the metadata names an unknown vocabulary type, the stored
        `total_unique` disagrees with the stored terms, or the stem table
        violates its invariants.
    OSError
        If a file is missing or unreadable.
    """

    with open(os.path.join(directory, SNAPSHOT_META_FILE), "r", encoding="utf-8") as f:
        meta: dict = json.load(f)

    counts_df = pd.read_parquet(os.path.join(directory, WORD_COUNTS_SNAPSHOT_FILE))
    unique_terms = [str(term) for term in counts_df["term"]]
    if len(unique_terms) != int(meta["total_unique"]):
        raise UsageError(
            f"Snapshot lists {len(unique_terms)} terms but records total_unique="
            f"{meta['total_unique']}"
        )
    word_counts = WordCountResult(
        unique_terms=unique_terms,
        word_counts=counts_df["count"].to_numpy(dtype=np.uint64),
        total_unique=len(unique_terms),
    )

    vocabulary_df = pd.read_parquet(os.path.join(directory, VOCABULARY_SNAPSHOT_FILE))
    terms = [str(term) for term in vocabulary_df["term"]]
    vocabulary_counts: np.ndarray | None = None
    if not vocabulary_df["count"].isna().any():
        vocabulary_counts = vocabulary_df["count"].to_numpy(dtype=np.uint64)

    vocabulary: Vocabulary
    if meta["type"] == STANDARD_TYPE:
        vocabulary = StandardVocabulary(terms=terms, word_counts=vocabulary_counts)
    elif meta["type"] == STEM_LOOKUP_TYPE:
        stem_df = pd.read_parquet(os.path.join(directory, STEM_TABLE_SNAPSHOT_FILE))
        vocabulary = StemLookupVocabulary(
            terms=terms,
            stems=[str(stem) for stem in stem_df["stem"]],
            starts=stem_df["start"].to_numpy(dtype=np.int64),
            ends=stem_df["end"].to_numpy(dtype=np.int64),
            stem_length=int(meta["stem_length"]),
            word_counts=vocabulary_counts,
        )
        vocabulary.validate()
    else:
        raise UsageError(f"Unknown vocabulary type {meta['type']!r} in snapshot")
    return VocabularySnapshot(word_counts=word_counts, vocabulary=vocabulary)
