"""
Purpose
-------
Build the stem-indexed vocabulary used when the vocabulary is too large for a
flat term -> column map to stay cache resident.

Key behaviors
-------------
- Drops terms whose corpus count is below the frequency threshold.
- Buckets the retained terms by stem (their first `stem_length` characters),
  sorts each bucket, and lays the buckets out contiguously in stem order so
  each stem owns one half-open range `[start, end)` of the flat term sequence.
- Splits the work across worker processes by a deterministic hash of the
  stem; partial stem tables are concatenated and sorted by stem. Stems are
  unique per partition, so no counting merge is needed and the result does
  not depend on the worker count.

Conventions
-----------
- A threshold of 0 keeps every term.
- Ranges use the half-open `[start, end)` convention end to end; lookup in
  `StemLookupVocabulary.find` matches it exactly.
- Terms shorter than `stem_length` are their own stem.

Downstream usage
----------------
Block aggregation calls `build_stem_lookup_index` once after vocabulary
discovery when `large_vocabulary` is requested; the result is shipped
read-only to the matrix-assembly workers.
"""

import zlib
from concurrent.futures import ProcessPoolExecutor
from typing import List, Sequence, TypeAlias

import numpy as np

from dtm.dtm_config import STEM_LENGTH
from dtm.dtm_errors import UsageError
from dtm.logging.dtm_logger import DtmLogger, initialize_logger
from dtm.vocabulary.vocabulary_types import StemLookupVocabulary

TermCount: TypeAlias = tuple[str, int]
StemBucket: TypeAlias = tuple[str, List[TermCount]]


def build_stem_lookup_index(
    vocabulary: Sequence[str],
    word_counts: Sequence[int] | np.ndarray,
    frequency_threshold: int = 0,
    worker_count: int = 1,
    stem_length: int = STEM_LENGTH,
    logger: DtmLogger | None = None,
) -> StemLookupVocabulary:
    """
    Build a `StemLookupVocabulary` from a finalized vocabulary.

    Parameters
    ----------
    vocabulary : Sequence[str]
        Unique terms.
    word_counts : Sequence[int] or numpy.ndarray
        Corpus counts aligned with `vocabulary`.
    frequency_threshold : int, default=0
        Terms with a count strictly below this value are dropped.
    worker_count : int, default=1
        Number of worker processes; values <= 1 build in-process.
    stem_length : int, default=STEM_LENGTH
        Number of leading characters forming the stem.
    logger : DtmLogger, optional
        Logger for progress events; a component logger is created if omitted.

    Returns
    -------
    StemLookupVocabulary
        Retained terms grouped by sorted stem, with aligned counts.

    Raises
    ------
    UsageError
        If `vocabulary` and `word_counts` differ in length, or
        `frequency_threshold` is negative, or `stem_length` is not positive.
    """

    if logger is None:
        logger = initialize_logger("stem_lookup_index")
    if len(vocabulary) != len(word_counts):
        raise UsageError(
            f"Vocabulary has {len(vocabulary)} terms but {len(word_counts)} counts"
        )
    if frequency_threshold < 0:
        raise UsageError(f"frequency_threshold must be non-negative, got {frequency_threshold}")
    if stem_length <= 0:
        raise UsageError(f"stem_length must be positive, got {stem_length}")

    retained: List[TermCount] = [
        (term, int(count))
        for term, count in zip(vocabulary, word_counts)
        if int(count) >= frequency_threshold
    ]
    logger.info(
        event="stem_index_terms_filtered",
        msg=f"Retained {len(retained)} of {len(vocabulary)} terms",
        context={"frequency_threshold": frequency_threshold, "retained": len(retained)},
    )

    partition_count = max(1, int(worker_count))
    partitions = partition_by_stem(retained, stem_length, partition_count)
    if partition_count == 1:
        partial_tables = [build_partial_stem_table(partitions[0], stem_length)]
    else:
        with ProcessPoolExecutor(max_workers=partition_count) as executor:
            partial_tables = list(
                executor.map(
                    build_partial_stem_table, partitions, [stem_length] * partition_count
                )
            )

    stem_buckets: List[StemBucket] = [
        bucket for partial_table in partial_tables for bucket in partial_table
    ]
    stem_buckets.sort(key=lambda bucket: bucket[0])
    stem_vocabulary = layout_stem_buckets(stem_buckets, stem_length)
    logger.info(
        event="stem_index_built",
        msg=f"Indexed {stem_vocabulary.size} terms under {len(stem_vocabulary.stems)} stems",
        context={
            "terms": stem_vocabulary.size,
            "stems": len(stem_vocabulary.stems),
            "worker_count": partition_count,
        },
    )
    return stem_vocabulary


def stem_partition(stem: str, partition_count: int) -> int:
    """Deterministic partition of a stem, stable across processes."""
    return zlib.crc32(stem.encode("utf-8")) % partition_count


def partition_by_stem(
    retained: Sequence[TermCount], stem_length: int, partition_count: int
) -> List[List[TermCount]]:
    """
    Split retained terms so that every stem lands in exactly one partition.

    Parameters
    ----------
    retained : Sequence[tuple[str, int]]
        `(term, count)` pairs that passed the frequency threshold.
    stem_length : int
        Number of leading characters forming the stem.
    partition_count : int
        Number of partitions to produce.

    Returns
    -------
    list[list[tuple[str, int]]]
        `partition_count` lists, some possibly empty.
    """

    partitions: List[List[TermCount]] = [[] for _ in range(partition_count)]
    for term, count in retained:
        partitions[stem_partition(term[:stem_length], partition_count)].append((term, count))
    return partitions


def build_partial_stem_table(partition: Sequence[TermCount], stem_length: int) -> List[StemBucket]:
    """
    Group one partition's terms by stem; runs inside a worker process.

    Parameters
    ----------
    partition : Sequence[tuple[str, int]]
        `(term, count)` pairs of one partition.
    stem_length : int
        Number of leading characters forming the stem.

    Returns
    -------
    list[tuple[str, list[tuple[str, int]]]]
        One bucket per stem, sorted by stem, with the bucket's terms sorted.
    """

    buckets: dict[str, List[TermCount]] = {}
    for term, count in partition:
        buckets.setdefault(term[:stem_length], []).append((term, count))
    return [(stem, sorted(buckets[stem])) for stem in sorted(buckets)]


def layout_stem_buckets(
    stem_buckets: Sequence[StemBucket], stem_length: int
) -> StemLookupVocabulary:
    """
    Concatenate stem-sorted buckets into the flat term sequence and bounds.

    Parameters
    ----------
    stem_buckets : Sequence[tuple[str, list[tuple[str, int]]]]
        Buckets sorted by stem.
    stem_length : int
        Stem length recorded on the result.

    Returns
    -------
    StemLookupVocabulary
        Flat terms, aligned counts, and `[start, end)` bounds per stem.
    """

    terms: List[str] = []
    counts: List[int] = []
    stems: List[str] = []
    starts = np.empty(len(stem_buckets), dtype=np.int64)
    ends = np.empty(len(stem_buckets), dtype=np.int64)
    for position, (stem, bucket) in enumerate(stem_buckets):
        stems.append(stem)
        starts[position] = len(terms)
        for term, count in bucket:
            terms.append(term)
            counts.append(count)
        ends[position] = len(terms)
    return StemLookupVocabulary(
        terms=terms,
        stems=stems,
        starts=starts,
        ends=ends,
        stem_length=stem_length,
        word_counts=np.asarray(counts, dtype=np.uint64),
    )
