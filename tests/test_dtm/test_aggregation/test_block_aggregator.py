"""
Purpose
-------
Unit tests for `dtm.aggregation.block_aggregator`.

Key behaviors
-------------
- Block aggregation rejects single-block corpora and bad option
  combinations with `UsageError`.
- Discovered vocabularies produce the same matrix as
  `generate_document_term_matrix` on the concatenated corpus.
- The large-vocabulary path filters by frequency, indexes by stem, and
  orders columns by descending frequency.
- Parallel assembly equals sequential assembly row for row, on the inline
  executor and on a real process pool over parquet blocks, and the first
  block failure propagates.
- Per-block results carry no column labels, so their pickled size does not
  depend on the vocabulary size.
- `discover_vocabulary` grows its bound between blocks deterministically and
  raises `CapacityError` when a block overflows the current bound.
- Snapshots written during aggregation can be loaded and fed back in.

Conventions
-----------
- `ProcessPoolExecutor` is replaced with `InlineExecutor` except in the
  real-pool test; the worker-global vocabulary is reset with `monkeypatch` so
  tests stay independent.
- Growth policies are constructed explicitly.

Downstream usage
----------------
Run with `pytest -q tests/test_dtm/test_aggregation`.
"""

import json
import pickle
from dataclasses import dataclass
from pathlib import Path
from typing import List

import numpy as np
import pytest

from dtm.aggregation import block_aggregator
from dtm.aggregation.block_aggregator import (
    aggregate_blocks,
    assemble_block,
    assemble_block_in_worker,
    discover_vocabulary,
    finalize_vocabulary,
    initialize_assembly_worker,
)
from dtm.dtm_config import SNAPSHOT_META_FILE
from dtm.dtm_errors import CapacityError, UsageError
from dtm.dtm_types import DocumentTermBatch
from dtm.matrix.matrix_assembler import generate_document_term_matrix
from dtm.matrix.sparse_matrix import SparseDocumentTermMatrix
from dtm.storage.block_source import InMemoryBlockSource, ParquetBlockSource, write_parquet_block
from dtm.storage.vocabulary_snapshot import load_vocabulary_snapshot
from dtm.vocabulary.vocabulary_builder import GrowthPolicy, count_words
from dtm.vocabulary.vocabulary_types import StandardVocabulary, StemLookupVocabulary
from tests.test_dtm.dtm_testing_utils import (
    InlineExecutor,
    dense_cells,
    init_logger_for_test,
    two_block_source,
)

FIVE_BLOCKS: dict[str, list[list[str]]] = {
    "b1": [["apple", "banana", "apple"], ["cherry"]],
    "b2": [["banana", "date"]],
    "b3": [[], ["apple", "elder", "elder", "fig"]],
    "b4": [["fig", "banana"], ["grape"], ["apple"]],
    "b5": [["date", "date", "cherry"]],
}


@dataclass
class FailingBlockSource:
    """Block source whose `failing_block` cannot be read."""

    blocks: dict[str, DocumentTermBatch]
    failing_block: str

    @property
    def block_ids(self) -> List[str]:
        return list(self.blocks)

    def load(self, block_id: str, use_term_counts: bool = False) -> DocumentTermBatch:
        if block_id == self.failing_block:
            raise OSError(f"cannot read {block_id}")
        return self.blocks[block_id]


def five_block_source() -> InMemoryBlockSource:
    return InMemoryBlockSource(
        blocks={name: DocumentTermBatch(terms=documents) for name, documents in FIVE_BLOCKS.items()}
    )


def concatenated_documents() -> list[list[str]]:
    return [document for documents in FIVE_BLOCKS.values() for document in documents]


@pytest.fixture
def inline_pool(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Run pool tasks in-process and isolate the worker-global vocabulary.

    Parameters
    ----------
    monkeypatch : pytest.MonkeyPatch
        Replaces `ProcessPoolExecutor` in the aggregator and stem index
        modules and resets `_WORKER_VOCABULARY`.

    Returns
    -------
    None
    """

    monkeypatch.setattr(block_aggregator, "ProcessPoolExecutor", InlineExecutor)
    monkeypatch.setattr(
        "dtm.stem_lookup.stem_lookup_index.ProcessPoolExecutor", InlineExecutor
    )
    monkeypatch.setattr(block_aggregator, "_WORKER_VOCABULARY", None)


def test_single_block_is_rejected() -> None:
    source = InMemoryBlockSource(blocks={"only": DocumentTermBatch(terms=[["a"]])})
    with pytest.raises(UsageError, match="at least two blocks"):
        aggregate_blocks(source, logger=init_logger_for_test())


@pytest.mark.parametrize(
    "kwargs",
    [
        {"worker_count": 0},
        {"large_vocabulary": True, "vocabulary": ["a", "b"]},
        {"vocabulary": "abc"},
    ],
)
def test_invalid_options_are_rejected(kwargs: dict) -> None:
    with pytest.raises(UsageError):
        aggregate_blocks(two_block_source(), logger=init_logger_for_test(), **kwargs)


def test_standard_aggregation_matches_in_memory_generation() -> None:
    """
    Compare block aggregation with in-memory generation on the same corpus.

    Parameters
    ----------
    None

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If labels, shape, or any cell differ, or row sums do not equal the
        document lengths.
    """

    matrix = aggregate_blocks(five_block_source(), logger=init_logger_for_test())
    expected = generate_document_term_matrix(concatenated_documents(), sparse=True)

    assert isinstance(matrix, SparseDocumentTermMatrix)
    assert matrix.column_labels == expected.column_labels
    assert matrix.shape == (9, 7)
    assert dense_cells(matrix) == dense_cells(expected)
    assert matrix.row_sums().tolist() == [len(document) for document in concatenated_documents()]


def test_two_block_standard_matrix() -> None:
    matrix = aggregate_blocks(two_block_source(), logger=init_logger_for_test())
    assert matrix.column_labels == ["a", "b", "c"]
    assert matrix.to_dense().to_numpy().tolist() == [[2, 1, 0], [0, 1, 1]]


def test_large_vocabulary_filters_and_orders_by_frequency() -> None:
    """
    Check the stem-indexed path on the canonical two-block corpus.

    Parameters
    ----------
    None

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If "c" (count 1) survives the threshold of 2 or the cells differ
        from `[[2, 1], [0, 1]]`.

    Notes
    -----
    - "a" and "b" tie at a total of 2, so they keep their indexed order.
    """

    matrix = aggregate_blocks(
        two_block_source(),
        large_vocabulary=True,
        frequency_threshold=2,
        logger=init_logger_for_test(),
    )

    assert matrix.column_labels == ["a", "b"]
    assert matrix.to_dense().to_numpy().tolist() == [[2, 1], [0, 1]]


def test_large_vocabulary_columns_are_sorted_by_total_frequency() -> None:
    matrix = aggregate_blocks(five_block_source(), large_vocabulary=True, logger=init_logger_for_test())
    sums = matrix.column_sums().tolist()

    assert sums == sorted(sums, reverse=True)
    assert matrix.column_labels[0] == "apple"
    assert dense_cells(matrix) == dense_cells(
        generate_document_term_matrix(concatenated_documents(), sparse=True)
    )


def test_standard_threshold_drops_rare_terms() -> None:
    matrix = aggregate_blocks(
        two_block_source(), frequency_threshold=2, logger=init_logger_for_test()
    )
    assert matrix.column_labels == ["a", "b"]
    assert matrix.to_dense().to_numpy().tolist() == [[2, 1], [0, 1]]


@pytest.mark.parametrize(["worker_count", "large_vocabulary"], [(2, False), (3, True), (8, False)])
def test_parallel_matches_sequential(
    inline_pool: None, worker_count: int, large_vocabulary: bool
) -> None:
    """
    Ensure parallel assembly returns the sequential matrix exactly.

    Parameters
    ----------
    inline_pool : None
        Fixture running pool tasks in-process.
    worker_count : int
        Pool size and chunk length, including more workers than blocks.
    large_vocabulary : bool
        Exercise the stem-indexed path as well.

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If triplets, shape, or labels differ between the two modes.
    """

    logger = init_logger_for_test()
    sequential = aggregate_blocks(
        five_block_source(), large_vocabulary=large_vocabulary, logger=logger
    )
    parallel = aggregate_blocks(
        five_block_source(),
        parallel=True,
        worker_count=worker_count,
        large_vocabulary=large_vocabulary,
        logger=logger,
    )

    assert parallel.shape == sequential.shape
    assert parallel.column_labels == sequential.column_labels
    assert np.array_equal(parallel.rows, sequential.rows)
    assert np.array_equal(parallel.columns, sequential.columns)
    assert np.array_equal(parallel.values, sequential.values)


@pytest.mark.parametrize("large_vocabulary", [False, True])
def test_parallel_matches_sequential_on_process_pool(
    tmp_path: Path, large_vocabulary: bool
) -> None:
    """
    Run parallel aggregation on real worker processes over parquet blocks.

    Parameters
    ----------
    tmp_path : Path
        Directory holding one parquet file per block.
    large_vocabulary : bool
        Also ship a `StemLookupVocabulary` through the pool initializer and
        build the stem index on two processes.

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If the pooled matrix differs from the sequential one in shape,
        labels, or triplets.

    Notes
    -----
    - Inputs and per-block results cross process boundaries here, so a
      type that stops pickling fails this test.
    """

    block_files: list[str] = []
    for name, documents in FIVE_BLOCKS.items():
        write_parquet_block(str(tmp_path / f"{name}.parquet"), DocumentTermBatch(terms=documents))
        block_files.append(f"{name}.parquet")
    source = ParquetBlockSource(paths=block_files, directory=str(tmp_path))
    logger = init_logger_for_test()

    sequential = aggregate_blocks(source, large_vocabulary=large_vocabulary, logger=logger)
    pooled = aggregate_blocks(
        source,
        parallel=True,
        worker_count=2,
        large_vocabulary=large_vocabulary,
        logger=logger,
    )

    assert pooled.shape == sequential.shape == (9, 7)
    assert pooled.column_labels == sequential.column_labels
    assert np.array_equal(pooled.rows, sequential.rows)
    assert np.array_equal(pooled.columns, sequential.columns)
    assert np.array_equal(pooled.values, sequential.values)


def padded_vocabulary(size: int) -> StandardVocabulary:
    return StandardVocabulary(terms=["a", "b"] + [f"filler_{i}" for i in range(size - 2)])


def test_block_result_size_does_not_depend_on_vocabulary_size() -> None:
    """
    Compare the pickled per-block result for a small and a large vocabulary.

    Parameters
    ----------
    None

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If the result carries column labels or any other per-term data.

    Notes
    -----
    - Both vocabularies place "a" and "b" at columns 0 and 1, so the
      triplets are identical and only vocabulary-sized payload could make
      the pickles differ.
    """

    logger = init_logger_for_test()
    small = assemble_block(two_block_source(), "block_1", padded_vocabulary(10), False, logger)
    large = assemble_block(two_block_source(), "block_1", padded_vocabulary(100_000), False, logger)

    assert not hasattr(large, "column_labels")
    assert large.values.tolist() == [2, 1]
    assert len(pickle.dumps(large)) == len(pickle.dumps(small))


def test_worker_result_size_does_not_depend_on_vocabulary_size(inline_pool: None) -> None:
    logger = init_logger_for_test()
    sizes: list[int] = []
    for size in (10, 100_000):
        initialize_assembly_worker(padded_vocabulary(size))
        part = assemble_block_in_worker(two_block_source(), "block_1", False, logger)
        sizes.append(len(pickle.dumps(part)))
    assert sizes[0] == sizes[1]


@pytest.mark.parametrize("parallel", [False, True])
def test_block_failure_propagates(inline_pool: None, parallel: bool) -> None:
    source = FailingBlockSource(
        blocks={
            "b1": DocumentTermBatch(terms=[["a"]]),
            "b2": DocumentTermBatch(terms=[["b"]]),
            "b3": DocumentTermBatch(terms=[["a"]]),
        },
        failing_block="b2",
    )
    with pytest.raises(OSError, match="cannot read b2"):
        aggregate_blocks(
            source,
            vocabulary=["a", "b"],
            parallel=parallel,
            worker_count=2,
            logger=init_logger_for_test(),
        )


def test_worker_without_vocabulary_is_rejected(inline_pool: None) -> None:
    with pytest.raises(UsageError):
        assemble_block_in_worker(two_block_source(), "block_1", False, init_logger_for_test())


def test_use_term_counts_switches_count_source() -> None:
    source = InMemoryBlockSource(
        blocks={
            "b1": DocumentTermBatch(terms=[["a", "b"]], counts=[[3, 1]]),
            "b2": DocumentTermBatch(terms=[["a"]], counts=[[2]]),
        }
    )
    logger = init_logger_for_test()

    counted = aggregate_blocks(source, use_term_counts=True, logger=logger)
    uncounted = aggregate_blocks(source, logger=logger)

    assert counted.to_dense().to_numpy().tolist() == [[3, 1], [2, 0]]
    assert uncounted.to_dense().to_numpy().tolist() == [[1, 1], [1, 0]]


def test_build_matrix_false_returns_vocabulary_and_snapshot(tmp_path: Path) -> None:
    """
    Discover and snapshot a vocabulary, then reuse it for assembly.

    Parameters
    ----------
    tmp_path : Path
        Snapshot directory root.

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If the returned vocabulary, the saved snapshot, or the matrix built
        from the restored vocabulary differ from expectations.
    """

    snapshot_dir = str(tmp_path / "vocabulary")
    logger = init_logger_for_test()

    vocabulary = aggregate_blocks(
        two_block_source(),
        large_vocabulary=True,
        build_matrix=False,
        snapshot_dir=snapshot_dir,
        logger=logger,
    )

    assert isinstance(vocabulary, StemLookupVocabulary)
    assert vocabulary.terms == ["a", "b", "c"]
    meta = json.loads((tmp_path / "vocabulary" / SNAPSHOT_META_FILE).read_text(encoding="utf-8"))
    assert meta["type"] == "stem-lookup"
    assert meta["total_unique"] == 3

    restored = load_vocabulary_snapshot(snapshot_dir)
    matrix = aggregate_blocks(
        two_block_source(), vocabulary=restored.vocabulary, large_vocabulary=True, logger=logger
    )
    assert dense_cells(matrix) == {(0, "a"): 2, (0, "b"): 1, (1, "b"): 1, (1, "c"): 1}


def test_supplied_vocabulary_ignores_threshold_with_warning(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    matrix = aggregate_blocks(
        two_block_source(),
        vocabulary=StandardVocabulary(terms=["c", "a"]),
        frequency_threshold=5,
        snapshot_dir=str(tmp_path / "unused"),
        logger=init_logger_for_test(log_level="WARNING"),
    )

    assert matrix.column_labels == ["c", "a"]
    assert matrix.to_dense().to_numpy().tolist() == [[0, 2], [1, 0]]
    events = [json.loads(line)["event"] for line in capsys.readouterr().err.splitlines()]
    assert events == ["vocabulary_snapshot_skipped", "frequency_threshold_ignored"]
    assert not (tmp_path / "unused").exists()


def test_discover_vocabulary_grows_bound_between_blocks() -> None:
    """
    Verify deterministic bound growth at small sizes.

    Parameters
    ----------
    None

    Returns
    -------
    None

    Raises
    ------
    AssertionError
        If a block that fits the grown bound overflows, or the final state
        differs from expectations.

    Notes
    -----
    - Bounds go 2 -> 3 (2/2 > 0.8) -> 5 (3/3 > 0.8), so blocks adding one and
      then two new terms fit exactly.
    """

    source = InMemoryBlockSource(
        blocks={
            "b1": DocumentTermBatch(terms=[["a", "b", "a"]]),
            "b2": DocumentTermBatch(terms=[["c", "a"]]),
            "b3": DocumentTermBatch(terms=[["d"], ["e", "b"]]),
        }
    )

    state = discover_vocabulary(
        source,
        max_vocab_size=2,
        growth_policy=GrowthPolicy(fill_ratio=0.8, growth_factor=1.5),
        logger=init_logger_for_test(),
    )

    assert state.unique_terms == ["a", "b", "c", "d", "e"]
    assert state.word_counts.tolist() == [3, 2, 1, 1, 1]
    assert state.total_unique == 5


def test_discover_vocabulary_overflow_raises_capacity_error() -> None:
    source = InMemoryBlockSource(
        blocks={
            "b1": DocumentTermBatch(terms=[["a", "b"]]),
            "b2": DocumentTermBatch(terms=[["c", "d"]]),
        }
    )
    with pytest.raises(CapacityError):
        discover_vocabulary(
            source,
            max_vocab_size=2,
            growth_policy=GrowthPolicy(fill_ratio=0.8, growth_factor=1.5),
            logger=init_logger_for_test(),
        )


def test_discover_vocabulary_resumes_from_initial_state() -> None:
    prior = count_words([["z", "a"]], -1)
    state = discover_vocabulary(
        two_block_source(), initial_word_counts=prior, logger=init_logger_for_test()
    )
    assert state.unique_terms == ["z", "a", "b", "c"]
    assert state.word_counts.tolist() == [1, 3, 2, 1]


def test_finalize_vocabulary_standard_threshold() -> None:
    state = count_words([["a", "b", "a"], ["b", "c"]], -1)
    vocabulary = finalize_vocabulary(state, frequency_threshold=2, logger=init_logger_for_test())
    assert isinstance(vocabulary, StandardVocabulary)
    assert vocabulary.terms == ["a", "b"]
    assert vocabulary.word_counts.tolist() == [2, 2]
    with pytest.raises(UsageError):
        finalize_vocabulary(state, frequency_threshold=-1, logger=init_logger_for_test())
