"""
Purpose
-------
Build one sparse document-term matrix (or just the vocabulary) from a corpus
stored as an ordered sequence of blocks, without holding the whole corpus in
memory.

Key behaviors
-------------
- Phase 1 (`discover_vocabulary`): stream every block once through
  `count_words`, folding each block into a running vocabulary and growing the
  vocabulary bound between blocks with a `GrowthPolicy`. The result is then
  finalized (`finalize_vocabulary`) into a `StandardVocabulary`, or into a
  `StemLookupVocabulary` when `large_vocabulary` is requested.
- Phase 2: collect label-free triplets per block against the global
  vocabulary, sequentially or on a `ProcessPoolExecutor`, and stack them in
  block order with `SparseDocumentTermMatrix.from_blocks`, which attaches the
  vocabulary terms as column labels once.
- With `large_vocabulary`, columns of the final matrix are reordered by
  descending total frequency.
- Optionally saves a vocabulary snapshot after phase 1 so a later run can
  skip or resume discovery.

Conventions
-----------
- At least two blocks are required; single-block corpora should go through
  `generate_document_term_matrix` directly.
- Final row order is block order, then within-block document order,
  regardless of worker scheduling: parallel results are slotted by their
  original position, not by completion order.
- Parallel mode dispatches chunks of `worker_count` blocks and waits for each
  chunk before dispatching the next, bounding the number of in-flight block
  results. The vocabulary is shipped once per worker through the pool
  initializer and only read afterwards. Workers return `BlockTriplets`, whose
  size depends on the block only, never on the vocabulary.
- Fail fast: the first block failure, capacity overflow, or shape error
  cancels pending work and propagates; no partial matrix is returned.

Downstream usage
----------------
Call `aggregate_blocks(block_source, ...)` with a `ParquetBlockSource` (or any
`BlockSource`). Use `build_matrix=False` to discover and inspect the
vocabulary first, then pass the (possibly trimmed) vocabulary back in a
second call.
"""

from concurrent.futures import Future, ProcessPoolExecutor, as_completed
from typing import Any, List, Sequence

from dtm.dtm_config import UNBOUNDED_VOCABULARY_SIZE
from dtm.dtm_errors import UsageError
from dtm.dtm_types import WordCountResult
from dtm.logging.dtm_logger import DtmLogger, initialize_logger
from dtm.matrix.matrix_assembler import collect_triplets
from dtm.matrix.sparse_matrix import BlockTriplets, SparseDocumentTermMatrix
from dtm.stem_lookup.stem_lookup_index import build_stem_lookup_index
from dtm.storage.block_source import BlockSource
from dtm.storage.vocabulary_snapshot import save_vocabulary_snapshot
from dtm.vocabulary.vocabulary_builder import GrowthPolicy, count_words
from dtm.vocabulary.vocabulary_types import (
    StandardVocabulary,
    StemLookupVocabulary,
    Vocabulary,
    as_vocabulary,
)

_WORKER_VOCABULARY: Vocabulary | None = None


def aggregate_blocks(
    block_source: BlockSource,
    vocabulary: Vocabulary | Sequence[str] | None = None,
    parallel: bool = False,
    worker_count: int = 1,
    large_vocabulary: bool = False,
    frequency_threshold: int = 0,
    build_matrix: bool = True,
    max_vocab_size: int = UNBOUNDED_VOCABULARY_SIZE,
    use_term_counts: bool = False,
    snapshot_dir: str | None = None,
    growth_policy: GrowthPolicy | None = None,
    logger: DtmLogger | None = None,
) -> SparseDocumentTermMatrix | Vocabulary:
    """
    Aggregate a multi-block corpus into one sparse document-term matrix.

    Parameters
    ----------
    block_source : BlockSource
        Ordered blocks; each loads into one `DocumentTermBatch`.
    vocabulary : Vocabulary or Sequence[str], optional
        Known global vocabulary. When given, vocabulary discovery is skipped
        and terms outside it are dropped.
    parallel : bool, default=False
        Assemble block matrices on a process pool.
    worker_count : int, default=1
        Pool size and chunk length in parallel mode; also the number of
        processes used to build the stem index.
    large_vocabulary : bool, default=False
        Finalize the vocabulary as a `StemLookupVocabulary` and reorder the
        final columns by descending frequency.
    frequency_threshold : int, default=0
        Drop discovered terms whose corpus count is below this value.
    build_matrix : bool, default=True
        When False, return the finalized vocabulary instead of a matrix.
    max_vocab_size : int, default=-1
        Initial vocabulary bound for discovery; -1 sizes each block's table
        from the block itself.
    use_term_counts : bool, default=False
        Use each block's stored per-document counts.
    snapshot_dir : str, optional
        Directory to save a vocabulary snapshot into after discovery.
    growth_policy : GrowthPolicy, optional
        Bound growth rule between blocks; defaults to the configured policy.
    logger : DtmLogger, optional
        Logger for progress events; a component logger is created if omitted.

    Returns
    -------
    SparseDocumentTermMatrix or Vocabulary
        The stacked matrix, or the finalized vocabulary when `build_matrix`
        is False.

    Raises
    ------
    UsageError
        If fewer than two blocks are supplied, `worker_count` is not
        positive, or `large_vocabulary` is combined with a supplied
        vocabulary that is not a `StemLookupVocabulary`.
    CapacityError
        If vocabulary discovery or triplet assembly overflows.
    ShapeError
        If a block's term and count lists are misaligned.
    OSError
        If a block cannot be loaded.
    """

    if logger is None:
        logger = initialize_logger("block_aggregator")
    block_ids: List[str] = list(block_source.block_ids)
    logger.info(
        event="aggregation_started",
        msg=f"Generating sparse document term matrix from {len(block_ids)} blocks",
        context={
            "blocks": len(block_ids),
            "parallel": parallel,
            "worker_count": worker_count,
            "large_vocabulary": large_vocabulary,
        },
    )
    if len(block_ids) < 2:
        raise UsageError(
            "Block aggregation expects at least two blocks; use "
            "generate_document_term_matrix for a single batch"
        )
    if worker_count < 1:
        raise UsageError(f"worker_count must be positive, got {worker_count}")

    resolved_vocabulary = as_vocabulary(vocabulary)
    if large_vocabulary and resolved_vocabulary is not None:
        if not isinstance(resolved_vocabulary, StemLookupVocabulary):
            raise UsageError(
                "large_vocabulary with a supplied vocabulary requires a StemLookupVocabulary, "
                "such as one restored from a vocabulary snapshot"
            )

    if resolved_vocabulary is None:
        word_counts = discover_vocabulary(
            block_source,
            block_ids,
            max_vocab_size=max_vocab_size,
            use_term_counts=use_term_counts,
            growth_policy=growth_policy,
            logger=logger,
        )
        resolved_vocabulary = finalize_vocabulary(
            word_counts,
            large_vocabulary=large_vocabulary,
            frequency_threshold=frequency_threshold,
            worker_count=worker_count,
            logger=logger,
        )
        if snapshot_dir is not None:
            save_vocabulary_snapshot(snapshot_dir, word_counts, resolved_vocabulary)
            logger.info(
                event="vocabulary_snapshot_saved",
                context={"snapshot_dir": snapshot_dir},
            )
    else:
        if snapshot_dir is not None:
            logger.warning(
                event="vocabulary_snapshot_skipped",
                msg="A vocabulary was supplied; nothing new to snapshot",
            )
        if frequency_threshold > 0:
            logger.warning(
                event="frequency_threshold_ignored",
                msg="A vocabulary was supplied; frequency_threshold only applies to discovery",
                context={"frequency_threshold": frequency_threshold},
            )

    logger.info(
        event="aggregate_vocabulary_ready",
        msg=f"Aggregate vocabulary size: {resolved_vocabulary.size}",
        context={"vocabulary_size": resolved_vocabulary.size},
    )
    if not build_matrix:
        return resolved_vocabulary

    if parallel:
        parts = assemble_blocks_in_parallel(
            block_source, block_ids, resolved_vocabulary, worker_count, use_term_counts, logger
        )
    else:
        parts = [
            assemble_block(block_source, block_id, resolved_vocabulary, use_term_counts, logger)
            for block_id in block_ids
        ]
    matrix = SparseDocumentTermMatrix.from_blocks(parts, resolved_vocabulary.terms)
    if large_vocabulary:
        matrix = matrix.order_by_frequency()
    logger.info(
        event="aggregation_finished",
        context={"rows": matrix.shape[0], "columns": matrix.shape[1], "nnz": matrix.nnz},
    )
    return matrix


def discover_vocabulary(
    block_source: BlockSource,
    block_ids: Sequence[str] | None = None,
    max_vocab_size: int = UNBOUNDED_VOCABULARY_SIZE,
    use_term_counts: bool = False,
    initial_word_counts: WordCountResult | None = None,
    growth_policy: GrowthPolicy | None = None,
    logger: DtmLogger | None = None,
) -> WordCountResult:
    """
    Stream blocks through `count_words`, folding them into one vocabulary.

    Parameters
    ----------
    block_source : BlockSource
        Source of the blocks.
    block_ids : Sequence[str], optional
        Blocks to read, in order; defaults to all of `block_source`.
    max_vocab_size : int, default=-1
        Initial vocabulary bound; grown by `growth_policy` between blocks.
    use_term_counts : bool, default=False
        Use each block's stored per-document counts.
    initial_word_counts : WordCountResult, optional
        State to resume from (e.g., a restored snapshot).
    growth_policy : GrowthPolicy, optional
        Bound growth rule; defaults to the configured policy.
    logger : DtmLogger, optional
        Logger for progress events.

    Returns
    -------
    WordCountResult
        Aggregate vocabulary in first-seen order with corpus counts.

    Raises
    ------
    CapacityError
        If a block introduces more terms than the current bound allows.
    """

    if logger is None:
        logger = initialize_logger("vocabulary_discovery")
    if growth_policy is None:
        growth_policy = GrowthPolicy()
    if block_ids is None:
        block_ids = block_source.block_ids

    state: WordCountResult | None = initial_word_counts
    bound: int = max_vocab_size
    for position, block_id in enumerate(block_ids):
        batch = block_source.load(block_id, use_term_counts=use_term_counts)
        if state is not None:
            grown_bound = growth_policy.next_bound(state.total_unique, bound)
            if grown_bound != bound:
                logger.info(
                    event="vocabulary_bound_grown",
                    context={"previous_bound": bound, "bound": grown_bound},
                )
                bound = grown_bound
        state = count_words(
            batch,
            bound,
            existing_vocabulary=state.unique_terms if state is not None else None,
            existing_counts=state.word_counts if state is not None else None,
        )
        logger.info(
            event="vocabulary_block_counted",
            msg=f"Generated vocabulary from block {position + 1}",
            context={
                "block_id": block_id,
                "documents": batch.document_count,
                "total_unique": state.total_unique,
            },
        )
    if state is None:
        raise UsageError("Vocabulary discovery needs at least one block or an initial state")
    return state


def finalize_vocabulary(
    word_counts: WordCountResult,
    large_vocabulary: bool = False,
    frequency_threshold: int = 0,
    worker_count: int = 1,
    logger: DtmLogger | None = None,
) -> Vocabulary:
    """
    Turn discovered word counts into the lookup vocabulary used for assembly.

    Parameters
    ----------
    word_counts : WordCountResult
        Aggregate discovery result.
    large_vocabulary : bool, default=False
        Build a `StemLookupVocabulary` instead of a `StandardVocabulary`.
    frequency_threshold : int, default=0
        Drop terms whose count is below this value.
    worker_count : int, default=1
        Processes used to build the stem index.
    logger : DtmLogger, optional
        Logger for progress events.

    Returns
    -------
    Vocabulary
        Finalized, read-only vocabulary.
    """

    if logger is None:
        logger = initialize_logger("vocabulary_finalization")
    if large_vocabulary:
        return build_stem_lookup_index(
            word_counts.unique_terms,
            word_counts.word_counts,
            frequency_threshold=frequency_threshold,
            worker_count=worker_count,
            logger=logger.child("stem_lookup_index"),
        )
    if frequency_threshold < 0:
        raise UsageError(f"frequency_threshold must be non-negative, got {frequency_threshold}")
    keep = word_counts.word_counts >= frequency_threshold
    terms = [term for term, kept in zip(word_counts.unique_terms, keep) if kept]
    return StandardVocabulary(terms=terms, word_counts=word_counts.word_counts[keep])


def assemble_block(
    block_source: BlockSource,
    block_id: str,
    vocabulary: Vocabulary,
    use_term_counts: bool,
    logger: DtmLogger,
) -> BlockTriplets:
    """
    Load one block and collect its triplets against `vocabulary`.

    Parameters
    ----------
    block_source : BlockSource
        Source of the block.
    block_id : str
        Block to load.
    vocabulary : Vocabulary
        Global vocabulary.
    use_term_counts : bool
        Use the block's stored per-document counts.
    logger : DtmLogger
        Logger for the per-block event.

    Returns
    -------
    BlockTriplets
        Block-local triplets, one row per document of the block, without
        column labels.
    """

    batch = block_source.load(block_id, use_term_counts=use_term_counts)
    part = collect_triplets(vocabulary, batch)
    logger.info(
        event="block_matrix_assembled",
        msg=f"Generated sparse matrix from block {block_id}",
        context={"block_id": block_id, "total_terms": batch.total_terms, "nnz": len(part.values)},
    )
    return part


def initialize_assembly_worker(vocabulary: Vocabulary) -> None:
    """Pool initializer: keep the read-only vocabulary for this worker process."""
    global _WORKER_VOCABULARY  # pylint: disable=W0603
    _WORKER_VOCABULARY = vocabulary


def assemble_block_in_worker(
    block_source: BlockSource, block_id: str, use_term_counts: bool, logger: DtmLogger
) -> BlockTriplets:
    """Worker task: assemble one block with the vocabulary set by the initializer."""
    if _WORKER_VOCABULARY is None:
        raise UsageError("Assembly worker was started without a vocabulary")
    return assemble_block(
        block_source,
        block_id,
        _WORKER_VOCABULARY,
        use_term_counts,
        logger.child("block_assembly_worker", {"block_id": block_id}),
    )


def assemble_blocks_in_parallel(
    block_source: BlockSource,
    block_ids: Sequence[str],
    vocabulary: Vocabulary,
    worker_count: int,
    use_term_counts: bool,
    logger: DtmLogger,
) -> List[BlockTriplets]:
    """
    Collect block triplets on a process pool, chunk by chunk.

    Parameters
    ----------
    block_source : BlockSource
        Picklable source; each worker loads its own blocks.
    block_ids : Sequence[str]
        Blocks in output order.
    vocabulary : Vocabulary
        Global vocabulary, sent once to each worker.
    worker_count : int
        Pool size and chunk length.
    use_term_counts : bool
        Use each block's stored per-document counts.
    logger : DtmLogger
        Orchestrator logger; workers derive child loggers from it.

    Returns
    -------
    list[BlockTriplets]
        Per-block triplets in `block_ids` order.

    Raises
    ------
    Exception
        The first worker failure, after pending tasks of the chunk are
        cancelled.
    """

    parts: List[BlockTriplets] = []
    with ProcessPoolExecutor(
        max_workers=worker_count,
        initializer=initialize_assembly_worker,
        initargs=(vocabulary,),
    ) as executor:
        for chunk_start in range(0, len(block_ids), worker_count):
            chunk = list(block_ids[chunk_start : chunk_start + worker_count])
            logger.info(
                event="block_chunk_dispatched",
                msg=(
                    f"Working on blocks {chunk_start + 1} to {chunk_start + len(chunk)} "
                    f"of {len(block_ids)}"
                ),
                context={"block_ids": chunk},
            )
            futures: dict[Future[Any], int] = {
                executor.submit(
                    assemble_block_in_worker, block_source, block_id, use_term_counts, logger
                ): position
                for position, block_id in enumerate(chunk)
            }
            slots: List[BlockTriplets | None] = [None] * len(chunk)
            try:
                for future in as_completed(futures):
                    slots[futures[future]] = future.result()
            except Exception as e:  # pylint: disable=W0718
                for future in futures:
                    future.cancel()
                logger.error(
                    event="block_chunk_failed",
                    msg=f"Block assembly failed: {type(e).__name__}: {e}",
                    context={"block_ids": chunk},
                )
                raise
            parts.extend(slot for slot in slots if slot is not None)
    return parts
