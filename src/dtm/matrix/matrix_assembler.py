"""
Purpose
-------
Assemble the document-term matrix of one batch of tokenized documents
against a finalized vocabulary, in dense or sparse triplet form.

Key behaviors
-------------
- `assemble_matrix` resolves every `(term, count)` pair of every document to
  a column through the vocabulary's `resolve`, skipping terms the vocabulary
  does not contain.
- Dense output is a zero-filled `documents x vocabulary` int64 grid returned
  as a `pandas.DataFrame` labelled with the vocabulary terms.
- Sparse output coalesces each document's resolved columns before emitting,
  so repeated terms in a raw (uncounted) document become one triplet.
- `generate_document_term_matrix` is the in-memory entry point: it accepts raw
  lists, builds a vocabulary with `count_words` when none is supplied, and
  coerces caller-supplied vocabularies.

Conventions
-----------
- Rows follow document order; documents are never reordered or dropped, so a
  document whose terms are all unresolved becomes an all-zero row.
- Within a document, sparse triplets are emitted in ascending column order.
- Unresolved terms are not errors; trimming the vocabulary doubles as feature
  selection.
- Assembly has no side effects beyond allocation.

Downstream usage
----------------
Call `generate_document_term_matrix` for corpora that fit in memory. Block
aggregation calls `collect_triplets` once per block with the global
vocabulary and labels the stacked result itself.
"""

from typing import Sequence

import numpy as np
import pandas as pd

from dtm.dtm_config import UNBOUNDED_VOCABULARY_SIZE
from dtm.dtm_types import DocumentTermBatch
from dtm.matrix.sparse_matrix import BlockTriplets, SparseDocumentTermMatrix, TripletBuffer
from dtm.vocabulary.vocabulary_builder import count_words
from dtm.vocabulary.vocabulary_types import StandardVocabulary, Vocabulary, as_vocabulary


def assemble_matrix(
    vocabulary: Vocabulary, batch: DocumentTermBatch, sparse: bool = False
) -> pd.DataFrame | SparseDocumentTermMatrix:
    """
    Build the document-term matrix of `batch` against `vocabulary`.

    Parameters
    ----------
    vocabulary : Vocabulary
        `StandardVocabulary` or `StemLookupVocabulary`; its terms label the
        columns.
    batch : DocumentTermBatch
        Documents to count; optional counts are applied per entry.
    sparse : bool, default=False
        Return a `SparseDocumentTermMatrix` instead of a dense DataFrame.

    Returns
    -------
    pandas.DataFrame or SparseDocumentTermMatrix
        Matrix with one row per document and one column per vocabulary term.

    Raises
    ------
    CapacityError
        If the sparse triplet buffer overflows.
    """

    if sparse:
        return assemble_sparse(vocabulary, batch)
    return assemble_dense(vocabulary, batch)


def assemble_dense(vocabulary: Vocabulary, batch: DocumentTermBatch) -> pd.DataFrame:
    """Dense path of `assemble_matrix`."""

    grid = np.zeros((batch.document_count, vocabulary.size), dtype=np.int64)
    for document_index in range(batch.document_count):
        for term, count in batch.iter_document(document_index):
            column = vocabulary.resolve(term)
            if column is not None:
                grid[document_index, column] += count
    return pd.DataFrame(grid, columns=list(vocabulary.terms))


def assemble_sparse(
    vocabulary: Vocabulary, batch: DocumentTermBatch
) -> SparseDocumentTermMatrix:
    """Sparse path of `assemble_matrix`."""
    return SparseDocumentTermMatrix.from_blocks(
        [collect_triplets(vocabulary, batch)], vocabulary.terms
    )


def collect_triplets(vocabulary: Vocabulary, batch: DocumentTermBatch) -> BlockTriplets:
    """
    Resolve and coalesce the triplets of `batch` without labelling them.

    Parameters
    ----------
    vocabulary : Vocabulary
        Vocabulary that maps terms to column indices.
    batch : DocumentTermBatch
        Documents to count.

    Returns
    -------
    BlockTriplets
        Block-local triplets plus the batch's document count. Its size depends
        on the batch only, never on the vocabulary.

    Raises
    ------
    CapacityError
        If the triplet buffer overflows.

    Notes
    -----
    - The buffer is sized to the batch's total term entries. Coalescing per
      document can only shrink the triplet count, so the bound holds for any
      well-formed batch.
    """

    buffer = TripletBuffer(batch.total_terms)
    for document_index in range(batch.document_count):
        document_columns: dict[int, int] = {}
        for term, count in batch.iter_document(document_index):
            if count == 0:
                continue
            column = vocabulary.resolve(term)
            if column is not None:
                document_columns[column] = document_columns.get(column, 0) + count
        for column in sorted(document_columns):
            buffer.append(document_index, column, document_columns[column])
    return buffer.triplets(batch.document_count)


def generate_document_term_matrix(
    document_terms: Sequence[Sequence[str]],
    vocabulary: Vocabulary | Sequence[str] | None = None,
    term_count_lists: Sequence[Sequence[int]] | Sequence[int] | None = None,
    sparse: bool = False,
) -> pd.DataFrame | SparseDocumentTermMatrix:
    """
    Build a document-term matrix from in-memory term lists.

    Parameters
    ----------
    document_terms : Sequence[Sequence[str]]
        One term sequence per document.
    vocabulary : Vocabulary or Sequence[str], optional
        Columns to count. When omitted the vocabulary is discovered from
        `document_terms` in first-seen order. Terms outside a supplied
        vocabulary are dropped.
    term_count_lists : Sequence[Sequence[int]] or Sequence[int], optional
        Pre-aggregated counts aligned with `document_terms`; a flat numeric
        sequence is taken as the counts of a single document. Floating-point
        counts are truncated toward zero.
    sparse : bool, default=False
        Return a `SparseDocumentTermMatrix` instead of a dense DataFrame.

    Returns
    -------
    pandas.DataFrame or SparseDocumentTermMatrix
        Document-term matrix labelled with the vocabulary terms.

    Raises
    ------
    UsageError
        If `vocabulary` is not a supported object.
    ShapeError
        If `term_count_lists` is misaligned with `document_terms`.
    """

    batch = DocumentTermBatch.from_lists(document_terms, term_count_lists)
    resolved_vocabulary = as_vocabulary(vocabulary)
    if resolved_vocabulary is None:
        word_counts = count_words(batch, UNBOUNDED_VOCABULARY_SIZE)
        resolved_vocabulary = StandardVocabulary(
            terms=word_counts.unique_terms, word_counts=word_counts.word_counts
        )
    return assemble_matrix(resolved_vocabulary, batch, sparse=sparse)
