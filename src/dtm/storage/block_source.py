"""
Purpose
-------
Block sources: the storage collaborator that turns "load block i" into a
`DocumentTermBatch` for vocabulary discovery and matrix assembly.

Key behaviors
-------------
- `ParquetBlockSource` reads one parquet file per block. Each row is a
  document; the `terms` list column holds its terms and the optional
  `counts` list column holds aligned counts.
- `InMemoryBlockSource` serves already materialized batches by name.
- `write_parquet_block` persists a batch in the layout `ParquetBlockSource`
  reads, for producers that tokenize upstream.

Conventions
-----------
- Block order is the order of `block_ids`; it defines row order of the
  aggregated matrix.
- Paths are explicit: a relative block id is joined to `directory` when one
  is given. No process-wide working directory is read or changed.
- Stored counts are only returned when `use_term_counts=True`; otherwise
  each listed term counts once.
- Sources are plain dataclasses so they pickle into worker processes; each
  worker loads its own block.
- Read errors (`OSError`, pyarrow errors) propagate unchanged.

Downstream usage
----------------
Pass a block source to `aggregate_blocks` or `discover_vocabulary`.
"""

import os
from dataclasses import dataclass, field
from typing import Any, List, Protocol

import numpy as np
import pandas as pd

from dtm.dtm_config import BLOCK_COUNTS_COLUMN, BLOCK_TERMS_COLUMN
from dtm.dtm_errors import UsageError
from dtm.dtm_types import DocumentCounts, DocumentTermBatch, DocumentTerms


class BlockSource(Protocol):
    """Named, ordered sequence of loadable blocks."""

    @property
    def block_ids(self) -> List[str]: ...

    def load(self, block_id: str, use_term_counts: bool = False) -> DocumentTermBatch: ...


@dataclass
class ParquetBlockSource:
    """
    Purpose
    -------
    Block source over parquet files, one file per block.

    Parameters
    ----------
    paths : list[str]
        Block files in block order; relative paths are joined to `directory`.
    directory : str, optional
        Base directory for relative paths.
    """

    paths: List[str]
    directory: str | None = None

    @property
    def block_ids(self) -> List[str]:
        return list(self.paths)

    def resolve_path(self, block_id: str) -> str:
        if self.directory is not None and not os.path.isabs(block_id):
            return os.path.join(self.directory, block_id)
        return block_id

    def load(self, block_id: str, use_term_counts: bool = False) -> DocumentTermBatch:
        """
        Read one block.

        Parameters
        ----------
        block_id : str
            Path of the block file.
        use_term_counts : bool, default=False
            Return the stored `counts` column alongside the terms.

        Returns
        -------
        DocumentTermBatch
            One document per parquet row.

        Raises
        ------
        UsageError
            If the file lacks the `terms` column, or lacks the `counts` column
            while `use_term_counts` is True.
        OSError
            If the file cannot be read.
        """

        path = self.resolve_path(block_id)
        block_df: pd.DataFrame = pd.read_parquet(path)
        if BLOCK_TERMS_COLUMN not in block_df.columns:
            raise UsageError(f"Block {path} has no {BLOCK_TERMS_COLUMN!r} column")
        terms: DocumentTerms = [
            [str(term) for term in list_cell(cell)] for cell in block_df[BLOCK_TERMS_COLUMN]
        ]
        if not use_term_counts:
            return DocumentTermBatch(terms=terms)
        if BLOCK_COUNTS_COLUMN not in block_df.columns:
            raise UsageError(
                f"Block {path} has no {BLOCK_COUNTS_COLUMN!r} column but term counts were requested"
            )
        counts: DocumentCounts = [
            [int(count) for count in list_cell(cell)] for cell in block_df[BLOCK_COUNTS_COLUMN]
        ]
        return DocumentTermBatch(terms=terms, counts=counts)


@dataclass
class InMemoryBlockSource:
    """
    Purpose
    -------
    Block source over batches already held in memory.

    Parameters
    ----------
    blocks : dict[str, DocumentTermBatch]
        Batches keyed by block name; insertion order is block order.
    """

    blocks: dict[str, DocumentTermBatch] = field(default_factory=dict)

    @property
    def block_ids(self) -> List[str]:
        return list(self.blocks)

    def load(self, block_id: str, use_term_counts: bool = False) -> DocumentTermBatch:
        batch = self.blocks[block_id]
        if use_term_counts or batch.counts is None:
            return batch
        return DocumentTermBatch(terms=batch.terms)


def list_cell(cell: Any) -> List[Any]:
    """Normalize a parquet list cell (array, list, or null) to a list."""
    if cell is None:
        return []
    if isinstance(cell, np.ndarray):
        return cell.tolist()
    return list(cell)


def write_parquet_block(path: str, batch: DocumentTermBatch) -> None:
    """
    Persist a batch as a block file readable by `ParquetBlockSource`.

    Parameters
    ----------
    path : str
        Destination file; parent directories are created.
    batch : DocumentTermBatch
        Batch to write; the `counts` column is written only when present.

    Returns
    -------
    None
    """

    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    columns: dict[str, Any] = {BLOCK_TERMS_COLUMN: batch.terms}
    if batch.counts is not None:
        columns[BLOCK_COUNTS_COLUMN] = batch.counts
    pd.DataFrame(columns).to_parquet(path, index=False)
