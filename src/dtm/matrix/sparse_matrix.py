"""
Purpose
-------
Sparse document-term matrix in triplet form `(row, column, value)` plus the
preallocated triplet buffer used while assembling it.

Key behaviors
-------------
- `TripletBuffer` preallocates `int64` row/column/value arrays to an upper
  bound and raises `CapacityError` instead of overflowing.
- `SparseDocumentTermMatrix` carries the triplets, an explicit
  `documents x vocabulary` shape, and column labels; it converts to
  `scipy.sparse.coo_matrix` and to a labelled dense `pandas.DataFrame`.
- `BlockTriplets` is the label-free per-block part: triplets plus the
  block's document count. Block aggregation ships these between processes
  so no part carries a copy of the vocabulary.
- `from_blocks` stacks parts and attaches the column labels once;
  `vstack` row-concatenates finished matrices, offsetting row indices.
- `reorder_columns` / `order_by_frequency` permute columns and labels
  together.

Conventions
-----------
- Stored values are always > 0 and no `(row, column)` pair repeats within a
  finished matrix; the assembler coalesces duplicates before appending.
- Row and column indices are 0-based.

Downstream usage
----------------
Matrix assembly fills a `TripletBuffer` per batch and trims it into
`BlockTriplets`. In-memory assembly labels them with `from_blocks` right
away; block aggregation keeps the `BlockTriplets` of every block, stacks them
with one `from_blocks` call, and optionally reorders columns by frequency
before returning the result.
"""

from dataclasses import dataclass
from typing import List, NamedTuple, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp

from dtm.dtm_errors import CapacityError, UsageError


class BlockTriplets(NamedTuple):
    """
    Purpose
    -------
    Triplets of one block, without column labels.

    Fields
    ------
    rows : numpy.ndarray
        `int64` document indices local to the block.
    columns : numpy.ndarray
        `int64` vocabulary indices.
    values : numpy.ndarray
        `int64` counts, all > 0.
    document_count : int
        Number of documents (rows) in the block, including all-zero rows.
    """

    rows: np.ndarray
    columns: np.ndarray
    values: np.ndarray
    document_count: int


class TripletBuffer:
    """
    Purpose
    -------
    Fixed-capacity append buffer for sparse triplets.

    Parameters
    ----------
    capacity : int
        Maximum number of triplets the buffer can hold.

    Attributes
    ----------
    capacity : int
        Allocated number of triplets.
    length : int
        Number of triplets appended so far.
    """

    def __init__(self, capacity: int) -> None:
        self.capacity: int = int(capacity)
        self.length: int = 0
        self._rows = np.empty(self.capacity, dtype=np.int64)
        self._columns = np.empty(self.capacity, dtype=np.int64)
        self._values = np.empty(self.capacity, dtype=np.int64)

    def append(self, row: int, column: int, value: int) -> None:
        """
        Append one triplet.

        Raises
        ------
        CapacityError
            If the buffer is already full.
        """

        if self.length >= self.capacity:
            raise CapacityError(
                "triplet_buffer",
                self.capacity,
                "the total-terms estimate for this batch was too small",
            )
        self._rows[self.length] = row
        self._columns[self.length] = column
        self._values[self.length] = value
        self.length += 1

    def triplets(self, document_count: int) -> BlockTriplets:
        """Trim to the appended triplets."""
        return BlockTriplets(
            rows=self._rows[: self.length].copy(),
            columns=self._columns[: self.length].copy(),
            values=self._values[: self.length].copy(),
            document_count=int(document_count),
        )


@dataclass(eq=False)
class SparseDocumentTermMatrix:
    """
    Purpose
    -------
    Documents x vocabulary count matrix in triplet form.

    Parameters
    ----------
    rows : numpy.ndarray
        `int64` document indices.
    columns : numpy.ndarray
        `int64` vocabulary indices.
    values : numpy.ndarray
        `int64` counts, all > 0.
    shape : tuple[int, int]
        `(document_count, vocabulary_size)`.
    column_labels : list[str]
        Term of each column.

    Raises
    ------
    UsageError
        If the triplet arrays differ in length or the labels do not match the
        column count.
    """

    rows: np.ndarray
    columns: np.ndarray
    values: np.ndarray
    shape: tuple[int, int]
    column_labels: List[str]

    def __post_init__(self) -> None:
        if not len(self.rows) == len(self.columns) == len(self.values):
            raise UsageError("Triplet arrays must have equal length")
        if len(self.column_labels) != self.shape[1]:
            raise UsageError(
                f"Matrix has {self.shape[1]} columns but {len(self.column_labels)} labels"
            )
        self.shape = (int(self.shape[0]), int(self.shape[1]))

    @property
    def nnz(self) -> int:
        return len(self.values)

    @classmethod
    def empty(cls, column_labels: Sequence[str]) -> "SparseDocumentTermMatrix":
        return cls(
            rows=np.zeros(0, dtype=np.int64),
            columns=np.zeros(0, dtype=np.int64),
            values=np.zeros(0, dtype=np.int64),
            shape=(0, len(column_labels)),
            column_labels=list(column_labels),
        )

    @classmethod
    def from_blocks(
        cls, parts: Sequence[BlockTriplets], column_labels: Sequence[str]
    ) -> "SparseDocumentTermMatrix":
        """
        Stack label-free block triplets and label the result once.

        Parameters
        ----------
        parts : Sequence[BlockTriplets]
            Block triplets in row order; every part must index into
            `column_labels`.
        column_labels : Sequence[str]
            Terms of the shared vocabulary.

        Returns
        -------
        SparseDocumentTermMatrix
            Matrix with `sum(part.document_count)` rows.

        Notes
        -----
        - Labels are copied once for the whole matrix, never per part.
        """

        row_offset = 0
        rows: List[np.ndarray] = []
        for part in parts:
            rows.append(part.rows + row_offset)
            row_offset += part.document_count
        if not parts:
            return cls.empty(column_labels)
        return cls(
            rows=np.concatenate(rows),
            columns=np.concatenate([part.columns for part in parts]),
            values=np.concatenate([part.values for part in parts]),
            shape=(row_offset, len(column_labels)),
            column_labels=list(column_labels),
        )

    @classmethod
    def vstack(cls, parts: Sequence["SparseDocumentTermMatrix"]) -> "SparseDocumentTermMatrix":
        """
        Row-concatenate matrices that share the same columns.

        Parameters
        ----------
        parts : Sequence[SparseDocumentTermMatrix]
            Matrices in row order; must be non-empty.

        Returns
        -------
        SparseDocumentTermMatrix
            Matrix whose rows are the rows of `parts` in order.

        Raises
        ------
        UsageError
            If `parts` is empty or the parts disagree on their column labels.
        """

        if not parts:
            raise UsageError("vstack needs at least one matrix")
        column_labels = parts[0].column_labels
        row_offset = 0
        rows: List[np.ndarray] = []
        for part in parts:
            if part.column_labels != column_labels:
                raise UsageError("Cannot stack matrices built from different vocabularies")
            rows.append(part.rows + row_offset)
            row_offset += part.shape[0]
        return cls(
            rows=np.concatenate(rows),
            columns=np.concatenate([part.columns for part in parts]),
            values=np.concatenate([part.values for part in parts]),
            shape=(row_offset, len(column_labels)),
            column_labels=list(column_labels),
        )

    def column_sums(self) -> np.ndarray:
        return np.bincount(self.columns, weights=self.values, minlength=self.shape[1]).astype(
            np.int64
        )

    def row_sums(self) -> np.ndarray:
        return np.bincount(self.rows, weights=self.values, minlength=self.shape[0]).astype(
            np.int64
        )

    def reorder_columns(self, ordering: Sequence[int] | np.ndarray) -> "SparseDocumentTermMatrix":
        """
        Permute columns so that new column `k` is old column `ordering[k]`.

        Parameters
        ----------
        ordering : Sequence[int] or numpy.ndarray
            A permutation of `range(shape[1])`.

        Returns
        -------
        SparseDocumentTermMatrix
            New matrix with remapped column indices and labels.

        Raises
        ------
        UsageError
            If `ordering` is not a permutation of the columns.
        """

        ordering = np.asarray(ordering, dtype=np.int64)
        if len(ordering) != self.shape[1] or not np.array_equal(
            np.sort(ordering), np.arange(self.shape[1])
        ):
            raise UsageError("Column ordering must be a permutation of the matrix columns")
        new_position = np.empty(self.shape[1], dtype=np.int64)
        new_position[ordering] = np.arange(self.shape[1], dtype=np.int64)
        return SparseDocumentTermMatrix(
            rows=self.rows.copy(),
            columns=new_position[self.columns],
            values=self.values.copy(),
            shape=self.shape,
            column_labels=[self.column_labels[old] for old in ordering],
        )

    def order_by_frequency(self) -> "SparseDocumentTermMatrix":
        """Reorder columns by descending column sum; ties keep their order."""
        ordering = np.argsort(-self.column_sums(), kind="stable")
        return self.reorder_columns(ordering)

    def to_scipy(self) -> sp.coo_matrix:
        return sp.coo_matrix((self.values, (self.rows, self.columns)), shape=self.shape)

    def to_dense(self) -> pd.DataFrame:
        """Labelled dense view; only sensible for small matrices."""
        return pd.DataFrame(self.to_scipy().toarray(), columns=self.column_labels)
