"""
Purpose
-------
Central configuration for the document-term matrix builder: worker-pool
sizing, vocabulary growth policy defaults, stem-index key length, and the
file names and column names used by blocks and vocabulary snapshots.

Key behaviors
-------------
- Derives `CPU_COUNT` from the host and computes `MAXIMAL_WORKER_COUNT`
  as `max(1, min(CPU_COUNT - 2, 12))`, overridable with `DTM_WORKER_COUNT`.
- Exposes the 80% fill ratio and x1.5 growth factor that drive vocabulary
  bound growth between blocks, overridable through the environment so runs
  can be tuned without code changes.
- Fixes the 32-bit ceiling on vocabulary size.

Conventions
-----------
- Environment overrides are read once at import time; invalid values raise
  `ValueError` immediately rather than being silently ignored.
- `UNBOUNDED_VOCABULARY_SIZE` (-1) means "size the term table from the batch".
- Constants are treated as read-only; callers should not mutate them at
  runtime.

Downstream usage
----------------
Import constants from here in vocabulary, stem-index, aggregation, and
storage modules so all of them share a single source of truth.
"""

import os

CPU_COUNT: int = os.cpu_count() or 8

MAXIMAL_WORKER_COUNT: int = int(
    os.environ.get("DTM_WORKER_COUNT", str(max(1, min(CPU_COUNT - 2, 12))))
)

UNBOUNDED_VOCABULARY_SIZE: int = -1

VOCABULARY_SIZE_CEILING: int = 2**31 - 1

VOCABULARY_FILL_RATIO: float = float(os.environ.get("DTM_VOCABULARY_FILL_RATIO", "0.8"))

VOCABULARY_GROWTH_FACTOR: float = float(os.environ.get("DTM_VOCABULARY_GROWTH_FACTOR", "1.5"))

STEM_LENGTH: int = int(os.environ.get("DTM_STEM_LENGTH", "3"))

BLOCK_TERMS_COLUMN: str = "terms"

BLOCK_COUNTS_COLUMN: str = "counts"

WORD_COUNTS_SNAPSHOT_FILE: str = "aggregate_vocabulary_and_counts.parquet"

VOCABULARY_SNAPSHOT_FILE: str = "vocabulary.parquet"

STEM_TABLE_SNAPSHOT_FILE: str = "stem_lookup.parquet"

SNAPSHOT_META_FILE: str = "vocabulary_meta.json"

MATRIX_OUTPUT_FILE: str = "document_term_matrix.npz"

COLUMN_LABELS_OUTPUT_FILE: str = "column_labels.parquet"
