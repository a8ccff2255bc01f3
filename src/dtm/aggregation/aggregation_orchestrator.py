"""
Purpose
-------
Script entry point that aggregates a directory of parquet blocks into one
sparse document-term matrix and writes it to disk.

Key behaviors
-------------
- Parse CLI arguments (block directory, output directory, optional log
  level), load `.env`, and initialize structured logging.
- Collect `*.parquet` files of the block directory in name order and run
  `aggregate_blocks` with options taken from the environment.
- Write the matrix as `document_term_matrix.npz` (scipy sparse format) and
  its column labels as `column_labels.parquet`; with
  `DTM_BUILD_MATRIX=false` only the vocabulary snapshot is written.

Conventions
-----------
- Environment options (all optional):
    - `DTM_PARALLEL` ("true"/"false", default false)
    - `DTM_WORKER_COUNT` (default `MAXIMAL_WORKER_COUNT`)
    - `DTM_LARGE_VOCABULARY` ("true"/"false", default false)
    - `DTM_FREQUENCY_THRESHOLD` (default 0)
    - `DTM_MAX_VOCAB_SIZE` (default -1)
    - `DTM_USE_TERM_COUNTS` ("true"/"false", default false)
    - `DTM_BUILD_MATRIX` ("true"/"false", default true)
- A vocabulary snapshot is always saved under `<output_dir>/vocabulary/`.
- Any failure is logged at error level and re-raised, so the process exits
  non-zero.

Downstream usage
----------------
`python -m dtm.aggregation.aggregation_orchestrator BLOCK_DIR OUTPUT_DIR [LOG_LEVEL]`
"""

import os
import sys
from dataclasses import dataclass
from typing import List

import pandas as pd
import scipy.sparse as sp
from dotenv import load_dotenv

from dtm.aggregation.block_aggregator import aggregate_blocks
from dtm.dtm_config import (
    COLUMN_LABELS_OUTPUT_FILE,
    MATRIX_OUTPUT_FILE,
    MAXIMAL_WORKER_COUNT,
    UNBOUNDED_VOCABULARY_SIZE,
)
from dtm.logging.dtm_logger import DtmLogger, initialize_logger
from dtm.matrix.sparse_matrix import SparseDocumentTermMatrix
from dtm.storage.block_source import ParquetBlockSource

TRUE_VALUES: set[str] = {"1", "true", "yes"}


@dataclass
class AggregationSettings:
    """Aggregation options resolved from the environment."""

    parallel: bool
    worker_count: int
    large_vocabulary: bool
    frequency_threshold: int
    max_vocab_size: int
    use_term_counts: bool
    build_matrix: bool


def main() -> None:
    """
    Run block aggregation for the directory named on the command line.

    Raises
    ------
    IndexError
        If fewer than two CLI arguments are given.
    Exception
        Any aggregation failure, after it has been logged.
    """

    load_dotenv()
    block_dir, output_dir, logger_level = extract_cli_args()
    logger: DtmLogger = initialize_logger(
        component_name="aggregation_orchestrator",
        level=logger_level,
        run_meta={"block_dir": block_dir, "output_dir": output_dir},
    )
    settings = extract_settings()
    block_files = list_block_files(block_dir)
    logger.info(
        event="orchestrator_started",
        msg=f"Found {len(block_files)} blocks in {block_dir}",
        context={"settings": settings.__dict__},
    )
    try:
        result = aggregate_blocks(
            ParquetBlockSource(paths=block_files, directory=block_dir),
            parallel=settings.parallel,
            worker_count=settings.worker_count,
            large_vocabulary=settings.large_vocabulary,
            frequency_threshold=settings.frequency_threshold,
            build_matrix=settings.build_matrix,
            max_vocab_size=settings.max_vocab_size,
            use_term_counts=settings.use_term_counts,
            snapshot_dir=os.path.join(output_dir, "vocabulary"),
            logger=logger.child("block_aggregator"),
        )
    except Exception as e:  # pylint: disable=W0718
        logger.error(
            event="orchestrator_failed",
            msg=f"Aggregation failed: {type(e).__name__}: {e}",
        )
        raise
    if isinstance(result, SparseDocumentTermMatrix):
        write_matrix(result, output_dir)
        logger.info(
            event="matrix_written",
            context={"output_dir": output_dir, "shape": list(result.shape)},
        )


def extract_cli_args() -> tuple[str, str, str]:
    """
    Read `(block_dir, output_dir, logger_level)` from `sys.argv`.

    Returns
    -------
    tuple[str, str, str]
        The logger level defaults to "INFO" when the third argument is absent.
    """

    block_dir: str = sys.argv[1]
    output_dir: str = sys.argv[2]
    logger_level: str = "INFO"
    if len(sys.argv) == 4:
        logger_level = sys.argv[3]
    return block_dir, output_dir, logger_level


def extract_settings() -> AggregationSettings:
    """
    Resolve aggregation options from environment variables.

    Returns
    -------
    AggregationSettings
        Options with defaults applied.

    Raises
    ------
    ValueError
        If a numeric variable cannot be parsed as an integer.
    """

    return AggregationSettings(
        parallel=env_flag("DTM_PARALLEL", False),
        worker_count=int(os.environ.get("DTM_WORKER_COUNT", str(MAXIMAL_WORKER_COUNT))),
        large_vocabulary=env_flag("DTM_LARGE_VOCABULARY", False),
        frequency_threshold=int(os.environ.get("DTM_FREQUENCY_THRESHOLD", "0")),
        max_vocab_size=int(
            os.environ.get("DTM_MAX_VOCAB_SIZE", str(UNBOUNDED_VOCABULARY_SIZE))
        ),
        use_term_counts=env_flag("DTM_USE_TERM_COUNTS", False),
        build_matrix=env_flag("DTM_BUILD_MATRIX", True),
    )


def env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUE_VALUES


def list_block_files(block_dir: str) -> List[str]:
    """Parquet file names of `block_dir`, sorted by name."""
    return sorted(name for name in os.listdir(block_dir) if name.endswith(".parquet"))


def write_matrix(matrix: SparseDocumentTermMatrix, output_dir: str) -> None:
    """
    Write the matrix and its column labels into `output_dir`.

    Parameters
    ----------
    matrix : SparseDocumentTermMatrix
        Aggregated matrix.
    output_dir : str
        Destination directory; created if missing.

    Returns
    -------
    None
    """

    os.makedirs(output_dir, exist_ok=True)
    sp.save_npz(os.path.join(output_dir, MATRIX_OUTPUT_FILE), matrix.to_scipy().tocsr())
    pd.DataFrame({"term": pd.Series(matrix.column_labels, dtype=object)}).to_parquet(
        os.path.join(output_dir, COLUMN_LABELS_OUTPUT_FILE), index=False
    )


if __name__ == "__main__":
    main()
