"""
Purpose
-------
Define the error taxonomy shared by vocabulary discovery, stem indexing,
matrix assembly, and block aggregation.

Key behaviors
-------------
- `UsageError` signals a violated caller contract (too few blocks, malformed
  vocabulary objects, bad argument combinations).
- `ShapeError` is the usage error raised when a document's term list and
  count list disagree in length.
- `CapacityError` signals that a pre-sized internal structure (term table,
  triplet buffer) would have to exceed its capacity.

Conventions
-----------
- `UsageError` subclasses `ValueError` and `CapacityError` subclasses
  `RuntimeError`, so callers catching the builtin families keep working.
- Block load failures are not wrapped: `OSError` and parquet reader errors
  propagate unchanged from the storage layer.

Downstream usage
----------------
Raise these from library code and let them surface to the caller; no module
in this package retries or swallows them.
"""


class DtmError(Exception):
    """Base class for all errors raised by the document-term matrix builder."""


class UsageError(DtmError, ValueError):
    """Raised when the caller violates an input contract."""


class ShapeError(UsageError):
    """Raised when per-document term and count lists have different lengths."""


class CapacityError(DtmError, RuntimeError):
    """
    Raised when a pre-sized table or buffer is full.

    Parameters
    ----------
    structure : str
        Name of the structure that overflowed (e.g., "term_table").
    capacity : int
        Capacity the structure was allocated with.
    message : str, optional
        Extra detail appended to the generated message.

    Attributes
    ----------
    structure : str
        Propagated from the constructor for programmatic inspection.
    capacity : int
        Propagated from the constructor for programmatic inspection.
    """

    def __init__(self, structure: str, capacity: int, message: str | None = None) -> None:
        self.structure = structure
        self.capacity = capacity
        text = f"{structure} is full at capacity {capacity}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)
