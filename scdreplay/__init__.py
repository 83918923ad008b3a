"""
scdreplay - SCD Type 2 dimension history replayed from dated batches.

Every attribute change becomes a date-bounded version, exactly one version
per entity is active, and any past state can be read back as of a date.
"""

import logging

from .batches import Batch, BatchSequence
from .config import SENTINEL_DATE, AbsencePolicy, DimensionConfig
from .engine import ApplyResult, ReplayEngine, ReplayReport
from .errors import (
    DuplicateConflictError,
    EngineError,
    InvariantViolationError,
    NotFoundError,
    OrderingError,
)
from .frames import DataFrameLike
from .table import DimensionTable

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AbsencePolicy",
    "ApplyResult",
    "Batch",
    "BatchSequence",
    "DataFrameLike",
    "DimensionConfig",
    "DimensionTable",
    "DuplicateConflictError",
    "EngineError",
    "InvariantViolationError",
    "NotFoundError",
    "OrderingError",
    "ReplayEngine",
    "ReplayReport",
    "SENTINEL_DATE",
]
__version__ = "0.1.0"
