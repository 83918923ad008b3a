"""
scdreplay exception hierarchy.

Hierarchy::

    EngineError
    ├── DuplicateConflictError   - same key twice in one batch, different attributes
    ├── OrderingError            - batch out of load_date order, or same-date conflict
    ├── NotFoundError            - unknown entity in a strict query
    └── InvariantViolationError  - a commit would break the single-active invariant

Batch-level errors abort only the offending batch; everything applied before
it stays committed.
"""

from __future__ import annotations

from datetime import date


class EngineError(Exception):
    """Base exception for all scdreplay errors."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DuplicateConflictError(EngineError):
    """Raised when one batch holds different attributes for the same key."""

    def __init__(self, load_date: date, keys: list[tuple]) -> None:
        shown = ", ".join(repr(k[0] if len(k) == 1 else k) for k in keys)
        super().__init__(
            f"Batch {load_date} has conflicting records for key(s): {shown}",
            details={"load_date": load_date, "keys": keys},
        )
        self.load_date = load_date
        self.keys = keys


class OrderingError(EngineError):
    """Raised when a batch cannot be applied in load_date order."""

    def __init__(self, message: str, *, load_date: date, last_load_date: date | None = None) -> None:
        super().__init__(
            message,
            details={"load_date": load_date, "last_load_date": last_load_date},
        )
        self.load_date = load_date
        self.last_load_date = last_load_date


class NotFoundError(EngineError):
    """Raised by strict queries for an entity the table has never seen."""

    def __init__(self, entity_id) -> None:
        super().__init__(f"Entity not found: {entity_id!r}", details={"entity_id": entity_id})
        self.entity_id = entity_id


class InvariantViolationError(EngineError):
    """Raised when the version history is internally inconsistent.

    This indicates a defect, not bad input; it is never corrected silently.
    """
