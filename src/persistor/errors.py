"""Exception hierarchy for persistor.

Errors here cover initialization and store access. The object lifecycle API
never raises them to its callers: save and query failures are logged and
surface only as a missing result.
"""

from __future__ import annotations


class PersistorError(RuntimeError):
    """Base class for persistor errors."""


class SchemaLoadError(PersistorError):
    """Raised when the model definition cannot be loaded or is invalid."""


class StoreError(PersistorError):
    """Base class for physical store errors."""


class StoreOpenError(StoreError):
    """Raised when the store cannot be opened; fatal to startup."""


class StoreBusyError(StoreError):
    """Raised when bounded busy retries are exhausted."""


class StoreMigrationError(StoreError):
    """Raised when the store layout or stored model cannot be migrated."""


class StoreCorruptionError(StoreError):
    """Raised when SQLite reports possible corruption."""


class ValidationError(PersistorError):
    """Raised by a context's local commit when pending objects violate the model."""

    def __init__(self, issues: tuple[str, ...]) -> None:
        self.issues = issues
        super().__init__("; ".join(issues) if issues else "validation failed")


class LaneClosedError(PersistorError):
    """Raised when work is submitted to a lane that has been closed."""


__all__ = [
    "LaneClosedError",
    "PersistorError",
    "SchemaLoadError",
    "StoreBusyError",
    "StoreCorruptionError",
    "StoreError",
    "StoreMigrationError",
    "StoreOpenError",
    "ValidationError",
]
