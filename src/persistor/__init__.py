"""
persistor — concurrency-safe persistence facade.

Purpose
- Package root. Exposes the facade and the handful of types callers need to
  create, fetch and delete managed objects from any thread.

Import boundary
- Importing the package must not open stores, start lanes or configure logging.
"""

from persistor.domain.objects import ManagedObject
from persistor.domain.query import all_of, any_of, negate, where
from persistor.errors import (
    PersistorError,
    SchemaLoadError,
    StoreError,
    StoreOpenError,
    ValidationError,
)
from persistor.facade import Persistor

__version__ = "0.1.0"

__all__ = [
    "ManagedObject",
    "Persistor",
    "PersistorError",
    "SchemaLoadError",
    "StoreError",
    "StoreOpenError",
    "ValidationError",
    "__version__",
    "all_of",
    "any_of",
    "negate",
    "where",
]
