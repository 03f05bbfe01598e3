"""Persistence layer exports."""

from persistor.persistence.location import LocationResolver
from persistor.persistence.store import StoreCoordinator, StoreOptions, canonical_json

__all__ = ["LocationResolver", "StoreCoordinator", "StoreOptions", "canonical_json"]
