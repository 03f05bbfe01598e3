"""Fetch requests and composable predicates.

A predicate is any callable taking a :class:`ManagedObject` and returning a
truthy value. Contexts pass predicates through unmodified and evaluate them
against materialized objects, so callers may supply plain lambdas as well as
the helpers below.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from persistor.domain.objects import ManagedObject

Predicate = Callable[["ManagedObject"], object]

_MISSING = object()


@dataclass(frozen=True, slots=True)
class FetchRequest:
    """What to fetch from a context: an entity, an optional filter and a limit."""

    entity_name: str
    predicate: Predicate | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.entity_name, str) or not self.entity_name.strip():
            raise ValueError("entity_name must be a non-empty string")
        if self.predicate is not None and not callable(self.predicate):
            raise ValueError("predicate must be callable")
        if self.limit is not None and self.limit <= 0:
            raise ValueError("limit must be > 0")

    def matches(self, obj: ManagedObject) -> bool:
        if obj.entity_name != self.entity_name:
            return False
        if self.predicate is None:
            return True
        return bool(self.predicate(obj))


def where(**equals: object) -> Predicate:
    """Match objects whose attributes equal every given value."""

    if not equals:
        raise ValueError("where() needs at least one attribute")

    def predicate(obj: ManagedObject) -> bool:
        return all(getattr(obj, name, _MISSING) == value for name, value in equals.items())

    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    return lambda obj: all(predicate(obj) for predicate in predicates)


def any_of(*predicates: Predicate) -> Predicate:
    return lambda obj: any(predicate(obj) for predicate in predicates)


def negate(predicate: Predicate) -> Predicate:
    return lambda obj: not predicate(obj)


__all__ = [
    "FetchRequest",
    "Predicate",
    "all_of",
    "any_of",
    "negate",
    "where",
]
