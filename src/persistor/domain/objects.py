"""Managed objects and the immutable snapshots that move between contexts."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from persistor.domain.model import EntityDescription, JSONValue

if TYPE_CHECKING:
    from persistor.context.managed_context import ObjectContext


@dataclass(frozen=True, slots=True)
class ObjectSnapshot:
    """Storage-form copy of one record, safe to hand across lanes."""

    entity_name: str
    object_id: str
    values: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(copy.deepcopy(dict(self.values))))


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Inserted, updated and deleted records produced by one local commit."""

    inserted: tuple[ObjectSnapshot, ...] = ()
    updated: tuple[ObjectSnapshot, ...] = ()
    deleted: tuple[ObjectSnapshot, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted)

    @property
    def entity_names(self) -> tuple[str, ...]:
        names = {item.entity_name for item in (*self.inserted, *self.updated, *self.deleted)}
        return tuple(sorted(names))

    def __len__(self) -> int:
        return len(self.inserted) + len(self.updated) + len(self.deleted)

    def summary(self) -> dict[str, int]:
        return {
            "inserted": len(self.inserted),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
        }


class ManagedObject:
    """In-memory representation of one persisted record.

    Entity attributes are read and written as plain Python attributes.
    Writing one records the object as updated in its owning context and is
    only allowed inside a command running on that context's lane, such as a
    ``configure`` callback or a fetch completion. Other threads get
    ``RuntimeError``.
    Subclasses bound to an entity may add properties and methods; private
    state must use names starting with ``_``.
    """

    def __init__(
        self,
        entity: EntityDescription,
        object_id: str,
        context: ObjectContext | None = None,
    ) -> None:
        object.__setattr__(self, "_entity", entity)
        object.__setattr__(self, "_object_id", object_id)
        object.__setattr__(self, "_context", context)
        object.__setattr__(self, "_deleted", False)
        object.__setattr__(self, "_values", entity.initial_values())

    @property
    def object_id(self) -> str:
        return self._object_id

    @property
    def entity(self) -> EntityDescription:
        return self._entity

    @property
    def entity_name(self) -> str:
        return self._entity.name

    @property
    def context(self) -> ObjectContext | None:
        return self._context

    @property
    def is_deleted(self) -> bool:
        return self._deleted

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails, i.e. for entity attributes.
        if name.startswith("_"):
            raise AttributeError(name)
        values = object.__getattribute__(self, "_values")
        if name in values:
            return values[name]
        entity_name = object.__getattribute__(self, "_entity").name
        raise AttributeError(f"{entity_name} has no attribute {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_") or _is_class_descriptor(type(self), name):
            object.__setattr__(self, name, value)
            return
        attribute = self._entity.attribute(name)
        if attribute is None:
            raise AttributeError(f"{self._entity.name} has no attribute {name!r}")
        coerced = attribute.coerce(value)
        if self._context is not None:
            # Raises off the owning lane, before anything changes.
            self._context._object_did_change(self)
        self._values[name] = coerced

    def values(self) -> dict[str, Any]:
        """Return a shallow copy of the current attribute values."""

        return dict(self._values)

    def snapshot(self) -> ObjectSnapshot:
        storage = {
            attribute.name: attribute.to_storage(self._values.get(attribute.name))
            for attribute in self._entity.attributes
        }
        return ObjectSnapshot(self._entity.name, self._object_id, storage)

    def __repr__(self) -> str:
        state = " deleted" if self._deleted else ""
        return f"<{type(self).__name__} {self._entity.name} {self._object_id}{state}>"

    # Context bookkeeping; not part of the caller-facing surface.

    def _apply_storage_values(self, values: Mapping[str, JSONValue]) -> None:
        for attribute in self._entity.attributes:
            if attribute.name in values:
                self._values[attribute.name] = attribute.from_storage(
                    copy.deepcopy(values[attribute.name])
                )

    def _mark_deleted(self) -> None:
        object.__setattr__(self, "_deleted", True)
        object.__setattr__(self, "_context", None)


def _is_class_descriptor(cls: type, name: str) -> bool:
    for klass in cls.__mro__:
        if klass is ManagedObject:
            return False
        candidate = klass.__dict__.get(name)
        if candidate is not None and hasattr(candidate, "__set__"):
            return True
    return False


__all__ = [
    "ChangeSet",
    "ManagedObject",
    "ObjectSnapshot",
]
