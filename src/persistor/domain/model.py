"""Entity/attribute descriptions that make up a persistor model."""

from __future__ import annotations

import copy
import hashlib
import json
import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Final

from persistor.constants import ATTRIBUTE_TYPES

if TYPE_CHECKING:
    from persistor.domain.objects import ManagedObject

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_RESERVED_ATTRIBUTE_NAMES: Final[frozenset[str]] = frozenset(
    # Public members of ManagedObject; an attribute may not shadow them.
    {"object_id", "entity", "entity_name", "context", "is_deleted", "values", "snapshot"}
)


@dataclass(frozen=True, slots=True)
class AttributeDescription:
    """One typed attribute of an entity."""

    name: str
    type: str
    optional: bool = True
    default: JSONValue = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.isidentifier():
            raise ValueError(f"attribute name must be a Python identifier, got {self.name!r}")
        if self.name.startswith("_") or self.name in _RESERVED_ATTRIBUTE_NAMES:
            raise ValueError(f"attribute name {self.name!r} is reserved")
        if self.type not in ATTRIBUTE_TYPES:
            allowed = ", ".join(ATTRIBUTE_TYPES)
            raise ValueError(
                f"attribute {self.name!r} has unsupported type {self.type!r}; "
                f"expected one of: {allowed}"
            )
        if self.default is not None:
            # Defaults are stored in model fingerprints, so they must survive JSON.
            object.__setattr__(self, "default", self.to_storage(self.coerce(self.default)))

    def coerce(self, value: object) -> Any:
        """Return ``value`` in its in-memory form or raise ``TypeError``."""

        if value is None:
            return None
        kind = self.type
        if kind == "string":
            if isinstance(value, str):
                return value
        elif kind == "integer":
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        elif kind == "float":
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                as_float = float(value)
                if math.isfinite(as_float):
                    return as_float
        elif kind == "boolean":
            if isinstance(value, bool):
                return value
        elif kind == "datetime":
            if isinstance(value, datetime):
                return _as_utc(value)
            if isinstance(value, str):
                try:
                    return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
                except ValueError:
                    pass
        elif kind == "json":
            try:
                json.dumps(value, allow_nan=False)
            except (TypeError, ValueError):
                pass
            else:
                return value
        raise TypeError(
            f"attribute {self.name!r} expects {kind}, got {type(value).__name__}"
        )

    def to_storage(self, value: Any) -> JSONValue:
        if value is None:
            return None
        if self.type == "datetime":
            return _as_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")
        return value

    def from_storage(self, value: JSONValue) -> Any:
        if value is None:
            return None
        return self.coerce(value)

    def describe(self) -> dict[str, JSONValue]:
        return {"type": self.type, "optional": self.optional, "default": self.default}


@dataclass(frozen=True, slots=True)
class EntityDescription:
    """A named record type with ordered attributes and an optional Python class."""

    name: str
    attributes: tuple[AttributeDescription, ...]
    managed_class: type[ManagedObject] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("entity name must be a non-empty string")
        seen: set[str] = set()
        for attribute in self.attributes:
            if attribute.name in seen:
                raise ValueError(f"entity {self.name!r} declares {attribute.name!r} twice")
            seen.add(attribute.name)

    def attribute(self, name: str) -> AttributeDescription | None:
        for attribute in self.attributes:
            if attribute.name == name:
                return attribute
        return None

    @property
    def attribute_names(self) -> tuple[str, ...]:
        return tuple(attribute.name for attribute in self.attributes)

    def initial_values(self) -> dict[str, Any]:
        return {
            attribute.name: copy.deepcopy(attribute.from_storage(attribute.default))
            for attribute in self.attributes
        }

    def validate(self, values: Mapping[str, Any]) -> tuple[str, ...]:
        """Return validation issues for a record of this entity; empty means valid."""

        issues: list[str] = []
        for attribute in self.attributes:
            value = values.get(attribute.name)
            if value is None:
                if not attribute.optional:
                    issues.append(f"{self.name}.{attribute.name} is required")
                continue
            try:
                attribute.coerce(value)
            except TypeError as exc:
                issues.append(f"{self.name}.{attribute.name}: {exc}")
        return tuple(issues)

    def describe(self) -> dict[str, JSONValue]:
        return {attribute.name: attribute.describe() for attribute in self.attributes}


class Model:
    """Immutable-by-convention set of entity descriptions keyed by entity name."""

    def __init__(self, entities: Mapping[str, EntityDescription] | None = None) -> None:
        self._entities: dict[str, EntityDescription] = {}
        for name, entity in (entities or {}).items():
            if name != entity.name:
                raise ValueError(f"entity key {name!r} does not match entity name {entity.name!r}")
            self._entities[name] = entity

    def __contains__(self, name: object) -> bool:
        return name in self._entities

    def __iter__(self) -> Iterator[EntityDescription]:
        return iter(self._entities[name] for name in sorted(self._entities))

    def __len__(self) -> int:
        return len(self._entities)

    @property
    def entity_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._entities))

    def entity(self, name: str) -> EntityDescription | None:
        return self._entities.get(name)

    def bind_class(self, entity_name: str, managed_class: type[ManagedObject]) -> None:
        """Bind ``managed_class`` as the Python type instantiated for ``entity_name``."""

        from persistor.domain.objects import ManagedObject

        entity = self._entities.get(entity_name)
        if entity is None:
            raise KeyError(f"unknown entity {entity_name!r}")
        if not isinstance(managed_class, type) or not issubclass(managed_class, ManagedObject):
            raise TypeError("managed_class must be a ManagedObject subclass")
        self._entities[entity_name] = replace(entity, managed_class=managed_class)

    def describe(self) -> dict[str, JSONValue]:
        return {name: self._entities[name].describe() for name in sorted(self._entities)}

    def fingerprint(self) -> str:
        """Deterministic digest of entity and attribute definitions (classes excluded)."""

        payload = json.dumps(self.describe(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = [
    "AttributeDescription",
    "EntityDescription",
    "JSONValue",
    "Model",
]
