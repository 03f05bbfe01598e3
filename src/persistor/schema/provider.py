"""
persistor — YAML schema provider.

Purpose
- Load the entity model a store is opened with.

File format
- ``entities`` maps entity names to definitions. A definition holds
  ``attributes`` (name → type string, or mapping with ``type``, ``optional``
  and ``default``) and an optional ``class`` in ``package.module:ClassName``
  form naming the ManagedObject subclass instantiated for the entity.

    entities:
      Note:
        class: myapp.models:Note
        attributes:
          title: {type: string, optional: false}
          body: string
          pinned: {type: boolean, default: false}

Functional requirements
- Any failure (missing file, YAML syntax, bad definitions, unimportable
  classes) raises ``SchemaLoadError``; callers treat it as fatal.
"""

from __future__ import annotations

import importlib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import yaml

from persistor.domain.model import AttributeDescription, EntityDescription, Model
from persistor.domain.objects import ManagedObject
from persistor.errors import SchemaLoadError

_ENTITY_KEYS: Final[frozenset[str]] = frozenset({"attributes", "class"})
_ATTRIBUTE_KEYS: Final[frozenset[str]] = frozenset({"type", "optional", "default"})


def load_model(location: str | Path) -> Model:
    """Read a YAML model definition from ``location``."""

    path = Path(location).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SchemaLoadError(f"unable to read model file {path}: {exc}") from exc

    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SchemaLoadError(f"invalid YAML in model file {path}: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise SchemaLoadError(f"model root must be a mapping: {path}")
    try:
        return model_from_mapping(payload)
    except SchemaLoadError as exc:
        raise SchemaLoadError(f"{path}: {exc}") from exc


def model_from_mapping(payload: Mapping[str, Any]) -> Model:
    """Build a :class:`Model` from an already-parsed definition."""

    unknown = sorted(str(key) for key in payload if key != "entities")
    if unknown:
        raise SchemaLoadError(f"unknown top-level keys: {', '.join(unknown)}")

    raw_entities = payload.get("entities")
    if not isinstance(raw_entities, Mapping) or not raw_entities:
        raise SchemaLoadError("'entities' must be a non-empty mapping")

    entities: dict[str, EntityDescription] = {}
    for raw_name, definition in raw_entities.items():
        name = str(raw_name)
        entities[name] = _entity_from_definition(name, definition)
    return Model(entities)


def _entity_from_definition(name: str, definition: object) -> EntityDescription:
    if definition is None:
        definition = {}
    if not isinstance(definition, Mapping):
        raise SchemaLoadError(f"entity {name!r} must be a mapping")

    unknown = sorted(str(key) for key in definition if key not in _ENTITY_KEYS)
    if unknown:
        raise SchemaLoadError(f"entity {name!r} has unknown keys: {', '.join(unknown)}")

    raw_attributes = definition.get("attributes") or {}
    if not isinstance(raw_attributes, Mapping):
        raise SchemaLoadError(f"entity {name!r}: 'attributes' must be a mapping")

    attributes = tuple(
        _attribute_from_definition(name, str(attr_name), attr_definition)
        for attr_name, attr_definition in raw_attributes.items()
    )

    class_path = definition.get("class")
    managed_class = None if class_path is None else _resolve_class(name, class_path)

    try:
        return EntityDescription(name=name, attributes=attributes, managed_class=managed_class)
    except ValueError as exc:
        raise SchemaLoadError(str(exc)) from exc


def _attribute_from_definition(
    entity_name: str, name: str, definition: object
) -> AttributeDescription:
    if isinstance(definition, str):
        definition = {"type": definition}
    if not isinstance(definition, Mapping):
        raise SchemaLoadError(f"{entity_name}.{name}: attribute must be a type name or mapping")

    unknown = sorted(str(key) for key in definition if key not in _ATTRIBUTE_KEYS)
    if unknown:
        raise SchemaLoadError(f"{entity_name}.{name}: unknown keys: {', '.join(unknown)}")

    optional = definition.get("optional", True)
    if not isinstance(optional, bool):
        raise SchemaLoadError(f"{entity_name}.{name}: 'optional' must be a boolean")

    try:
        return AttributeDescription(
            name=name,
            type=str(definition.get("type", "")),
            optional=optional,
            default=definition.get("default"),
        )
    except (TypeError, ValueError) as exc:
        raise SchemaLoadError(f"{entity_name}.{name}: {exc}") from exc


def _resolve_class(entity_name: str, class_path: object) -> type[ManagedObject]:
    if not isinstance(class_path, str) or ":" not in class_path:
        raise SchemaLoadError(
            f"entity {entity_name!r}: 'class' must look like 'package.module:ClassName'"
        )
    module_name, _, attr_path = class_path.partition(":")
    try:
        target: object = importlib.import_module(module_name)
        for part in attr_path.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as exc:
        raise SchemaLoadError(
            f"entity {entity_name!r}: cannot import {class_path!r}: {exc}"
        ) from exc

    if not isinstance(target, type) or not issubclass(target, ManagedObject):
        raise SchemaLoadError(
            f"entity {entity_name!r}: {class_path!r} is not a ManagedObject subclass"
        )
    return target


__all__ = ["load_model", "model_from_mapping"]
