"""
persistor — unit tests for model descriptions

Purpose
- Validate attribute coercion, entity validation and model fingerprints.

What this test file should cover
- Type coercion per attribute type, including datetime normalization.
- Reserved and duplicate attribute names.
- Required-attribute validation issues.
- Fingerprint stability and sensitivity, class binding.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from persistor.domain.model import AttributeDescription, EntityDescription, Model
from persistor.domain.objects import ManagedObject


@pytest.mark.parametrize(
    ("kind", "value", "expected"),
    [
        ("string", "hello", "hello"),
        ("integer", 7, 7),
        ("float", 3, 3.0),
        ("boolean", True, True),
        ("json", {"a": [1, 2]}, {"a": [1, 2]}),
    ],
)
def test_coerce_accepts_matching_values(kind: str, value: object, expected: object) -> None:
    assert AttributeDescription("field", kind).coerce(value) == expected


@pytest.mark.parametrize(
    ("kind", "value"),
    [
        ("string", 1),
        ("integer", True),
        ("integer", 1.5),
        ("float", float("nan")),
        ("boolean", 1),
        ("datetime", "yesterday"),
        ("json", {1, 2}),
    ],
)
def test_coerce_rejects_mismatched_values(kind: str, value: object) -> None:
    with pytest.raises(TypeError, match="expects"):
        AttributeDescription("field", kind).coerce(value)


def test_datetime_values_are_normalized_to_utc_and_round_trip_storage() -> None:
    attribute = AttributeDescription("when", "datetime")
    local = datetime(2024, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

    coerced = attribute.coerce(local)
    stored = attribute.to_storage(coerced)

    assert coerced.utcoffset() == timedelta(0)
    assert stored == "2024-05-01T10:00:00.000000Z"
    assert attribute.from_storage(stored) == coerced


@pytest.mark.parametrize("name", ["object_id", "context", "_secret", "not valid"])
def test_reserved_or_invalid_attribute_names_are_rejected(name: str) -> None:
    with pytest.raises(ValueError):
        AttributeDescription(name, "string")


def test_managed_object_members_cannot_be_attribute_names() -> None:
    members = sorted(name for name in dir(ManagedObject) if not name.startswith("_"))

    assert "values" in members
    for name in members:
        with pytest.raises(ValueError, match="reserved"):
            AttributeDescription(name, "string")


def test_unknown_attribute_type_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported type"):
        AttributeDescription("size", "decimal")


def test_duplicate_attributes_are_rejected() -> None:
    with pytest.raises(ValueError, match="twice"):
        EntityDescription(
            "Note",
            (AttributeDescription("title", "string"), AttributeDescription("title", "string")),
        )


def test_validate_reports_required_and_type_issues(note_model: Model) -> None:
    entity = note_model.entity("Note")
    assert entity is not None

    issues = entity.validate({"title": None, "rank": "high"})

    assert "Note.title is required" in issues
    assert any(issue.startswith("Note.rank:") for issue in issues)
    assert entity.validate({"title": "ok"}) == ()


def test_initial_values_apply_defaults(note_model: Model) -> None:
    entity = note_model.entity("Note")
    assert entity is not None
    assert entity.initial_values() == {"title": None, "body": None, "pinned": False, "rank": None}


def test_fingerprint_ignores_bound_classes_but_tracks_attributes(note_model: Model) -> None:
    unbound = Model(
        {name: note_model.entity(name) for name in note_model.entity_names}  # type: ignore[misc]
    )
    unbound.bind_class("Note", ManagedObject)
    assert unbound.fingerprint() == note_model.fingerprint()

    changed = Model(
        {
            "Note": EntityDescription("Note", (AttributeDescription("title", "string"),)),
        }
    )
    assert changed.fingerprint() != note_model.fingerprint()


def test_bind_class_validates_entity_and_type(note_model: Model) -> None:
    with pytest.raises(KeyError):
        note_model.bind_class("Missing", ManagedObject)
    with pytest.raises(TypeError):
        note_model.bind_class("Note", dict)  # type: ignore[arg-type]


def test_model_iterates_entities_sorted(note_model: Model) -> None:
    assert [entity.name for entity in note_model] == ["Note", "Tag"]
    assert "Note" in note_model
    assert "Missing" not in note_model
    assert len(note_model) == 2
