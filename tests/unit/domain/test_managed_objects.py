"""Managed object attribute access, snapshots, change sets and predicates."""

from __future__ import annotations

import pytest

from persistor.domain import ids
from persistor.domain.events import CommitEvent, EventType
from persistor.domain.model import Model
from persistor.domain.objects import ChangeSet, ManagedObject, ObjectSnapshot
from persistor.domain.query import FetchRequest, all_of, any_of, negate, where


def _note(model: Model, **values: object) -> ManagedObject:
    entity = model.entity("Note")
    assert entity is not None
    note = ManagedObject(entity, ids.generate_object_id())
    for name, value in values.items():
        setattr(note, name, value)
    return note


def test_attributes_read_and_write_through_entity(note_model: Model) -> None:
    note = _note(note_model, title="draft")

    note.title = "final"
    note.rank = 3

    assert note.title == "final"
    assert note.rank == 3
    assert note.pinned is False
    assert note.values() == {"title": "final", "body": None, "pinned": False, "rank": 3}


def test_unknown_attribute_assignment_raises(note_model: Model) -> None:
    note = _note(note_model)
    with pytest.raises(AttributeError, match="no attribute 'colour'"):
        note.colour = "red"
    with pytest.raises(AttributeError):
        _ = note.colour


def test_wrong_type_assignment_raises_type_error(note_model: Model) -> None:
    note = _note(note_model)
    with pytest.raises(TypeError):
        note.rank = "first"


def test_subclass_properties_are_available(note_model: Model, note_class: type) -> None:
    entity = note_model.entity("Note")
    assert entity is not None
    note = note_class(entity, ids.generate_object_id())
    note.title = "x"
    note.pinned = True
    assert note.display == "x (pinned)"


def test_snapshot_is_immutable_copy(note_model: Model) -> None:
    note = _note(note_model, title="a")
    snapshot = note.snapshot()

    note.title = "b"

    assert snapshot.values["title"] == "a"
    assert (snapshot.entity_name, snapshot.object_id) == ("Note", note.object_id)
    with pytest.raises(TypeError):
        snapshot.values["title"] = "c"  # type: ignore[index]


def test_change_set_summary_and_entities() -> None:
    inserted = ObjectSnapshot("Note", ids.generate_object_id(), {"title": "a"})
    deleted = ObjectSnapshot("Tag", ids.generate_object_id(), {})
    changes = ChangeSet(inserted=(inserted,), deleted=(deleted,))

    assert not changes.is_empty
    assert len(changes) == 2
    assert changes.summary() == {"inserted": 1, "updated": 0, "deleted": 1}
    assert changes.entity_names == ("Note", "Tag")
    assert ChangeSet().is_empty


def test_commit_event_requires_origin_and_serializes() -> None:
    changes = ChangeSet(inserted=(ObjectSnapshot("Note", ids.generate_object_id(), {}),))
    event = CommitEvent(origin="ctx-worker", changes=changes)

    payload = event.to_dict()

    assert event.event_type is EventType.CONTEXT_DID_SAVE
    assert payload["origin"] == "ctx-worker"
    assert payload["changes"] == {"inserted": 1, "updated": 0, "deleted": 0}
    assert str(payload["timestamp"]).endswith("Z")
    with pytest.raises(ValueError):
        CommitEvent(origin=" ", changes=changes)


def test_predicate_helpers_compose(note_model: Model) -> None:
    pinned = _note(note_model, title="a", pinned=True, rank=1)
    plain = _note(note_model, title="b", rank=2)

    assert where(title="a")(pinned)
    assert not where(title="a")(plain)
    assert all_of(where(pinned=True), where(rank=1))(pinned)
    assert any_of(where(title="zzz"), where(rank=2))(plain)
    assert negate(where(pinned=True))(plain)
    assert not where(missing="x")(plain)
    with pytest.raises(ValueError):
        where()


def test_fetch_request_validation_and_matching(note_model: Model) -> None:
    note = _note(note_model, title="a")

    assert FetchRequest("Note").matches(note)
    assert not FetchRequest("Tag").matches(note)
    assert FetchRequest("Note", where(title="a"), limit=1).matches(note)
    with pytest.raises(ValueError):
        FetchRequest("")
    with pytest.raises(ValueError):
        FetchRequest("Note", limit=0)
