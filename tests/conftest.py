"""Shared fixtures: a small Note/Tag model, its YAML form, and a facade factory."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from persistor.domain.model import AttributeDescription, EntityDescription, Model
from persistor.domain.objects import ManagedObject
from persistor.facade import Persistor

NOTE_MODEL_YAML = """\
entities:
  Note:
    attributes:
      title: {type: string, optional: false}
      body: string
      pinned: {type: boolean, default: false}
      rank: integer
  Tag:
    attributes:
      label: string
"""


class NoteObject(ManagedObject):
    """Typed managed object bound to the Note entity in tests."""

    @property
    def display(self) -> str:
        return f"{self.title} ({'pinned' if self.pinned else 'normal'})"


class TagObject(ManagedObject):
    """Typed managed object bound to the Tag entity in tests."""


def build_note_model(*, bind: bool = True) -> Model:
    model = Model(
        {
            "Note": EntityDescription(
                name="Note",
                attributes=(
                    AttributeDescription("title", "string", optional=False),
                    AttributeDescription("body", "string"),
                    AttributeDescription("pinned", "boolean", default=False),
                    AttributeDescription("rank", "integer"),
                ),
            ),
            "Tag": EntityDescription(
                name="Tag",
                attributes=(AttributeDescription("label", "string"),),
            ),
        }
    )
    if bind:
        model.bind_class("Note", NoteObject)
        model.bind_class("Tag", TagObject)
    return model


@pytest.fixture
def note_model() -> Model:
    return build_note_model()


@pytest.fixture
def note_model_path(tmp_path: Path) -> Path:
    path = tmp_path / "model.yaml"
    path.write_text(NOTE_MODEL_YAML, encoding="utf-8")
    return path


@pytest.fixture
def make_persistor(
    tmp_path: Path, note_model: Model
) -> Iterator[Callable[..., Persistor]]:
    created: list[Persistor] = []

    def factory(**kwargs: object) -> Persistor:
        model = kwargs.pop("model", note_model)
        location = kwargs.pop("store_location", tmp_path / "data" / "store.sqlite3")
        persistor = Persistor(model, location, **kwargs)  # type: ignore[arg-type]
        created.append(persistor)
        return persistor

    yield factory

    for persistor in created:
        persistor.close()


@pytest.fixture
def persistor(make_persistor: Callable[..., Persistor]) -> Persistor:
    return make_persistor()


@pytest.fixture
def note_class() -> type[NoteObject]:
    return NoteObject


@pytest.fixture
def tag_class() -> type[TagObject]:
    return TagObject
