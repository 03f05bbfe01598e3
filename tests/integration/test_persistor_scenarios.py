"""
persistor — end-to-end tests for the object lifecycle facade

Purpose
- Exercise create/fetch/delete through real lanes, contexts and a SQLite store.

What this test file should cover
- Background creates reach the interactive context and the store.
- delete_all empties an entity; fetches with no match deliver None.
- Interactive saves never cascade; empty saves publish nothing.
- A worker edit to a row deleted interactively is dropped, not resurrected.
- Saved objects are released once callers drop them.
- Unknown entities and type mismatches persist nothing.
- Completion callbacks, asyncio variants, config-driven construction and
  fatal initialization errors.
"""

from __future__ import annotations

import gc
import json
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog
from structlog.testing import capture_logs

from persistor import Persistor
from persistor.config import load_config
from persistor.domain.objects import ManagedObject
from persistor.domain.query import where
from persistor.errors import LaneClosedError, SchemaLoadError, StoreOpenError


def _interactive_titles(persistor: Persistor) -> list[str]:
    titles: list[str] = []
    future = persistor.perform_interactive(
        lambda: persistor.fetch_all(
            "Note", lambda notes: titles.extend(note.title for note in notes or [])
        )
    )
    assert future.result(timeout=5) is not None
    return titles


def _set_title(title: str) -> Callable[[ManagedObject], None]:
    def configure(note: ManagedObject) -> None:
        note.title = title

    return configure


def test_background_create_is_visible_to_interactive_fetch(
    persistor: Persistor, note_class
) -> None:
    note = persistor.create("Note", _set_title("x"), as_type=note_class)

    assert isinstance(note, note_class)
    assert note.title == "x"
    assert note.context is persistor.worker_context
    assert _interactive_titles(persistor) == ["x"]
    assert persistor.store.count("Note") == 1


def test_delete_all_after_two_creates_leaves_nothing(persistor: Persistor) -> None:
    persistor.create("Note", _set_title("first"))
    persistor.create("Note", _set_title("second"))

    assert persistor.delete_all("Note").result(timeout=5) is None

    assert persistor.fetch_all("Note").result(timeout=5) == []
    assert _interactive_titles(persistor) == []
    assert persistor.store.count("Note") == 0


def test_fetch_one_without_match_delivers_none(persistor: Persistor) -> None:
    persistor.create("Note", _set_title("present"))
    delivered: list[object] = []

    result = persistor.fetch_one("Note", where(title="missing"), delivered.append)

    assert result.result(timeout=5) is None
    assert delivered == [None]
    found = persistor.fetch_one("Note", where(title="present")).result(timeout=5)
    assert found is not None and found.title == "present"


def test_worker_save_produces_exactly_one_interactive_save(persistor: Persistor) -> None:
    persistor.create("Note", _set_title("cascade"))

    origins = [event.origin for event in persistor.event_bus.replay()]

    assert origins == [persistor.worker_context.token, persistor.interactive_context.token]


def test_interactive_create_does_not_cascade(persistor: Persistor) -> None:
    def on_interactive() -> ManagedObject | None:
        assert persistor.context_for_current_lane() is persistor.interactive_context
        return persistor.create("Note", _set_title("local"))

    note = persistor.perform_interactive(on_interactive)
    # Runs after the save queued by the create above.
    persistor.perform_interactive(lambda: None)

    assert note is not None and note.context is persistor.interactive_context
    events = persistor.event_bus.replay()
    assert [event.origin for event in events] == [persistor.interactive_context.token]
    assert persistor.store.count("Note") == 1


def test_empty_save_publishes_nothing(persistor: Persistor) -> None:
    assert persistor.save().result(timeout=5) is None
    assert persistor.perform_interactive(persistor.save).result(timeout=5) is None
    assert persistor.event_bus.replay() == ()
    assert persistor.store.count("Note") == 0


def test_worker_edit_of_interactively_deleted_row_is_dropped(persistor: Persistor) -> None:
    persistor.create("Note", _set_title("a"))
    (worker_copy,) = persistor.fetch_all("Note").result(timeout=5)
    persistor.perform_interactive(lambda: persistor.delete_all("Note")).result(timeout=5)
    assert persistor.store.count("Note") == 0

    with capture_logs() as logs:
        persistor.worker_context.lane.perform_and_wait(
            lambda: setattr(worker_copy, "title", "b")
        )
        assert persistor.save().result(timeout=5) is None

    assert worker_copy.is_deleted
    assert persistor.store.count("Note") == 0
    assert persistor.fetch_all("Note").result(timeout=5) == []
    assert any(
        entry["event"] == "persistor_update_dropped_deleted"
        and entry["object_id"] == worker_copy.object_id
        for entry in logs
    )


def test_saved_objects_are_released_when_unreferenced(persistor: Persistor) -> None:
    for index in range(50):
        persistor.create("Note", _set_title(f"note {index}"))
    # Runs after the cascaded interactive save.
    persistor.perform_interactive(lambda: None)
    gc.collect()

    for context in (persistor.worker_context, persistor.interactive_context):
        assert context.lane.perform_and_wait(lambda: context.registered_objects) == ()
    assert persistor.store.count("Note") == 50


def test_unknown_entity_creates_nothing(persistor: Persistor) -> None:
    configured: list[object] = []

    with capture_logs() as logs:
        result = persistor.create("UnknownEntity", configured.append)

    assert result is None
    assert configured == []
    assert persistor.event_bus.replay() == ()
    assert any(entry["event"] == "persistor_unknown_entity" for entry in logs)


def test_type_mismatch_persists_nothing(persistor: Persistor, tag_class) -> None:
    configured: list[object] = []

    with capture_logs() as logs:
        result = persistor.create("Note", configured.append, as_type=tag_class)

    assert result is None
    assert configured == []
    assert not persistor.worker_context.lane.perform_and_wait(
        lambda: persistor.worker_context.has_changes
    )
    assert persistor.store.count("Note") == 0
    mismatch = next(entry for entry in logs if entry["event"] == "persistor_type_mismatch")
    assert mismatch["expected"] == "TagObject"
    assert mismatch["actual"] == "NoteObject"


def test_fetch_with_wrong_type_delivers_none(persistor: Persistor, tag_class) -> None:
    persistor.create("Note", _set_title("typed"))

    assert persistor.fetch_all("Note", as_type=tag_class).result(timeout=5) is None
    assert persistor.fetch_one("Note", None, as_type=tag_class).result(timeout=5) is None


def test_fetch_of_unknown_entity_is_logged_and_none(persistor: Persistor) -> None:
    with capture_logs() as logs:
        result = persistor.fetch_all("Ghost").result(timeout=5)

    assert result is None
    failure = next(entry for entry in logs if entry["event"] == "persistor_fetch_failed")
    assert failure["entity"] == "Ghost"


def test_failing_configure_propagates_and_discards(persistor: Persistor) -> None:
    def configure(note: ManagedObject) -> None:
        note.title = "half done"
        raise RuntimeError("configure failed")

    with pytest.raises(RuntimeError, match="configure failed"):
        persistor.create("Note", configure)

    assert persistor.fetch_all("Note").result(timeout=5) == []
    assert persistor.store.count("Note") == 0


def test_invalid_object_is_not_saved(persistor: Persistor) -> None:
    with capture_logs() as logs:
        note = persistor.create("Note", lambda note: None)

    assert note is not None
    assert persistor.store.count("Note") == 0
    assert any(entry["event"] == "persistor_save_failed" for entry in logs)


def test_completion_runs_on_routed_lane_and_failures_are_logged(persistor: Persistor) -> None:
    persistor.create("Note", _set_title("callback"))
    threads: list[str] = []

    def completion(notes: object) -> None:
        threads.append(threading.current_thread().name)
        raise ValueError("completion broke")

    with capture_logs() as logs:
        notes = persistor.fetch_all("Note", completion).result(timeout=5)

    assert [note.title for note in notes] == ["callback"]
    assert threads == ["persistor-worker"]
    assert any(entry["event"] == "persistor_completion_failed" for entry in logs)


def test_completion_may_modify_objects_on_lane(persistor: Persistor) -> None:
    persistor.create("Note", _set_title("before"))

    def rename(notes: list[ManagedObject] | None) -> None:
        for note in notes or []:
            note.title = "after"

    persistor.fetch_all("Note", rename).result(timeout=5)
    persistor.save().result(timeout=5)

    assert _interactive_titles(persistor) == ["after"]
    assert [row.values["title"] for row in persistor.store.fetch_rows("Note")] == ["after"]


async def test_async_variants(persistor: Persistor) -> None:
    persistor.create("Note", _set_title("async"))

    notes = await persistor.fetch_all_async("Note")
    one = await persistor.fetch_one_async("Note", where(title="async"))
    await persistor.delete_all_async("Note")
    remaining = await persistor.fetch_all_async("Note")

    assert notes is not None and [note.title for note in notes] == ["async"]
    assert one is not None and one.object_id == notes[0].object_id
    assert remaining == []


def test_data_survives_reopen(make_persistor: Callable[..., Persistor], tmp_path: Path) -> None:
    location = tmp_path / "reopen" / "store.sqlite3"
    first = make_persistor(store_location=location)
    first.create("Note", _set_title("durable"))
    first.close()

    second = make_persistor(store_location=location)

    assert [note.title for note in second.fetch_all("Note").result(timeout=5)] == ["durable"]


def test_closed_facade_rejects_work(persistor: Persistor) -> None:
    persistor.close()
    persistor.close()

    assert persistor.closed
    with pytest.raises(LaneClosedError):
        persistor.create("Note", _set_title("late"))


def test_unreadable_model_is_fatal(tmp_path: Path) -> None:
    with capture_logs() as logs, pytest.raises(SchemaLoadError):
        Persistor(tmp_path / "missing.yaml", tmp_path / "store.sqlite3")

    assert [entry["log_level"] for entry in logs] == ["critical"]
    assert logs[0]["event"] == "persistor_schema_load_failed"


def test_unopenable_store_is_fatal(tmp_path: Path, note_model_path: Path) -> None:
    with capture_logs() as logs, pytest.raises(StoreOpenError):
        Persistor(note_model_path, tmp_path)

    assert any(
        entry["event"] == "persistor_store_open_failed" and entry["log_level"] == "critical"
        for entry in logs
    )


@pytest.fixture
def _reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.mark.usefixtures("_reset_structlog")
def test_from_config_builds_facade_and_session_log(tmp_path: Path, note_model_path: Path) -> None:
    config_path = tmp_path / "persistor.toml"
    config_path.write_text(
        """
[model]
path = "model.yaml"

[paths]
data_dir = "state"

[observability]
log_dir = "logs"
log_level = "DEBUG"
""",
        encoding="utf-8",
    )
    config = load_config(config_path, environ={})

    persistor = Persistor.from_config(config, configure_logging=True)
    try:
        note = persistor.create("Note", _set_title("configured"))
        assert note is not None and type(note) is ManagedObject
        assert persistor.store.path == (tmp_path / "state" / "persistor.sqlite3").resolve()
        session_id = persistor.session_id
    finally:
        persistor.close()

    log_path = tmp_path / "logs" / session_id / "persistor.jsonl"
    messages = [
        json.loads(line)["event"] for line in log_path.read_text(encoding="utf-8").splitlines()
    ]
    assert "persistor_store_opened" in messages
    assert "persistor_saved" in messages
    assert "persistor_merge_applied" in messages
