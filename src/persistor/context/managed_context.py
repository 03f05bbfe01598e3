"""
persistor — object contexts.

Purpose
- Hold materialized managed objects and their pending inserted, updated and
  deleted sets for one command lane.

Functional requirements
- Every public operation runs on the context's own lane; calling one from
  another thread raises ``RuntimeError``.
- A root context reads rows from the store. A child context reads what its
  parent currently sees (store rows plus the parent's unsaved work) by
  running a command on the parent's lane, then overlays its own pending work.
- ``merge_changes`` applies a change set by object identity: a registered
  object is updated in place and never duplicated.
- Pending changes stay private to the context until a save commits them.
- A committed update never recreates a row that was deleted meanwhile.
"""

from __future__ import annotations

import weakref
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import structlog

from persistor.domain import ids
from persistor.domain.model import EntityDescription, Model
from persistor.domain.objects import ChangeSet, ManagedObject, ObjectSnapshot
from persistor.domain.query import FetchRequest
from persistor.errors import ValidationError

if TYPE_CHECKING:
    from persistor.persistence.store import StoreCoordinator
    from persistor.utils.lanes import Lane


class ObjectContext:
    """A lane-confined working set of managed objects."""

    def __init__(
        self,
        name: str,
        lane: Lane,
        model: Model,
        *,
        store: StoreCoordinator | None = None,
        parent: ObjectContext | None = None,
        logger: Any | None = None,
    ) -> None:
        if store is not None and parent is not None:
            raise ValueError("a context reads from either a store or a parent, not both")
        self._name = name
        self._token = ids.generate_context_id()
        self._lane = lane
        self._model = model
        self._store = store
        self._parent = parent
        # Weak: committed objects live only as long as callers hold them. The
        # pending dicts below keep uncommitted objects alive.
        self._registered: weakref.WeakValueDictionary[str, ManagedObject] = (
            weakref.WeakValueDictionary()
        )
        self._inserted: dict[str, ManagedObject] = {}
        self._updated: dict[str, ManagedObject] = {}
        self._deleted: dict[str, ManagedObject] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def name(self) -> str:
        return self._name

    @property
    def token(self) -> str:
        return self._token

    @property
    def lane(self) -> Lane:
        return self._lane

    @property
    def model(self) -> Model:
        return self._model

    @property
    def parent(self) -> ObjectContext | None:
        return self._parent

    @property
    def store(self) -> StoreCoordinator | None:
        return self._store

    @property
    def has_changes(self) -> bool:
        return bool(self._inserted or self._updated or self._deleted)

    @property
    def registered_objects(self) -> tuple[ManagedObject, ...]:
        return tuple(self._registered.values())

    def __repr__(self) -> str:
        return f"<ObjectContext {self._name} {self._token}>"

    def object_with_id(self, object_id: str) -> ManagedObject | None:
        self._require_lane()
        return self._registered.get(object_id)

    def contains(self, object_id: str) -> bool:
        """Whether ``object_id`` is registered here or still exists upstream."""

        self._require_lane()
        if object_id in self._registered:
            return True
        if self._parent is not None:
            return self._parent.lane.perform_and_wait(self._parent.contains, object_id)
        return self._store is not None and self._store.exists(object_id)

    def insert(self, entity_name: str) -> ManagedObject | None:
        """Create a new pending object of ``entity_name``; ``None`` for unknown entities."""

        self._require_lane()
        entity = self._model.entity(entity_name)
        if entity is None:
            return None
        obj = self._instantiate(entity, ids.generate_object_id())
        self._registered[obj.object_id] = obj
        self._inserted[obj.object_id] = obj
        return obj

    def discard(self, obj: ManagedObject) -> None:
        """Forget a pending insert as if it had never been created."""

        self._require_lane()
        if self._inserted.pop(obj.object_id, None) is None:
            raise ValueError(f"{obj!r} is not a pending insert of {self!r}")
        self._registered.pop(obj.object_id, None)
        self._updated.pop(obj.object_id, None)
        obj._mark_deleted()

    def delete(self, obj: ManagedObject) -> None:
        """Mark ``obj`` for deletion at the next save."""

        self._require_lane()
        if obj.context is not self:
            raise ValueError(f"{obj!r} does not belong to {self!r}")
        if obj.object_id in self._inserted:
            self.discard(obj)
            return
        self._updated.pop(obj.object_id, None)
        self._deleted[obj.object_id] = obj

    def fetch(self, request: FetchRequest) -> list[ManagedObject]:
        """Return objects matching ``request`` in store order, pending inserts last."""

        self._require_lane()
        entity = self._model.entity(request.entity_name)
        if entity is None:
            raise KeyError(f"unknown entity {request.entity_name!r}")

        candidates: list[ManagedObject] = []
        seen: set[str] = set()
        for snapshot in self._source_rows(entity.name):
            if snapshot.object_id in self._deleted or snapshot.object_id in seen:
                continue
            seen.add(snapshot.object_id)
            candidates.append(self._register_snapshot(entity, snapshot))
        for object_id, obj in self._inserted.items():
            if object_id not in seen and obj.entity_name == entity.name:
                seen.add(object_id)
                candidates.append(obj)

        results: list[ManagedObject] = []
        for obj in candidates:
            if request.matches(obj):
                results.append(obj)
                if request.limit is not None and len(results) >= request.limit:
                    break
        return results

    def snapshot_rows(self, entity_name: str) -> list[ObjectSnapshot]:
        """Storage-form rows of ``entity_name`` as this context currently sees them."""

        return [obj.snapshot() for obj in self.fetch(FetchRequest(entity_name))]

    def merge_changes(self, changes: ChangeSet) -> int:
        """Fold a committed change set into this context; returns the number of records applied."""

        self._require_lane()
        applied = 0
        for snapshot, inserted in _tagged(changes):
            entity = self._model.entity(snapshot.entity_name)
            if entity is None:
                self._logger.warning(
                    "persistor_merge_skipped_unknown_entity",
                    context=self._name,
                    entity=snapshot.entity_name,
                    object_id=snapshot.object_id,
                )
                continue
            obj = self._registered.get(snapshot.object_id)
            if obj is None and not inserted and not self.contains(snapshot.object_id):
                self._logger.warning(
                    "persistor_merge_skipped_deleted",
                    context=self._name,
                    entity=snapshot.entity_name,
                    object_id=snapshot.object_id,
                )
                continue
            if obj is None:
                obj = self._instantiate(entity, snapshot.object_id)
                obj._apply_storage_values(snapshot.values)
                self._registered[obj.object_id] = obj
                if inserted:
                    self._inserted[obj.object_id] = obj
                else:
                    self._updated[obj.object_id] = obj
            else:
                obj._apply_storage_values(snapshot.values)
                self._deleted.pop(obj.object_id, None)
                if obj.object_id not in self._inserted:
                    self._updated[obj.object_id] = obj
            applied += 1

        for snapshot in changes.deleted:
            object_id = snapshot.object_id
            if object_id in self._inserted:
                # Never reached the store; dropping the insert is enough.
                self.discard(self._inserted[object_id])
                applied += 1
                continue
            obj = self._registered.get(object_id)
            if obj is None:
                entity = self._model.entity(snapshot.entity_name)
                if entity is None:
                    continue
                obj = self._instantiate(entity, object_id)
                obj._apply_storage_values(snapshot.values)
                self._registered[object_id] = obj
            self._updated.pop(object_id, None)
            self._deleted[object_id] = obj
            applied += 1
        return applied

    def drop_vanished_updates(self) -> int:
        """Forget pending updates to objects the parent no longer has.

        Each such object is marked deleted and unregistered. Returns how many
        were dropped; a root context has nothing to compare against.
        """

        self._require_lane()
        if self._parent is None or not self._updated:
            return 0
        parent = self._parent
        candidates = list(self._updated)
        vanished = parent.lane.perform_and_wait(
            lambda: [object_id for object_id in candidates if not parent.contains(object_id)]
        )
        for object_id in vanished:
            obj = self._updated.pop(object_id)
            self._registered.pop(object_id, None)
            obj._mark_deleted()
            self._logger.warning(
                "persistor_update_dropped_deleted",
                context=self._name,
                entity=obj.entity_name,
                object_id=object_id,
            )
        return len(vanished)

    def pending_changes(self) -> ChangeSet:
        """Validate pending objects and freeze them into a change set."""

        self._require_lane()
        issues: list[str] = []
        for obj in (*self._inserted.values(), *self._updated.values()):
            issues.extend(obj.entity.validate(obj.values()))
        if issues:
            raise ValidationError(tuple(issues))
        return ChangeSet(
            inserted=tuple(obj.snapshot() for obj in self._inserted.values()),
            updated=tuple(obj.snapshot() for obj in self._updated.values()),
            deleted=tuple(obj.snapshot() for obj in self._deleted.values()),
        )

    def did_commit(self, changes: ChangeSet) -> None:
        """Clear pending state after ``changes`` were committed upstream."""

        self._require_lane()
        for snapshot in changes.deleted:
            obj = self._deleted.pop(snapshot.object_id, None)
            self._registered.pop(snapshot.object_id, None)
            if obj is not None:
                obj._mark_deleted()
        for snapshot in changes.inserted:
            self._inserted.pop(snapshot.object_id, None)
        for snapshot in changes.updated:
            self._updated.pop(snapshot.object_id, None)

    def _object_did_change(self, obj: ManagedObject) -> None:
        self._require_lane()
        object_id = obj.object_id
        if object_id in self._inserted or object_id in self._deleted:
            return
        self._updated[object_id] = obj

    def _source_rows(self, entity_name: str) -> list[ObjectSnapshot]:
        if self._parent is not None:
            return self._parent.lane.perform_and_wait(self._parent.snapshot_rows, entity_name)
        if self._store is not None:
            return self._store.fetch_rows(entity_name)
        return []

    def _register_snapshot(
        self, entity: EntityDescription, snapshot: ObjectSnapshot
    ) -> ManagedObject:
        obj = self._registered.get(snapshot.object_id)
        if obj is None:
            obj = self._instantiate(entity, snapshot.object_id)
            obj._apply_storage_values(snapshot.values)
            self._registered[obj.object_id] = obj
        elif obj.object_id not in self._updated:
            # Unchanged objects pick up values committed since they were loaded.
            obj._apply_storage_values(snapshot.values)
        return obj

    def _instantiate(self, entity: EntityDescription, object_id: str) -> ManagedObject:
        cls = entity.managed_class or ManagedObject
        return cls(entity, object_id, self)

    def _require_lane(self) -> None:
        if not self._lane.is_current():
            raise RuntimeError(
                f"context {self._name!r} may only be used from its own lane ({self._lane.name})"
            )


def _tagged(changes: ChangeSet) -> Iterable[tuple[ObjectSnapshot, bool]]:
    for snapshot in changes.inserted:
        yield snapshot, True
    for snapshot in changes.updated:
        yield snapshot, False


__all__ = ["ObjectContext"]
