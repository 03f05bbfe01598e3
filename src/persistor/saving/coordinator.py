"""
persistor — save coordinator.

Purpose
- Persist a context's pending changes and announce each successful save.

Functional requirements
- A save is always enqueued on the context's own lane, behind every mutation
  submitted before it, and never runs inline.
- A context without pending changes saves nothing and publishes nothing,
  including when every pending change was an update to a deleted row.
- Saving is two stages: the local commit validates and freezes pending
  objects; the upstream commit writes a root context's changes to the store.
  A child context's changes travel to its parent inside the commit event.
- Failures are logged and dropped. The context keeps its pending state and
  the returned future resolves to ``None``.
"""

from __future__ import annotations

from concurrent.futures import Future
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from persistor.context.managed_context import ObjectContext
    from persistor.domain.events import CommitEvent
    from persistor.domain.objects import ChangeSet
    from persistor.observability.events import EventBus


class SaveCoordinator:
    """Schedules saves and publishes commit events on the facade's bus."""

    def __init__(self, bus: EventBus, *, logger: Any | None = None) -> None:
        self._bus = bus
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def bus(self) -> EventBus:
        return self._bus

    def save(self, context: ObjectContext) -> Future[CommitEvent | None]:
        """Enqueue "persist pending changes, if any" on ``context``'s lane."""

        return context.lane.submit(self._save_on_lane, context)

    def _save_on_lane(self, context: ObjectContext) -> CommitEvent | None:
        if not context.has_changes:
            return None

        try:
            changes = self._local_commit(context)
            if changes.is_empty:
                return None
            self._upstream_commit(context, changes)
        except Exception as exc:  # noqa: BLE001 - save failures are logged, never raised.
            self._logger.error(
                "persistor_save_failed",
                context=context.name,
                origin=context.token,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return None

        context.did_commit(changes)
        event, errors = self._bus.emit(context.token, changes)
        for error in errors:
            self._logger.error(
                "persistor_commit_dispatch_failed",
                context=context.name,
                event_id=error.event_id,
                target=error.target,
                error_type=error.error_type,
                error=error.message,
            )
        self._logger.info(
            "persistor_saved",
            context=context.name,
            origin=context.token,
            event_id=event.event_id,
            **changes.summary(),
        )
        return event

    def _local_commit(self, context: ObjectContext) -> ChangeSet:
        # Updates to rows deleted upstream since they were read are discarded
        # here, so they can never resurrect the row.
        context.drop_vanished_updates()
        return context.pending_changes()

    def _upstream_commit(self, context: ObjectContext, changes: ChangeSet) -> None:
        if context.parent is not None:
            return
        if context.store is not None:
            context.store.apply(changes)


__all__ = ["SaveCoordinator"]
