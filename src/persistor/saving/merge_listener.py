"""Propagate commits from other contexts into the interactive context."""

from __future__ import annotations

from concurrent.futures import Future
from typing import TYPE_CHECKING, Any

import structlog

from persistor.domain.events import EventType

if TYPE_CHECKING:
    from persistor.context.managed_context import ObjectContext
    from persistor.domain.events import CommitEvent
    from persistor.observability.events import EventBus
    from persistor.saving.coordinator import SaveCoordinator


class ChangeMergeListener:
    """Merges foreign commit events into the interactive context and saves it.

    The handler runs on the committing lane. It hands the merge to the
    interactive lane and then waits for the interactive save it scheduled,
    so a worker save only completes once the store reflects it. The
    interactive lane itself never waits on another lane.
    """

    def __init__(
        self,
        interactive: ObjectContext,
        save_coordinator: SaveCoordinator,
        bus: EventBus,
        *,
        logger: Any | None = None,
    ) -> None:
        self._interactive = interactive
        self._save_coordinator = save_coordinator
        self._bus = bus
        self._token: int | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def attached(self) -> bool:
        return self._token is not None

    def attach(self) -> None:
        if self._token is not None:
            return
        self._token = self._bus.subscribe(EventType.CONTEXT_DID_SAVE, self.handle)

    def detach(self) -> None:
        if self._token is None:
            return
        self._bus.unsubscribe(self._token)
        self._token = None

    def handle(self, event: CommitEvent) -> None:
        if event.origin == self._interactive.token:
            return
        if self._interactive.lane.is_current():
            # The scheduled save is queued behind this command; waiting here would deadlock.
            self._merge_and_save(event)
            return
        cascade = self._interactive.lane.perform_and_wait(self._merge_and_save, event)
        cascade.result()

    def _merge_and_save(self, event: CommitEvent) -> Future[CommitEvent | None]:
        applied = self._interactive.merge_changes(event.changes)
        self._logger.info(
            "persistor_merge_applied",
            context=self._interactive.name,
            origin=event.origin,
            event_id=event.event_id,
            applied=applied,
        )
        return self._save_coordinator.save(self._interactive)


__all__ = ["ChangeMergeListener"]
