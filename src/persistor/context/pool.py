"""The interactive/worker context pair shared by one facade."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from persistor.constants import INTERACTIVE_LANE_NAME, WORKER_LANE_NAME
from persistor.context.managed_context import ObjectContext
from persistor.utils.lanes import Lane

if TYPE_CHECKING:
    from persistor.domain.model import Model
    from persistor.persistence.store import StoreCoordinator


class ContextPool:
    """Owns both lanes and both contexts.

    The interactive context is the root and the only one attached to the
    store. The worker context is its child and never touches the store.
    """

    def __init__(
        self,
        model: Model,
        store: StoreCoordinator | None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._interactive_lane = Lane(INTERACTIVE_LANE_NAME)
        self._worker_lane = Lane(WORKER_LANE_NAME)
        self._interactive = ObjectContext(
            INTERACTIVE_LANE_NAME,
            self._interactive_lane,
            model,
            store=store,
            logger=logger,
        )
        self._worker = ObjectContext(
            WORKER_LANE_NAME,
            self._worker_lane,
            model,
            parent=self._interactive,
            logger=logger,
        )

    @property
    def interactive(self) -> ObjectContext:
        return self._interactive

    @property
    def worker(self) -> ObjectContext:
        return self._worker

    @property
    def contexts(self) -> tuple[ObjectContext, ObjectContext]:
        return (self._interactive, self._worker)

    def close(self) -> None:
        """Drain and stop the worker lane first.

        Worker commands may still call into the interactive lane while draining.
        """

        self._worker_lane.close()
        self._interactive_lane.close()


__all__ = ["ContextPool"]
