"""Choose the context a caller should use from the lane it is running on."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from persistor.context.managed_context import ObjectContext
    from persistor.utils.lanes import Lane


class LaneRouter:
    """Interactive lane → interactive context; anything else → worker context."""

    def __init__(self, interactive: ObjectContext, worker: ObjectContext) -> None:
        self._interactive = interactive
        self._worker = worker

    def route(self, calling_lane: Lane | None) -> ObjectContext:
        if calling_lane is not None and calling_lane.token == self._interactive.lane.token:
            return self._interactive
        return self._worker


__all__ = ["LaneRouter"]
