"""
In-process commit event bus.

One bus belongs to one facade. ``publish`` calls matching subscribers on the
publishing thread, in the order they subscribed, and keeps the last
``buffer_size`` events for ``replay``. A subscriber exception is captured as
a :class:`DispatchError`, returned to the publisher and kept in a bounded
error log; it never prevents later subscribers from running.
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final, NamedTuple, TypeVar

from persistor.domain.events import CommitEvent, EventType
from persistor.domain.objects import ChangeSet

Subscriber = Callable[[CommitEvent], object]

_ERROR_LOG_SIZE: Final[int] = 1024

_T = TypeVar("_T")


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    target: str
    error_type: str
    message: str


class _Route(NamedTuple):
    event_type: str | None
    callback: Subscriber

    def accepts(self, event: CommitEvent) -> bool:
        return self.event_type is None or self.event_type == event.event_type.value


class EventBus:
    def __init__(self, *, buffer_size: int = 256) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size < 1:
            raise ValueError(f"buffer_size must be a positive integer, got {buffer_size!r}")

        self._history: deque[CommitEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=_ERROR_LOG_SIZE)
        self._routes: dict[int, _Route] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._routes)

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Register ``callback``; ``None`` as ``event_type`` matches every event.

        Returns the token to pass to :meth:`unsubscribe`.
        """

        if not callable(callback):
            raise ValueError("callback must be callable")
        route = _Route(_event_type_key(event_type), callback)
        with self._lock:
            if self._closed:
                raise RuntimeError("event bus is closed")
            token = next(self._tokens)
            self._routes[token] = route
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._routes.pop(token, None) is not None

    def publish(self, event: CommitEvent) -> tuple[DispatchError, ...]:
        if not isinstance(event, CommitEvent):
            raise ValueError(f"expected CommitEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            routes = [route for route in self._routes.values() if route.accepts(event)]

        failures = tuple(_deliver(event, routes))
        if failures:
            with self._lock:
                self._errors.extend(failures)
        return failures

    def emit(
        self, origin: str, changes: ChangeSet
    ) -> tuple[CommitEvent, tuple[DispatchError, ...]]:
        """Build a :class:`CommitEvent` for ``origin`` and publish it."""

        event = CommitEvent(origin=origin, changes=changes)
        return event, self.publish(event)

    def replay(
        self,
        *,
        since: datetime | None = None,
        origin: str | None = None,
        limit: int | None = None,
    ) -> tuple[CommitEvent, ...]:
        """Buffered events, oldest first.

        ``since`` is exclusive and must be timezone-aware. ``limit`` keeps the
        newest matches.
        """

        if since is not None:
            if since.tzinfo is None or since.utcoffset() is None:
                raise ValueError("since datetime must be timezone-aware")
            since = since.astimezone(UTC)
        with self._lock:
            history = list(self._history)

        matches = [
            event
            for event in history
            if (since is None or event.timestamp > since)
            and (origin is None or event.origin == origin)
        ]
        return _newest(matches, limit)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        with self._lock:
            errors = list(self._errors)
        return _newest(errors, limit)

    def close(self) -> None:
        """Drop every subscription and refuse new ones; history stays readable."""

        with self._lock:
            self._closed = True
            self._routes.clear()


def _deliver(event: CommitEvent, routes: Iterable[_Route]) -> Iterable[DispatchError]:
    for route in routes:
        try:
            route.callback(event)
        except Exception as exc:  # noqa: BLE001 - one subscriber must not starve the rest.
            yield DispatchError(
                event_id=event.event_id,
                target=_describe(route.callback),
                error_type=type(exc).__name__,
                message=str(exc),
            )


def _newest(items: list[_T], limit: int | None) -> tuple[_T, ...]:
    if limit is None:
        return tuple(items)
    return tuple(items[-limit:]) if limit > 0 else ()


def _event_type_key(value: str | EventType | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, EventType):
        return value.value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"event type must be a non-empty string or EventType, got {value!r}")
    return value.strip()


def _describe(callback: object) -> str:
    for attribute in ("__qualname__", "__name__"):
        name = getattr(callback, attribute, None)
        if isinstance(name, str) and name:
            return name
    return type(callback).__name__


__all__ = ["DispatchError", "EventBus", "Subscriber"]
