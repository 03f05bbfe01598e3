"""Serial command lanes: one daemon thread draining a FIFO queue of callables."""

from __future__ import annotations

import asyncio
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from persistor.domain import ids
from persistor.errors import LaneClosedError

if TYPE_CHECKING:
    from collections.abc import Callable

T = TypeVar("T")

_local = threading.local()


@dataclass(frozen=True, slots=True)
class _Command(Generic[T]):
    future: Future[T]
    fn: Callable[..., T]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]


class Lane:
    """Ordered command queue bound to a dedicated thread.

    Commands run one at a time in submission order. ``perform_and_wait``
    called from the lane's own thread runs inline instead of queueing, so
    commands may call back into their own lane without deadlocking.
    """

    def __init__(self, name: str, *, token: str | None = None) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("lane name must be a non-empty string")
        self._name = name
        self._token = token if token is not None else ids.generate_lane_id()
        self._queue: queue.SimpleQueue[_Command[Any] | None] = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name=f"persistor-{name}", daemon=True
        )
        self._thread.start()

    @property
    def name(self) -> str:
        return self._name

    @property
    def token(self) -> str:
        return self._token

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> Future[T]:
        """Enqueue ``fn`` behind every earlier command and return its future."""

        if not callable(fn):
            raise ValueError("lane commands must be callable")
        future: Future[T] = Future()
        with self._lock:
            if self._closed:
                raise LaneClosedError(f"lane {self._name!r} is closed")
            self._queue.put(_Command(future, fn, args, kwargs))
        return future

    def perform_and_wait(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` on this lane and return its result, re-raising its exception."""

        if self.is_current():
            return fn(*args, **kwargs)
        return self.submit(fn, *args, **kwargs).result()

    def is_current(self) -> bool:
        return getattr(_local, "lane", None) is self

    def close(self, *, wait: bool = True) -> None:
        """Stop accepting commands; queued commands still run before the thread exits."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(None)
        if wait and not self.is_current():
            self._thread.join()

    def __repr__(self) -> str:
        return f"<Lane {self._name} {self._token}>"

    def _run(self) -> None:
        _local.lane = self
        while True:
            command = self._queue.get()
            if command is None:
                return
            self._execute(command)
            # An idle lane must not keep the last command or its result alive.
            del command

    @staticmethod
    def _execute(command: _Command[Any]) -> None:
        if not command.future.set_running_or_notify_cancel():
            return
        try:
            result = command.fn(*command.args, **command.kwargs)
        except BaseException as exc:  # noqa: BLE001 - delivered through the future.
            command.future.set_exception(exc)
        else:
            command.future.set_result(result)


def current_lane() -> Lane | None:
    """Return the lane executing on this thread, or ``None`` on a plain thread."""

    return getattr(_local, "lane", None)


async def wait_for(future: Future[T]) -> T:
    """Await a lane future from asyncio code without blocking the event loop."""

    return await asyncio.wrap_future(future)


__all__ = ["Lane", "current_lane", "wait_for"]
