"""
persistor — object lifecycle facade.

Purpose
- Give any thread one entry point to create, fetch and delete managed objects
  while writes stay serialized and committed changes reach the interactive
  context and the store.

Routing
- Code running on the interactive lane uses the interactive context.
  Everything else (plain threads, asyncio code, the worker lane) uses the
  worker context, whose saves are merged into the interactive context and
  written to the store before the worker save completes.

Functional requirements
- ``create`` is synchronous. Fetches and deletes return futures and never
  raise across the lane boundary: failures are logged and surface as ``None``.
- Initialization failures (model or store) are logged at critical level and
  re-raised; there is no degraded mode.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from concurrent.futures import Future
from pathlib import Path
from types import TracebackType
from typing import Any, TypeVar

import structlog

from persistor.context.managed_context import ObjectContext
from persistor.context.pool import ContextPool
from persistor.context.router import LaneRouter
from persistor.domain import ids
from persistor.domain.events import CommitEvent
from persistor.domain.model import Model
from persistor.domain.objects import ManagedObject
from persistor.domain.query import FetchRequest, Predicate
from persistor.errors import SchemaLoadError
from persistor.observability.events import EventBus
from persistor.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    setup_structured_logging,
    shutdown_logging,
)
from persistor.persistence.location import LocationResolver
from persistor.persistence.store import StoreCoordinator, StoreOptions
from persistor.saving.coordinator import SaveCoordinator
from persistor.saving.merge_listener import ChangeMergeListener
from persistor.schema.provider import load_model
from persistor.utils.lanes import current_lane, wait_for

T = TypeVar("T", bound=ManagedObject)
R = TypeVar("R")

Completion = Callable[[Any], object]


class Persistor:
    """Concurrency-safe persistence facade over one store file."""

    def __init__(
        self,
        model: Model | str | Path,
        store_location: str | Path,
        *,
        options: StoreOptions | None = None,
        event_buffer_size: int = 256,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._session_id = ids.generate_session_id()
        self._logging_handle: StructuredLoggingHandle | None = None
        self._closed = False

        if isinstance(model, Model):
            self._model = model
        else:
            try:
                self._model = load_model(model)
            except SchemaLoadError as exc:
                self._logger.critical(
                    "persistor_schema_load_failed", location=str(model), error=str(exc)
                )
                raise

        self._store = StoreCoordinator.open(self._model, store_location, options, logger=logger)
        self._bus = EventBus(buffer_size=event_buffer_size)
        self._pool = ContextPool(self._model, self._store, logger=logger)
        self._router = LaneRouter(self._pool.interactive, self._pool.worker)
        self._save_coordinator = SaveCoordinator(self._bus, logger=logger)
        self._merge_listener = ChangeMergeListener(
            self._pool.interactive, self._save_coordinator, self._bus, logger=logger
        )
        self._merge_listener.attach()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        configure_logging: bool = False,
        logger: Any | None = None,
    ) -> Persistor:
        """Build a facade from a config loaded by :func:`persistor.config.load_config`."""

        store_cfg = config["store"]
        observability = config["observability"]
        handle: StructuredLoggingHandle | None = None
        session_id = ids.generate_session_id()
        if configure_logging:
            handle = setup_structured_logging(
                LoggingConfig(
                    session_id=session_id,
                    base_log_dir=observability["log_dir"],
                    level=observability["log_level"],
                    log_to_stdout=observability["log_to_stdout"],
                )
            )

        location = LocationResolver(config["paths"]["data_dir"]).resolve(store_cfg["file_name"])
        options = StoreOptions(
            migrate_automatically=store_cfg["migrate_automatically"],
            infer_mapping=store_cfg["infer_mapping"],
            busy_timeout_ms=store_cfg["busy_timeout_ms"],
            busy_retry_limit=store_cfg["busy_retry_limit"],
        )
        try:
            persistor = cls(
                config["model"]["path"],
                location,
                options=options,
                event_buffer_size=config["events"]["buffer_size"],
                logger=logger,
            )
        except Exception:
            if handle is not None:
                shutdown_logging(handle)
            raise
        persistor._session_id = session_id
        persistor._logging_handle = handle
        return persistor

    @property
    def model(self) -> Model:
        return self._model

    @property
    def store(self) -> StoreCoordinator:
        return self._store

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def interactive_context(self) -> ObjectContext:
        return self._pool.interactive

    @property
    def worker_context(self) -> ObjectContext:
        return self._pool.worker

    @property
    def closed(self) -> bool:
        return self._closed

    def context_for_current_lane(self) -> ObjectContext:
        return self._router.route(current_lane())

    # ------------------------
    # Object lifecycle
    # ------------------------

    def create(
        self,
        entity_name: str,
        configure: Callable[[T], object],
        *,
        as_type: type[T] = ManagedObject,  # type: ignore[assignment]
    ) -> T | None:
        """Insert, configure and save a new object.

        Returns ``None`` for unknown entities or a type mismatch.

        Blocks until the object is configured and, unless called from the
        routed context's own lane, until its save has finished.
        """

        context = self.context_for_current_lane()

        def command() -> tuple[T, Future[CommitEvent | None]] | None:
            obj = context.insert(entity_name)
            if obj is None:
                self._logger.warning(
                    "persistor_unknown_entity", operation="create", entity=entity_name
                )
                return None
            if not isinstance(obj, as_type):
                context.discard(obj)
                self._logger.warning(
                    "persistor_type_mismatch",
                    operation="create",
                    entity=entity_name,
                    expected=as_type.__name__,
                    actual=type(obj).__name__,
                )
                return None
            try:
                configure(obj)
            except Exception:
                context.discard(obj)
                raise
            return obj, self._save_coordinator.save(context)

        outcome = context.lane.perform_and_wait(command)
        if outcome is None:
            return None
        obj, saved = outcome
        if not context.lane.is_current():
            saved.result()
        return obj

    def fetch_all(
        self,
        entity_name: str,
        completion: Callable[[list[T] | None], object] | None = None,
        *,
        as_type: type[T] = ManagedObject,  # type: ignore[assignment]
    ) -> Future[list[T] | None]:
        """Fetch every object of ``entity_name`` in store order."""

        context = self.context_for_current_lane()
        return context.lane.submit(
            self._fetch_command, context, entity_name, None, as_type, completion, False
        )

    def fetch_one(
        self,
        entity_name: str,
        predicate: Predicate | None,
        completion: Callable[[T | None], object] | None = None,
        *,
        as_type: type[T] = ManagedObject,  # type: ignore[assignment]
    ) -> Future[T | None]:
        """Fetch the first object of ``entity_name`` matching ``predicate``."""

        context = self.context_for_current_lane()
        return context.lane.submit(
            self._fetch_command, context, entity_name, predicate, as_type, completion, True
        )

    def delete_all(self, entity_name: str) -> Future[None]:
        """Delete every object of ``entity_name``; resolves once the deletion is saved."""

        context = self.context_for_current_lane()
        context.lane.submit(self._delete_command, context, entity_name)
        return _map_future(self._save_coordinator.save(context), lambda _: None)

    async def fetch_all_async(
        self,
        entity_name: str,
        *,
        as_type: type[T] = ManagedObject,  # type: ignore[assignment]
    ) -> list[T] | None:
        return await wait_for(self.fetch_all(entity_name, as_type=as_type))

    async def fetch_one_async(
        self,
        entity_name: str,
        predicate: Predicate | None,
        *,
        as_type: type[T] = ManagedObject,  # type: ignore[assignment]
    ) -> T | None:
        return await wait_for(self.fetch_one(entity_name, predicate, as_type=as_type))

    async def delete_all_async(self, entity_name: str) -> None:
        await wait_for(self.delete_all(entity_name))

    def save(self) -> Future[CommitEvent | None]:
        """Save the routed context's pending changes."""

        return self._save_coordinator.save(self.context_for_current_lane())

    def perform_interactive(self, fn: Callable[[], R]) -> R:
        """Run ``fn`` on the interactive lane and return its result."""

        return self._pool.interactive.lane.perform_and_wait(fn)

    # ------------------------
    # Lifecycle
    # ------------------------

    def close(self) -> None:
        """Drain both lanes and release the store; idempotent."""

        if self._closed:
            return
        self._closed = True
        self._pool.close()
        self._merge_listener.detach()
        self._bus.close()
        self._store.close()
        if self._logging_handle is not None:
            shutdown_logging(self._logging_handle)
            self._logging_handle = None

    def __enter__(self) -> Persistor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------
    # Lane commands
    # ------------------------

    def _fetch_command(
        self,
        context: ObjectContext,
        entity_name: str,
        predicate: Predicate | None,
        as_type: type[ManagedObject],
        completion: Completion | None,
        single: bool,
    ) -> Any:
        result: Any
        try:
            request = FetchRequest(entity_name, predicate, 1 if single else None)
            objects = context.fetch(request)
        except Exception as exc:  # noqa: BLE001 - query failures are delivered as None.
            self._logger.error(
                "persistor_fetch_failed",
                context=context.name,
                entity=entity_name,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            result = None
        else:
            if not all(isinstance(obj, as_type) for obj in objects):
                result = None
            elif single:
                result = objects[0] if objects else None
            else:
                result = objects

        if completion is not None:
            try:
                completion(result)
            except Exception as exc:  # noqa: BLE001 - caller callbacks must not break the lane.
                self._logger.error(
                    "persistor_completion_failed",
                    context=context.name,
                    entity=entity_name,
                    error_type=exc.__class__.__name__,
                    error=str(exc),
                )
        return result

    def _delete_command(self, context: ObjectContext, entity_name: str) -> None:
        try:
            objects = context.fetch(FetchRequest(entity_name))
        except Exception as exc:  # noqa: BLE001 - delete failures are logged only.
            self._logger.error(
                "persistor_delete_failed",
                context=context.name,
                entity=entity_name,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return
        for obj in objects:
            context.delete(obj)


def _map_future(source: Future[Any], transform: Callable[[Any], R]) -> Future[R]:
    target: Future[R] = Future()

    def _relay(done: Future[Any]) -> None:
        if done.cancelled():
            target.cancel()
            return
        error = done.exception()
        if error is not None:
            target.set_exception(error)
            return
        target.set_result(transform(done.result()))

    source.add_done_callback(_relay)
    return target


__all__ = ["Persistor"]
