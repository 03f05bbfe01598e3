"""
persistor — structured logging.

Purpose
- Route every persistor log event, structlog or plain stdlib, into one
  JSON-lines file per session: ``<log_dir>/<session_id>/persistor.jsonl``.

Pipeline
- structlog side (emitting thread): level filter, context variables, logger
  name, level, UTC timestamp, exception rendering, then hand-off to stdlib.
- stdlib side: a non-blocking queue handler (records are dropped and counted
  when the queue is full) feeding a listener thread whose sinks render with
  ``structlog.stdlib.ProcessorFormatter``: session stamp, redaction, JSON.

Functional requirements
- Correlation fields bound with :func:`correlation_scope` are captured on the
  emitting thread, including for plain ``logging`` records.
- Secret-looking keys and inline credentials never reach a sink.
"""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

LogRedactor = Callable[[Any], Any]

_REDACTED: Final[str] = "***REDACTED***"
_SECRET_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Keys owned by the pipeline itself; redaction never rewrites them.
_RESERVED_KEYS: Final[frozenset[str]] = frozenset({"level", "logger", "timestamp", "session_id"})
_TEXT_KEYS: Final[tuple[str, ...]] = ("event", "exception")

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how verbosely one session logs."""

    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = "persistor"
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "persistor.jsonl"
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener renders in-process; keep structlog's event dict intact
        # and capture the emitting thread's context variables for stdlib records.
        if not isinstance(record.msg, dict):
            record.correlation = structlog.contextvars.get_contextvars()
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class StructuredLoggingHandle:
    """Owns the queue, listener and sinks of one logging session."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        log_queue: queue.Queue[logging.LogRecord],
        queue_handler: _DroppingQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def session_log_dir(self) -> Path:
        return self.log_path.parent

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._is_shutdown = True


def configure_structlog() -> None:
    """Send structlog events through stdlib loggers named after the emitting module."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a logging session, replacing any session that is already active."""

    session_id = _non_empty("session_id", config.session_id)
    logger_name = _non_empty("logger_name", config.logger_name)
    filename = _non_empty("log_filename", config.log_filename)
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if isinstance(config.queue_size, bool) or not isinstance(config.queue_size, int):
        raise ValueError("queue_size must be an integer")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    redact = default_log_redactor if config.redactor is None else _chain(config.redactor)
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            _merge_record_correlation,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _SessionStamp(session_id),
            _RedactFields(redact),
            structlog.processors.JSONRenderer(sort_keys=True, ensure_ascii=False),
        ],
    )

    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
    )
    global _active, _atexit_registered
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle if handle is not None else get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Stop ``handle`` (default: the active session) and close its sinks."""

    global _active
    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_correlation_context() -> dict[str, Any]:
    return structlog.contextvars.get_contextvars()


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for the duration of the block; ``None`` unbinds a field."""

    previous = structlog.contextvars.get_contextvars()
    removed = {
        key: previous[key] for key, value in fields.items() if value is None and key in previous
    }
    bound = {
        _non_empty("correlation key", key): _non_empty("correlation value", value)
        for key, value in fields.items()
        if value is not None
    }
    structlog.contextvars.unbind_contextvars(*removed)
    tokens = structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
        structlog.contextvars.bind_contextvars(**removed)


def default_log_redactor(value: Any) -> Any:
    """Mask values under secret-looking keys and credentials embedded in strings."""

    return _redact(value, key=None)


class _SessionStamp:
    def __init__(self, session_id: str) -> None:
        self._session_id = session_id

    def __call__(
        self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("session_id", self._session_id)
        return event_dict


class _RedactFields:
    def __init__(self, redactor: LogRedactor) -> None:
        self._redactor = redactor

    def __call__(
        self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        for key in _TEXT_KEYS:
            if key in event_dict:
                event_dict[key] = self._redactor(str(event_dict[key]))
        fields = {
            key: value
            for key, value in event_dict.items()
            if key not in _RESERVED_KEYS and key not in _TEXT_KEYS
        }
        redacted = self._redactor(fields)
        if isinstance(redacted, Mapping):
            event_dict.update(redacted)
        return event_dict


def _merge_record_correlation(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    record = event_dict.get("_record")
    correlation = getattr(record, "correlation", None)
    if isinstance(correlation, Mapping):
        for key, value in correlation.items():
            event_dict.setdefault(key, value)
    return event_dict


def _chain(redactor: LogRedactor) -> LogRedactor:
    def redact(value: Any) -> Any:
        try:
            value = redactor(value)
        except Exception:  # noqa: BLE001 - a broken custom redactor still gets the default pass.
            pass
        return default_log_redactor(value)

    return redact


def _redact(value: Any, *, key: str | None) -> Any:
    if key is not None and any(term in key.lower() for term in _SECRET_KEY_TERMS):
        return _REDACTED
    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{_REDACTED}", value)
        return _BEARER.sub(f"Bearer {_REDACTED}", masked)
    if isinstance(value, Mapping):
        return {str(k): _redact(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, key=None) for item in value]
    return value


def _non_empty(label: str, value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return resolved


__all__ = [
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_structured_logging",
    "shutdown_logging",
]
