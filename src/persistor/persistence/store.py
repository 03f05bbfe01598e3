"""
persistor — SQLite store coordinator.

The coordinator owns the physical store file. It applies layout migrations,
reconciles the stored model with the loaded one, writes change sets
atomically and reads rows back in insertion order.

Tables
    objects         one row per managed object: entity, id and the canonical
                    JSON payload. ``seq`` is the store-defined fetch order.
    store_metadata  fingerprint and description of the model the file was
                    last opened with. A mismatch triggers lightweight
                    migration when the options allow it.
    schema_versions applied layout migrations with their checksums.

Connections are opened per operation. Every statement goes through one
retry helper that backs off on SQLITE_BUSY and maps the remaining sqlite3
errors onto the :mod:`persistor.errors` hierarchy.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import closing, contextmanager
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, NamedTuple, TypeVar

import structlog

from persistor.constants import STORE_SCHEMA_VERSION
from persistor.domain.model import AttributeDescription, JSONValue, Model
from persistor.domain.objects import ChangeSet, ObjectSnapshot
from persistor.errors import (
    StoreBusyError,
    StoreCorruptionError,
    StoreError,
    StoreMigrationError,
    StoreOpenError,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]

_R = TypeVar("_R")

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_MODEL_FINGERPRINT_KEY: Final[str] = "model_fingerprint"
_MODEL_DESCRIPTION_KEY: Final[str] = "model_description"

_VERSIONS_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""


class _Migration(NamedTuple):
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        # Whitespace-insensitive so reformatting the DDL does not invalidate stores.
        body = "\n;\n".join(" ".join(statement.split()) for statement in self.statements)
        return hashlib.sha256(f"{self.version}:{self.name}\n{body}".encode()).hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        1,
        "initial_object_store",
        (
            _VERSIONS_DDL,
            """
            CREATE TABLE IF NOT EXISTS store_metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS objects (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entity TEXT NOT NULL,
                id TEXT NOT NULL UNIQUE,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_objects_entity_seq ON objects(entity, seq)",
        ),
    ),
)


def _sqlite_codes(*names: str) -> frozenset[int]:
    codes = (getattr(sqlite3, name, None) for name in names)
    return frozenset(code for code in codes if isinstance(code, int))


# Checked in order: corruption wins over busy when both could match.
_ERROR_KINDS: Final[tuple[tuple[type[StoreError], frozenset[int], tuple[str, ...]], ...]] = (
    (
        StoreCorruptionError,
        _sqlite_codes("SQLITE_CORRUPT", "SQLITE_NOTADB"),
        ("database disk image is malformed", "malformed database", "file is not a database"),
    ),
    (
        StoreBusyError,
        _sqlite_codes(
            "SQLITE_BUSY",
            "SQLITE_BUSY_RECOVERY",
            "SQLITE_BUSY_SNAPSHOT",
            "SQLITE_LOCKED",
            "SQLITE_LOCKED_SHAREDCACHE",
        ),
        ("database is locked", "database table is locked", "database schema is locked"),
    ),
)


def classify_sqlite_error(exc: sqlite3.Error) -> type[StoreError]:
    """Map a sqlite3 error onto the store error it should surface as."""

    code = getattr(exc, "sqlite_errorcode", None)
    message = str(exc).lower()
    for kind, codes, fragments in _ERROR_KINDS:
        if code in codes or any(fragment in message for fragment in fragments):
            return kind
    return StoreError


@dataclass(frozen=True, slots=True)
class StoreOptions:
    """Switches for adding a store; the first two control lightweight migration."""

    migrate_automatically: bool = True
    infer_mapping: bool = True
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT
    busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS

    def __post_init__(self) -> None:
        for option in fields(self):
            value = getattr(self, option.name)
            if option.type == "int" and value < 0:
                raise ValueError(f"{option.name} must be >= 0")

    @property
    def timeout_seconds(self) -> float:
        return self.busy_timeout_ms / 1000.0

    def backoff_seconds(self, attempt: int) -> float:
        return self.busy_retry_backoff_ms / 1000.0 * 2**attempt


class StoreCoordinator:
    """Physical store for one model; reached only through the interactive context."""

    def __init__(self, model: Model, *, logger: Any | None = None) -> None:
        if not isinstance(model, Model):
            raise TypeError(f"model must be a Model, got {type(model).__name__}")
        self._model = model
        self._path: Path | None = None
        self._options = StoreOptions()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def open(
        cls,
        model: Model,
        location: str | Path,
        options: StoreOptions | None = None,
        *,
        logger: Any | None = None,
    ) -> StoreCoordinator:
        """Construct a coordinator and add the store at ``location``."""

        coordinator = cls(model, logger=logger)
        coordinator.add_store(location, options)
        return coordinator

    @property
    def model(self) -> Model:
        return self._model

    @property
    def path(self) -> Path:
        if self._path is None:
            raise StoreError("no store has been added to this coordinator")
        return self._path

    @property
    def is_open(self) -> bool:
        return self._path is not None

    def add_store(self, location: str | Path, options: StoreOptions | None = None) -> Path:
        """Open (creating if needed) the store file and reconcile it with the model."""

        if self._path is not None:
            raise StoreOpenError(f"a store is already open at {self._path}")
        resolved_options = options if options is not None else StoreOptions()
        path = Path(location).expanduser()
        self._options = resolved_options
        self._path = path

        try:
            self._migrate_layout()
            migrated = self._reconcile_model()
        except (StoreError, sqlite3.Error, OSError, ValueError) as exc:
            self._path = None
            self._logger.critical(
                "persistor_store_open_failed",
                location=str(path),
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            raise StoreOpenError(f"unable to open store at {path}: {exc}") from exc

        self._logger.info(
            "persistor_store_opened",
            location=str(path),
            model_fingerprint=self._model.fingerprint(),
            migrated=migrated,
        )
        return path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        with closing(self._connect()) as conn:
            yield conn

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside one immediate transaction."""

        if conn is None:
            with self.connection() as owned_conn, self.transaction(conn=owned_conn) as tx:
                yield tx
            return

        self._execute(conn, "BEGIN IMMEDIATE", operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute(conn, "ROLLBACK", operation="rollback transaction")
            raise
        else:
            self._execute(conn, "COMMIT", operation="commit transaction")

    def fetch_rows(self, entity_name: str) -> list[ObjectSnapshot]:
        """Return stored records of ``entity_name`` in insertion order."""

        with self.connection() as conn:
            cursor = self._execute(
                conn,
                "SELECT id, payload_json FROM objects WHERE entity = ? ORDER BY seq ASC",
                (entity_name,),
                operation=f"fetch {entity_name}",
            )
            rows = cursor.fetchall()
        return [
            ObjectSnapshot(entity_name, str(row["id"]), _decode_payload(row["payload_json"]))
            for row in rows
        ]

    def exists(self, object_id: str) -> bool:
        with self.connection() as conn:
            row = self._execute(
                conn,
                "SELECT 1 FROM objects WHERE id = ? LIMIT 1",
                (object_id,),
                operation="look up object",
            ).fetchone()
        return row is not None

    def count(self, entity_name: str) -> int:
        with self.connection() as conn:
            row = self._execute(
                conn,
                "SELECT COUNT(*) AS total FROM objects WHERE entity = ?",
                (entity_name,),
                operation=f"count {entity_name}",
            ).fetchone()
        return 0 if row is None else int(row["total"])

    def apply(self, changes: ChangeSet) -> None:
        """Write ``changes`` in one transaction.

        Inserts are upserted. Updates only touch rows that still exist, so a
        stale update to a deleted row is a no-op.
        """

        if changes.is_empty:
            return
        now = _utc_now_iso()
        upserts = [
            (
                snapshot.entity_name,
                snapshot.object_id,
                canonical_json(dict(snapshot.values)),
                now,
                now,
            )
            for snapshot in changes.inserted
        ]
        updates = [
            (canonical_json(dict(snapshot.values)), now, snapshot.entity_name, snapshot.object_id)
            for snapshot in changes.updated
        ]
        deletes = [(snapshot.entity_name, snapshot.object_id) for snapshot in changes.deleted]

        with self.transaction() as tx:
            if upserts:
                self._executemany(
                    tx,
                    """
                    INSERT INTO objects (entity, id, payload_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        payload_json=excluded.payload_json,
                        updated_at=excluded.updated_at
                    """,
                    upserts,
                    operation="upsert objects",
                )
            if updates:
                self._executemany(
                    tx,
                    "UPDATE objects SET payload_json = ?, updated_at = ? "
                    "WHERE entity = ? AND id = ?",
                    updates,
                    operation="update objects",
                )
            if deletes:
                self._executemany(
                    tx,
                    "DELETE FROM objects WHERE entity = ? AND id = ?",
                    deletes,
                    operation="delete objects",
                )

    def schema_version(self) -> int:
        with self.connection() as conn:
            row = self._execute(
                conn,
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
                (),
                operation="read schema version",
            ).fetchone()
        return 0 if row is None else int(row["version"])

    def stored_model_fingerprint(self) -> str | None:
        with self.connection() as conn:
            return self._read_metadata(conn, _MODEL_FINGERPRINT_KEY)

    def backup(self, destination: str | Path) -> Path:
        """Copy the live store to ``destination`` through SQLite's online backup."""

        target_path = Path(destination).expanduser()
        target_path.parent.mkdir(parents=True, exist_ok=True)
        target = sqlite3.connect(target_path, timeout=self._options.timeout_seconds)
        with closing(target), self.connection() as source:
            source.backup(target)
            target.execute("PRAGMA journal_mode=WAL")
        return target_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """SQLite's integrity report, at most ``max_errors`` lines; ``()`` when healthy."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        with self.connection() as conn:
            rows = self._execute(
                conn, f"PRAGMA integrity_check({max_errors})", operation="integrity check"
            ).fetchall()
        report = tuple(str(row[0]) for row in rows)
        return () if report == ("ok",) else report

    def close(self) -> None:
        """Forget the store location; connections are short-lived."""

        self._path = None

    # ------------------------
    # Opening and migrations
    # ------------------------

    def _connect(self) -> sqlite3.Connection:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            path,
            timeout=self._options.timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            self._execute(conn, "PRAGMA foreign_keys=ON", operation="configure")
            self._execute(
                conn, f"PRAGMA busy_timeout={self._options.busy_timeout_ms}", operation="configure"
            )
            row = self._execute(conn, "PRAGMA journal_mode=WAL", operation="configure").fetchone()
            mode = "" if row is None else str(row[0]).lower()
            if mode != "wal":
                raise StoreError(f"journal_mode must be WAL, got {mode or None!r}")
        except BaseException:
            conn.close()
            raise
        return conn

    def _migrate_layout(self) -> int:
        with self.connection() as conn:
            self._execute(conn, _VERSIONS_DDL, operation="create schema_versions table")
            applied = {
                int(row["version"]): str(row["checksum"])
                for row in self._execute(
                    conn,
                    "SELECT version, checksum FROM schema_versions",
                    operation="load schema_versions",
                ).fetchall()
            }
            newest = max(applied, default=0)
            if newest > STORE_SCHEMA_VERSION:
                raise StoreMigrationError(
                    "store layout is newer than supported by this release "
                    f"(store={newest}, code={STORE_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version in applied:
                    if applied[migration.version] != migration.checksum:
                        raise StoreMigrationError(
                            f"layout migration {migration.version} ({migration.name}) "
                            "was changed after it was applied to this store"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    step = f"apply migration {migration.version}"
                    for statement in migration.statements:
                        self._execute(tx, statement, operation=step)
                    self._execute(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=step,
                    )
            return STORE_SCHEMA_VERSION

    def _reconcile_model(self) -> bool:
        """Bring stored records in line with the model; ``True`` when rows were migrated."""

        fingerprint = self._model.fingerprint()
        description = canonical_json(self._model.describe())

        with self.connection() as conn:
            stored_fingerprint = self._read_metadata(conn, _MODEL_FINGERPRINT_KEY)
            if stored_fingerprint == fingerprint:
                return False

            migrating = stored_fingerprint is not None
            if migrating:
                for enabled, switch in (
                    (self._options.migrate_automatically, "automatic migration"),
                    (self._options.infer_mapping, "mapping inference"),
                ):
                    if not enabled:
                        raise StoreMigrationError(
                            f"store was created with a different model and {switch} is disabled"
                        )
                previous = _decode_payload(
                    self._read_metadata(conn, _MODEL_DESCRIPTION_KEY) or "{}"
                )

            with self.transaction(conn=conn) as tx:
                if migrating:
                    self._infer_and_apply_mapping(tx, previous)
                self._write_metadata(tx, _MODEL_FINGERPRINT_KEY, fingerprint)
                self._write_metadata(tx, _MODEL_DESCRIPTION_KEY, description)
        return migrating

    def _infer_and_apply_mapping(
        self, conn: sqlite3.Connection, stored_description: Mapping[str, JSONValue]
    ) -> None:
        dropped = [(name,) for name in sorted(stored_description) if name not in self._model]
        if dropped:
            self._executemany(
                conn, "DELETE FROM objects WHERE entity = ?", dropped, operation="drop entities"
            )

        for entity in self._model:
            previous = stored_description.get(entity.name)
            if not isinstance(previous, Mapping) or previous == entity.describe():
                continue
            rows = self._execute(
                conn,
                "SELECT id, payload_json FROM objects WHERE entity = ? ORDER BY seq ASC",
                (entity.name,),
                operation=f"load {entity.name} for migration",
            ).fetchall()
            now = _utc_now_iso()
            remapped = []
            for row in rows:
                old_values = _decode_payload(row["payload_json"])
                new_values = {
                    attribute.name: _map_value(entity.name, attribute, old_values, previous)
                    for attribute in entity.attributes
                }
                remapped.append((canonical_json(new_values), now, row["id"]))
            self._executemany(
                conn,
                "UPDATE objects SET payload_json = ?, updated_at = ? WHERE id = ?",
                remapped,
                operation=f"migrate {entity.name}",
            )

    def _read_metadata(self, conn: sqlite3.Connection, key: str) -> str | None:
        row = self._execute(
            conn,
            "SELECT value FROM store_metadata WHERE key = ?",
            (key,),
            operation="read store metadata",
        ).fetchone()
        return None if row is None else str(row["value"])

    def _write_metadata(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        self._execute(
            conn,
            "INSERT INTO store_metadata (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
            (key, value, _utc_now_iso()),
            operation="write store metadata",
        )

    # ------------------------
    # Retry and error mapping
    # ------------------------

    def _execute(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams = (),
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        return self._retrying(operation, lambda: conn.execute(sql, tuple(params)))

    def _executemany(
        self,
        conn: sqlite3.Connection,
        sql: str,
        rows: Sequence[SQLParams],
        *,
        operation: str,
    ) -> int:
        return self._retrying(operation, lambda: conn.executemany(sql, rows).rowcount)

    def _retrying(self, operation: str, call: Callable[[], _R]) -> _R:
        attempts = self._options.busy_retry_limit + 1
        for attempt in range(attempts):
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                kind = classify_sqlite_error(exc)
                if kind is StoreBusyError and attempt + 1 < attempts:
                    time.sleep(self._options.backoff_seconds(attempt))
                    continue
                raise kind(self._describe_failure(kind, operation, exc, attempts)) from exc
        raise StoreBusyError(f"{operation}: no attempts were made")

    def _describe_failure(
        self, kind: type[StoreError], operation: str, exc: sqlite3.Error, attempts: int
    ) -> str:
        where = f"{operation} failed for {self._path}"
        if kind is StoreCorruptionError:
            return (
                f"{where}: {exc}. Run `StoreCoordinator.integrity_check()` "
                "and restore from a backup if needed."
            )
        if kind is StoreBusyError:
            return f"{where} after {attempts} attempt(s) while the database was busy: {exc}"
        return f"{where}: {exc}"


def _map_value(
    entity_name: str,
    attribute: AttributeDescription,
    old_values: Mapping[str, JSONValue],
    previous: Mapping[str, JSONValue],
) -> JSONValue:
    value: JSONValue = None
    if attribute.name in previous and attribute.name in old_values:
        try:
            value = attribute.to_storage(attribute.coerce(old_values[attribute.name]))
        except TypeError:
            value = None
    if value is None:
        value = attribute.default
    if value is None and not attribute.optional:
        raise StoreMigrationError(
            f"cannot infer a value for required attribute {entity_name}.{attribute.name}"
        )
    return value


def _decode_payload(raw: object) -> dict[str, JSONValue]:
    if not isinstance(raw, str):
        raise StoreError(f"stored payload must be text, got {type(raw).__name__}")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StoreCorruptionError(f"stored payload is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise StoreCorruptionError("stored payload must be a JSON object")
    return parsed


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persisted payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "SQLParams",
    "SQLValue",
    "StoreCoordinator",
    "StoreOptions",
    "canonical_json",
    "classify_sqlite_error",
]
