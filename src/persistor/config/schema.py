"""
persistor — configuration schema and validation.

Every section is a flat table of named fields, each paired with a checker
that either returns the normalized value or raises ``_Invalid``. Validation
collects one issue per offending field path and never stops at the first
problem, so a single run reports everything wrong with a config file.
Unknown fields are rejected rather than ignored.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from persistor.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_DATA_DIR,
    DEFAULT_LOG_DIR,
    DEFAULT_MODEL_FILE,
    DEFAULT_STORE_FILE,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

# (section, field) pairs holding filesystem paths.
PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("model", "path"),
    ("paths", "data_dir"),
    ("observability", "log_dir"),
)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class StoreSection(TypedDict):
    file_name: str
    migrate_automatically: bool
    infer_mapping: bool
    busy_timeout_ms: int
    busy_retry_limit: int


class ObservabilitySection(TypedDict):
    log_level: LogLevel
    log_dir: str
    log_to_stdout: bool


class PersistorConfig(TypedDict):
    meta: dict[str, int]
    store: StoreSection
    model: dict[str, str]
    paths: dict[str, str]
    observability: ObservabilitySection
    events: dict[str, int]


DEFAULT_CONFIG: Final[PersistorConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "store": {
        "file_name": DEFAULT_STORE_FILE,
        "migrate_automatically": True,
        "infer_mapping": True,
        "busy_timeout_ms": 5_000,
        "busy_retry_limit": 4,
    },
    "model": {"path": DEFAULT_MODEL_FILE},
    "paths": {"data_dir": DEFAULT_DATA_DIR.as_posix()},
    "observability": {
        "log_level": "INFO",
        "log_dir": DEFAULT_LOG_DIR.as_posix(),
        "log_to_stdout": False,
    },
    "events": {"buffer_size": 256},
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized payload, or ``None`` when ``issues`` is non-empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by :func:`assert_valid_config`; carries every collected issue."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Invalid(Exception):
    pass


def _type_name(value: object) -> str:
    return type(value).__name__


def _text(value: object) -> str:
    if not isinstance(value, str):
        raise _Invalid(f"expected string, got {_type_name(value)}")
    text = value.strip()
    if not text:
        raise _Invalid("must not be empty")
    return text


def _path_text(value: object) -> str:
    text = _text(value)
    if "\x00" in text:
        raise _Invalid("must not contain NUL bytes")
    return text


def _bare_file_name(value: object) -> str:
    text = _text(value)
    if "/" in text or "\\" in text:
        raise _Invalid("must be a bare file name")
    return text


def _flag(value: object) -> bool:
    if not isinstance(value, bool):
        raise _Invalid(f"expected boolean, got {_type_name(value)}")
    return value


def _integer(minimum: int) -> Callable[[object], int]:
    def check(value: object) -> int:
        # bool is an int subclass; TOML ``true`` must not pass as 1.
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Invalid(f"expected integer, got {_type_name(value)}")
        if value < minimum:
            raise _Invalid(f"must be >= {minimum}")
        return value

    return check


def _one_of(*choices: str) -> Callable[[object], str]:
    def check(value: object) -> str:
        text = _text(value)
        if text not in choices:
            raise _Invalid(
                f"invalid value {text!r}; expected one of: {', '.join(sorted(choices))}"
            )
        return text

    return check


def _schema_version(value: object) -> int:
    version = _integer(1)(value)
    if version != ConfigSchemaVersion:
        raise _Invalid(migration_guidance(version))
    return version


_SECTIONS: Final[dict[str, dict[str, Callable[[object], object]]]] = {
    "meta": {"schema_version": _schema_version},
    "store": {
        "file_name": _bare_file_name,
        "migrate_automatically": _flag,
        "infer_mapping": _flag,
        "busy_timeout_ms": _integer(0),
        "busy_retry_limit": _integer(0),
    },
    "model": {"path": _path_text},
    "paths": {"data_dir": _path_text},
    "observability": {
        "log_level": _one_of("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        "log_dir": _path_text,
        "log_to_stdout": _flag,
    },
    "events": {"buffer_size": _integer(1)},
}


def default_config() -> PersistorConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Explain how to resolve a ``meta.schema_version`` mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade persistor.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the persistor package"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""

    merged = {key: _detached(value) for key, value in base.items()}
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _detached(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues: list[ConfigValidationIssue] = []
    normalized = _check_table(config, "", _SECTIONS, issues)
    if issues or normalized is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _check_table(
    payload: object,
    path: str,
    rules: Mapping[str, Any],
    issues: list[ConfigValidationIssue],
) -> dict[str, Any] | None:
    """Check one table level; nested dicts in ``rules`` are sub-tables."""

    where = path or "<root>"
    if not isinstance(payload, Mapping):
        issues.append(ConfigValidationIssue(where, f"expected object, got {_type_name(payload)}"))
        return None

    present: dict[str, object] = {}
    for key, value in payload.items():
        if isinstance(key, str):
            present[key] = value
        else:
            issues.append(
                ConfigValidationIssue(where, f"object key must be string, got {_type_name(key)}")
            )

    out: dict[str, Any] = {}
    for key in sorted(present.keys() | rules.keys()):
        field_path = f"{path}.{key}" if path else key
        rule = rules.get(key)
        if rule is None:
            issues.append(ConfigValidationIssue(field_path, "unknown field"))
        elif key not in present:
            issues.append(ConfigValidationIssue(field_path, "missing required field"))
        elif isinstance(rule, Mapping):
            section = _check_table(present[key], field_path, rule, issues)
            if section is not None:
                out[key] = section
        else:
            try:
                out[key] = rule(present[key])
            except _Invalid as exc:
                issues.append(ConfigValidationIssue(field_path, str(exc)))
    return out


def _detached(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _detached(item) for key, item in value.items()}
    return copy.deepcopy(value)


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "PersistorConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
