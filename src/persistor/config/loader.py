"""
persistor — runtime config loader.

Layers, lowest to highest:
    built-in defaults < ``persistor.toml`` < ``PERSISTOR_*`` env vars < overrides

The file layer is validated on its own first so a broken file is reported
before anything from the environment is considered. Relative paths are
resolved against the directory holding the config file (or the working
directory when no file was given).
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from persistor.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "persistor.toml"
ENV_PREFIX: Final[str] = "PERSISTOR_"

_FLAG_WORDS: Final[dict[str, bool]] = {
    **dict.fromkeys(("1", "true", "t", "yes", "y", "on"), True),
    **dict.fromkeys(("0", "false", "f", "no", "n", "off"), False),
}


class ConfigLoadError(ValueError):
    """The config file is unreadable or an env var / override key is malformed."""


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config with absolute path fields."""

    explicit = config_path is not None
    source = (
        Path(config_path).expanduser().resolve()
        if explicit
        else Path.cwd().resolve() / DEFAULT_CONFIG_FILE
    )

    effective = assert_valid_config(
        merge_config(default_config(), _file_layer(source, required=explicit))
    )
    effective = merge_config(effective, _env_layer(os.environ if environ is None else environ))
    effective = merge_config(effective, _override_layer(overrides or {}))
    return normalize_paths(assert_valid_config(effective), base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy ``config`` with every path field made absolute against ``base_dir``."""

    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        fields = normalized.get(section)
        if isinstance(fields, dict) and isinstance(fields.get(key), str):
            fields[key] = _absolute(fields[key], base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def env_var_name(section: str, key: str) -> str:
    """``("store", "busy_timeout_ms")`` -> ``PERSISTOR_STORE_BUSY_TIMEOUT_MS``."""

    return f"{ENV_PREFIX}{section.upper()}_{key.upper()}"


def _file_layer(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    # Only scalars that exist in the defaults can be set from the environment;
    # the default's type decides how the raw string is read.
    layer: dict[str, Any] = {}
    for section, fields in DEFAULT_CONFIG.items():
        for key, default in fields.items():
            name = env_var_name(section, key)
            raw = environ.get(name)
            if raw is not None:
                layer.setdefault(section, {})[key] = _coerce(name, raw.strip(), default)
    return layer


def _coerce(name: str, text: str, default: object) -> object:
    if isinstance(default, bool):
        try:
            return _FLAG_WORDS[text.lower()]
        except KeyError:
            raise ConfigLoadError(
                f"{name} must be a boolean (true/false/1/0/yes/no/on/off), got {text!r}"
            ) from None
    if isinstance(default, int):
        try:
            return int(text)
        except ValueError:
            raise ConfigLoadError(f"{name} must be an integer, got {text!r}") from None
    return text


def _override_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted in sorted(overrides):
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid override key {dotted!r}")
        value: object = overrides[dotted]
        for part in reversed(parts[1:]):
            value = {part: value}
        layer = merge_config(layer, {parts[0]: value})
    return layer


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_var_name",
    "load_config",
    "normalize_paths",
]
