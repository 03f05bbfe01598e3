"""Stable constants shared across persistor components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STORE_SCHEMA_VERSION: Final[int] = 1

# Default runtime locations (relative to the config file unless overridden).
DEFAULT_DATA_DIR: Final[PurePosixPath] = PurePosixPath(".persistor")
DEFAULT_LOG_DIR: Final[PurePosixPath] = PurePosixPath(".persistor/logs")
DEFAULT_MODEL_FILE: Final[str] = "model.yaml"
DEFAULT_STORE_FILE: Final[str] = "persistor.sqlite3"

# Lane names; used for thread names and log fields.
INTERACTIVE_LANE_NAME: Final[str] = "interactive"
WORKER_LANE_NAME: Final[str] = "worker"

# Stable identity prefixes.
OBJECT_ID_PREFIX: Final[str] = "obj"
CONTEXT_ID_PREFIX: Final[str] = "ctx"
LANE_ID_PREFIX: Final[str] = "lane"
EVENT_ID_PREFIX: Final[str] = "evt"
SESSION_ID_PREFIX: Final[str] = "ses"

# Attribute value types understood by the model layer.
ATTRIBUTE_TYPES: Final[tuple[str, ...]] = (
    "string",
    "integer",
    "float",
    "boolean",
    "datetime",
    "json",
)

__all__ = [
    "ATTRIBUTE_TYPES",
    "CONFIG_SCHEMA_VERSION",
    "CONTEXT_ID_PREFIX",
    "DEFAULT_DATA_DIR",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MODEL_FILE",
    "DEFAULT_STORE_FILE",
    "EVENT_ID_PREFIX",
    "INTERACTIVE_LANE_NAME",
    "LANE_ID_PREFIX",
    "OBJECT_ID_PREFIX",
    "SESSION_ID_PREFIX",
    "STORE_SCHEMA_VERSION",
    "WORKER_LANE_NAME",
]
