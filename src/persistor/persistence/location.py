"""
persistor — store location resolution.

Purpose
- Map a bare store file name to a path inside the application data directory.

Functional requirements
- Names containing path separators or parent references are rejected, so a
  resolved location never escapes the data directory.
- The data directory is created on first resolution.
"""

from __future__ import annotations

import os
from pathlib import Path

PathLike = str | os.PathLike[str]


class LocationResolver:
    """Resolves store file names under ``base_dir``."""

    def __init__(self, base_dir: PathLike) -> None:
        self._base_dir = Path(base_dir).expanduser()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def resolve(self, file_name: str) -> Path:
        if not isinstance(file_name, str) or not file_name.strip():
            raise ValueError("store file name must be a non-empty string")
        if file_name in {".", ".."}:
            raise ValueError(f"store file name must name a file, got {file_name!r}")
        separators = {"/", "\\", os.sep}
        if os.altsep:
            separators.add(os.altsep)
        if any(separator in file_name for separator in separators):
            raise ValueError(f"store file name must not contain path separators: {file_name!r}")

        self._base_dir.mkdir(parents=True, exist_ok=True)
        return self._base_dir.resolve() / file_name


__all__ = ["LocationResolver"]
