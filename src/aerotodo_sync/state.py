"""Settings collaborator backing the engine's durable state.

The engine persists three things: the OAuth credential bundle, the sync
policy with connection status, and the SyncLink table.  All of them live
in one settings document so a disconnect can clear them together.

Backends implement ``SettingsBackend``:

* ``JsonSettingsStore`` -- a JSON file on disk.  ``save()`` writes to a
  temp file then calls ``os.replace()`` so readers never see partial data.
* ``MemorySettingsStore`` -- an in-process dict, for embedding the engine
  in a host application that owns persistence itself.

The document is a plain ``dict`` so each store (credentials, policy,
links) can own one top-level section without knowing about the others.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SETTINGS_VERSION = 1


def empty_settings() -> dict[str, Any]:
    return {"version": SETTINGS_VERSION}


class SettingsBackend(Protocol):
    """Load and persist the whole settings document."""

    def load(self) -> dict[str, Any]: ...  # pragma: no cover

    def save(self, data: dict[str, Any]) -> None: ...  # pragma: no cover


class JsonSettingsStore:
    """Settings document stored as a JSON file.

    Args:
        path: File path; ``~`` is expanded.  Parent directories are
            created on first save.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Load the document, or an empty one if the file does not exist."""
        if not self._path.exists():
            return empty_settings()
        with open(self._path, encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            logger.warning(
                "Settings file %s has non-dict root -- ignoring", self._path
            )
            return empty_settings()
        return data

    def save(self, data: dict[str, Any]) -> None:
        """Persist the document atomically.

        Writes to a temporary file in the same directory then atomically
        replaces the target.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._path.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, default=str)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


class MemorySettingsStore:
    """Settings document kept in memory.

    ``load()`` returns a deep copy so callers cannot mutate stored state
    without going through ``save()``.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data = copy.deepcopy(initial) if initial else empty_settings()
        self.save_count = 0

    def load(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def save(self, data: dict[str, Any]) -> None:
        self._data = copy.deepcopy(data)
        self.save_count += 1


def read_section(backend: SettingsBackend, key: str) -> Any:
    """Return one top-level section of the document, or ``None``."""
    return backend.load().get(key)


def write_section(backend: SettingsBackend, key: str, value: Any) -> None:
    """Replace (or with ``None``, remove) one top-level section."""
    data = backend.load()
    if value is None:
        data.pop(key, None)
    else:
        data[key] = value
    backend.save(data)
