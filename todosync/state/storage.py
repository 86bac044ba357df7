"""Key-value storage capability shared by the client cache and the server stores.

Callers only ever see ``get``/``set``/``remove``; which backend is active is
decided once at startup by :func:`open_storage`.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import quote, unquote

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("todosync.state.storage")


class StorageError(RuntimeError):
    """Raised when a storage backend cannot read or write a value."""


class KeyValueStorage(ABC):
    """Minimal JSON value store."""

    name: str = "abstract"

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...


class MemoryStorage(KeyValueStorage):
    """In-process storage; values are deep-copied on the way in and out."""

    name = "memory"

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = deepcopy(initial) if initial else {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)


class JsonFileStorage(KeyValueStorage):
    """One JSON file per key under ``directory``, replaced atomically."""

    name = "file"

    def __init__(self, directory: Path):
        self.directory = directory
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error("Corrupt value for '%s' in %s: %s", key, path, e)
            return default
        except OSError as e:
            raise StorageError(f"Unable to read '{key}': {e}") from e

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        payload = json.dumps(value, ensure_ascii=False, indent=2)
        with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_name, path)
            except OSError as e:
                raise StorageError(f"Unable to write '{key}': {e}") from e

    def remove(self, key: str) -> None:
        with self._lock:
            try:
                self._path(key).unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"Unable to remove '{key}': {e}") from e

    def keys(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(unquote(path.stem) for path in self.directory.glob("*.json"))


def open_storage(bundle: "ConfigurationBundle", namespace: str = "client") -> KeyValueStorage:
    """Build the storage backend selected in ``storage.backend``."""
    storage_cfg = bundle.section("storage")
    backend = str(storage_cfg.get("backend", "file")).lower()

    if backend == "memory":
        return MemoryStorage()
    if backend != "file":
        logger.warning("Unknown storage backend '%s'; using file storage", backend)

    directory = bundle.data_dir / str(storage_cfg.get("path", "state")) / namespace
    return JsonFileStorage(directory)


__all__ = [
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "StorageError",
    "open_storage",
]
