"""Synchronized document model and its local persistence."""

from __future__ import annotations

from .document import (
    FOLDER_IDS,
    StateDocument,
    clone_state,
    create_default_state,
    ensure_system_folders,
    normalize_state,
)
from .versioning import advance_version, commit, document_version, rebase_version
from .storage import JsonFileStorage, KeyValueStorage, MemoryStorage, StorageError, open_storage
from .preferences import UIContext, UIContextStore

__all__ = [
    # Document
    "FOLDER_IDS",
    "StateDocument",
    "clone_state",
    "create_default_state",
    "ensure_system_folders",
    "normalize_state",
    # Versioning
    "advance_version",
    "commit",
    "document_version",
    "rebase_version",
    # Storage
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
    "StorageError",
    "open_storage",
    # Preferences
    "UIContext",
    "UIContextStore",
]
