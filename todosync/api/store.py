"""Server-side persistence for users and their synchronized documents."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from ..state.document import StateDocument, clone_state, coerce_version, normalize_state, now_ms
from ..state.storage import KeyValueStorage

logger = logging.getLogger("todosync.api.store")

USER_PREFIX = "user:"
STATE_PREFIX = "state:"


class VersionConflictError(Exception):
    """Raised when a write would move the stored document backwards."""

    def __init__(self, current_version: int, expected_version: Optional[int], incoming_version: int):
        self.current_version = current_version
        self.expected_version = expected_version
        self.incoming_version = incoming_version
        super().__init__(
            f"stored version {current_version} conflicts with expected "
            f"{expected_version} / incoming {incoming_version}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentVersion": self.current_version,
            "expectedVersion": self.expected_version,
            "incomingVersion": self.incoming_version,
        }


class UserStore:
    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    def find(self, email: str) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        raw = self.storage.get(USER_PREFIX + email)
        return raw if isinstance(raw, dict) else None

    def create(self, email: str, salt: str, password_hash: str) -> Dict[str, Any]:
        record = {"email": email, "salt": salt, "hash": password_hash, "createdAt": now_ms()}
        self.storage.set(USER_PREFIX + email, record)
        return record

    def update_password(self, email: str, salt: str, password_hash: str) -> None:
        record = self.find(email)
        if record is None:
            raise KeyError(email)
        record.update({"salt": salt, "hash": password_hash, "passwordChangedAt": now_ms()})
        self.storage.set(USER_PREFIX + email, record)

    def list_emails(self) -> List[str]:
        return [key[len(USER_PREFIX):] for key in self.storage.keys() if key.startswith(USER_PREFIX)]

    def count(self) -> int:
        return len(self.list_emails())


class StateStore:
    """One document per user email, guarded by the version rule.

    A write is rejected when the stored version is newer than the version the
    client based its edit on, or when the incoming document is older than
    what is stored.
    """

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage
        self._lock = threading.Lock()

    def get(self, email: str) -> Optional[StateDocument]:
        raw = self.storage.get(STATE_PREFIX + email)
        if raw is None:
            return None
        return normalize_state(raw)

    def stored_version(self, email: str) -> Optional[int]:
        raw = self.storage.get(STATE_PREFIX + email)
        if not isinstance(raw, dict):
            return None
        return coerce_version((raw.get("meta") or {}).get("version"))

    def put(
        self,
        email: str,
        state: StateDocument,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Store ``state`` and return its ``meta``."""
        document = normalize_state(clone_state(state))
        incoming = document["meta"]["version"]

        with self._lock:
            current = self.stored_version(email)
            if current is not None:
                if expected_version is not None and current > expected_version:
                    raise VersionConflictError(current, expected_version, incoming)
                if incoming < current:
                    raise VersionConflictError(current, expected_version, incoming)
            self.storage.set(STATE_PREFIX + email, document)

        logger.info(
            "Stored document for %s: version %s, %d folders, %d tasks",
            email,
            incoming,
            len(document["folders"]),
            len(document["tasks"]),
            extra={"operation": "store", "user": email, "version": incoming, "expected_version": expected_version},
        )
        return document["meta"]

    def count(self) -> int:
        return sum(1 for key in self.storage.keys() if key.startswith(STATE_PREFIX))


__all__ = ["StateStore", "UserStore", "VersionConflictError"]
