"""todosync HTTP server module."""

from __future__ import annotations

from .server import ServerState, TodoSyncServer, create_app
from .store import StateStore, UserStore, VersionConflictError

__all__ = [
    "ServerState",
    "StateStore",
    "TodoSyncServer",
    "UserStore",
    "VersionConflictError",
    "create_app",
]
