"""Session controller: credentials, the live document and its sync lifecycle.

One ``SessionController`` owns everything a running client needs.  Nothing
here is module-level state, so several sessions (for example two simulated
devices in a test) can live side by side in one process.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx

from .state.document import (
    VALID_SCREENS,
    StateDocument,
    clone_state,
    create_default_state,
    ensure_system_folders,
    folder_ids_of,
    normalize_state,
)
from .state.operations import select_folder
from .state.preferences import UIContextStore
from .state.storage import KeyValueStorage, StorageError
from .state.versioning import commit, rebase_version
from .sync.manager import DisabledSyncManager, create_sync_manager
from .sync.protocol import PullResult, SyncSettings, SyncStatus
from .sync.reconcile import reconcile

logger = logging.getLogger("todosync.session")

TOKEN_KEY = "todoAuthToken"
USER_KEY = "todoAuthUser"
STATE_KEY_PREFIX = "todoState"

Listener = Callable[[Dict[str, Any]], None]


def _normalize_user(user: Any) -> Optional[Dict[str, str]]:
    if isinstance(user, str) and user.strip():
        return {"email": user.strip()}
    if isinstance(user, dict) and isinstance(user.get("email"), str):
        return {"email": user["email"]}
    return None


class SessionController:
    def __init__(
        self,
        storage: KeyValueStorage,
        settings: Optional[SyncSettings] = None,
        profile: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.settings = settings or SyncSettings()
        self.profile = profile or self.settings.profile or "default"
        self.preferences = UIContextStore(storage, self.profile)
        self.token: Optional[str] = None
        self.user: Optional[Dict[str, str]] = None
        self.current_screen: Optional[str] = None
        self.last_status: Optional[SyncStatus] = None
        self.sync: Any = DisabledSyncManager("not started")
        self._transport = transport
        self._listeners: List[Listener] = []
        self._closing: Optional[asyncio.Task] = None
        self.state: StateDocument = self._load_state()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @property
    def state_key(self) -> str:
        return f"{STATE_KEY_PREFIX}:{self.profile}"

    def load(self) -> Dict[str, Any]:
        """Read the stored credential; returns the session snapshot."""
        try:
            token = self.storage.get(TOKEN_KEY)
            user = self.storage.get(USER_KEY)
        except StorageError as e:
            logger.warning("Unable to read stored credentials: %s", e)
            token, user = None, None
        self.token = token if isinstance(token, str) and token else None
        self.user = _normalize_user(user)
        return self.snapshot()

    def snapshot(self) -> Dict[str, Any]:
        return {"token": self.token, "user": dict(self.user) if self.user else None}

    def set_session(self, token: Optional[str], user: Any = None) -> None:
        self.token = token or None
        self.user = _normalize_user(user)
        try:
            if self.token:
                self.storage.set(TOKEN_KEY, self.token)
            else:
                self.storage.remove(TOKEN_KEY)
            if self.user:
                self.storage.set(USER_KEY, self.user)
            else:
                self.storage.remove(USER_KEY)
        except StorageError as e:
            logger.warning("Unable to persist credentials: %s", e)
        self._emit()

    def clear_session(self) -> None:
        self.set_session(None, None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for credential changes; returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Session listener failed")

    # ------------------------------------------------------------------
    # Document
    # ------------------------------------------------------------------

    def _load_state(self) -> StateDocument:
        try:
            raw = self.storage.get(self.state_key)
        except StorageError as e:
            logger.warning("Unable to read cached document: %s", e)
            raw = None
        state = normalize_state(raw) if raw is not None else create_default_state()
        return ensure_system_folders(state)

    def persist(self, skip_remote: bool = False, update_meta: bool = True) -> int:
        """Commit the live document locally and, unless told otherwise, queue a push.

        Returns the document version after the commit.
        """
        ensure_system_folders(self.state)
        version = commit(self.state, update_meta=update_meta)
        try:
            self.storage.set(self.state_key, clone_state(self.state))
        except StorageError as e:
            logger.warning("Failed to persist document locally: %s", e)
        if not skip_remote:
            self.sync.schedule_push()
        return version

    @contextmanager
    def edit(self) -> Iterator[StateDocument]:
        """Mutate the document inside the block; it is persisted on exit.

        If the block raises, the document is restored and nothing is committed.
        """
        snapshot = clone_state(self.state)
        try:
            yield self.state
        except Exception:
            self.state = snapshot
            raise
        self.persist()

    def apply_remote(self, remote: StateDocument) -> None:
        result = reconcile(self.state, remote, self.preferences.context, self.current_screen)
        self.state = result.document

        task_ids = [t["id"] for t in self.state["tasks"]] + [t["id"] for t in self.state["archivedTasks"]]
        self.preferences.prune(folder_ids_of(self.state), task_ids)

        self.persist(skip_remote=True, update_meta=False)
        if result.screen_hint is not None:
            self.show_screen(result.screen_hint, remember=False)

    def rebase(self, remote_version: int) -> None:
        rebase_version(self.state, remote_version)
        self.persist(skip_remote=True, update_meta=False)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def show_screen(self, screen: str, remember: bool = True) -> None:
        if screen not in VALID_SCREENS:
            raise ValueError(f"Unknown screen '{screen}'")
        self.current_screen = screen
        self.state.setdefault("ui", {})["activeScreen"] = screen
        if remember:
            self.preferences.remember_screen(screen)
        self.persist(skip_remote=True, update_meta=False)

    def open_folder(self, folder_id: str) -> None:
        select_folder(self.state, folder_id, "tasks")
        self.preferences.remember_folder(folder_id)
        self.show_screen("tasks")

    # ------------------------------------------------------------------
    # Sync lifecycle
    # ------------------------------------------------------------------

    async def start(self, poll: bool = True) -> Optional[PullResult]:
        """Build the sync manager for the current credential and bring it up.

        Returns the initial pull result, or None when sync is not available.
        """
        await self.stop()
        self.sync = create_sync_manager(
            self.settings,
            self.token,
            get_state=lambda: self.state,
            apply_remote=self.apply_remote,
            on_status=self._on_status,
            on_unauthorized=self._on_unauthorized,
            on_rebase=self.rebase,
            transport=self._transport,
        )
        if not self.sync.enabled:
            logger.info("Sync unavailable (%s); working locally", self.sync.reason)
            return None

        result = None
        if self.settings.pull_on_startup:
            result = await self.sync.pull_latest()
            if result.not_found:
                logger.info("No remote document yet; seeding it from the local one")
                await self.sync.force_push()
            elif result.discarded:
                await self.sync.force_push()
        if poll and self.sync.enabled:
            self.sync.start_polling()
        return result

    async def stop(self) -> None:
        manager = self.sync
        self.sync = DisabledSyncManager("stopped")
        await manager.aclose()
        if self._closing is not None:
            await self._closing
            self._closing = None

    def _on_status(self, status: SyncStatus) -> None:
        self.last_status = status

    def _on_unauthorized(self) -> None:
        manager = self.sync
        manager.stop()
        self.sync = DisabledSyncManager("unauthorized")
        self._closing = asyncio.get_running_loop().create_task(manager.aclose())
        self.clear_session()


__all__ = ["SessionController", "STATE_KEY_PREFIX", "TOKEN_KEY", "USER_KEY"]
