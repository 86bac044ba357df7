"""Push/pull/poll protocol against the remote state store.

Everything runs on one asyncio event loop.  Pull and push exclude each other
through the ``is_pulling``/``is_pushing`` flags rather than a queue: a call
that finds the other operation in flight returns immediately and the next
scheduled trigger (debounce, poll tick) picks the work up again.

``meta.version`` decides who wins.  A push carries the last version this
client synced as ``expectedVersion``; when the server already holds something
newer it answers 409, the manager pulls, rebases the local document on top of
the pulled version and retries a bounded number of times.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional, Set

import httpx

from ..state.document import StateDocument, clone_state, coerce_version, now_ms
from ..state.versioning import document_version, rebase_version
from .protocol import PullResult, SyncSettings, SyncStatus
from .transport import RemoteStateClient

logger = logging.getLogger("todosync.sync.manager")

GetState = Callable[[], StateDocument]
ApplyRemote = Callable[[StateDocument], None]
StatusCallback = Callable[[SyncStatus], None]
RebaseCallback = Callable[[int], None]


class SyncManager:
    """Versioned push/pull engine for one authenticated session."""

    enabled = True

    def __init__(
        self,
        settings: SyncSettings,
        client: RemoteStateClient,
        get_state: GetState,
        apply_remote: ApplyRemote,
        on_status: Optional[StatusCallback] = None,
        on_unauthorized: Optional[Callable[[], None]] = None,
        on_rebase: Optional[RebaseCallback] = None,
    ):
        self.settings = settings
        self.client = client
        self.get_state = get_state
        self.apply_remote = apply_remote
        self.on_status = on_status
        self.on_unauthorized = on_unauthorized
        self.on_rebase = on_rebase

        self.is_pulling = False
        self.is_pushing = False
        self.last_synced_version: Optional[int] = None
        self.last_sync_at: Optional[int] = None
        self.last_error: Optional[str] = None
        self.conflicts = 0

        self._closed = False
        self._force_pending = False
        self._push_handle: Optional[asyncio.TimerHandle] = None
        self._keep_alive_retry_handle: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._keep_alive_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def has_pending_push(self) -> bool:
        return self._push_handle is not None

    def get_status(self) -> SyncStatus:
        return SyncStatus(
            enabled=True,
            is_pulling=self.is_pulling,
            is_pushing=self.is_pushing,
            is_polling=self.is_polling,
            last_synced_version=self.last_synced_version,
            last_sync_at=self.last_sync_at,
            error=self.last_error,
            conflicts=self.conflicts,
        )

    def _emit_status(self) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(self.get_status())
        except Exception:
            logger.exception("Sync status listener failed")

    def _record_success(self, version: int) -> None:
        self.last_synced_version = version
        self.last_sync_at = now_ms()
        self.last_error = None

    def _record_transient(self, message: str, operation: str, status_code: Optional[int] = None) -> None:
        logger.warning(
            "Sync: %s",
            message,
            extra={"operation": operation, "status_code": status_code},
        )
        self.last_error = message
        self._schedule_keep_alive_retry()

    def _handle_unauthorized(self, operation: str) -> None:
        logger.warning(
            "Sync %s rejected; credential no longer valid",
            operation,
            extra={"operation": operation, "status_code": 401},
        )
        self.last_error = "UNAUTHORIZED"
        if self.on_unauthorized is None:
            return
        try:
            self.on_unauthorized()
        except Exception:
            logger.exception("Unauthorized callback failed")

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull_latest(self, skip_if_unchanged: bool = False) -> PullResult:
        """Fetch the remote document and apply it unless it would regress."""
        if self._closed or self.is_pulling or self.is_pushing:
            return PullResult(skipped=True)

        self.is_pulling = True
        self._emit_status()
        try:
            return await self._pull(skip_if_unchanged)
        finally:
            self.is_pulling = False
            self._emit_status()

    async def _pull(self, skip_if_unchanged: bool) -> PullResult:
        try:
            response = await self.client.fetch_state()
        except httpx.HTTPError as exc:
            self._record_transient(f"pull failed: {exc!r}", "pull")
            return PullResult(error=str(exc) or type(exc).__name__)

        status_code = response.status_code
        if status_code == 401:
            self._handle_unauthorized("pull")
            return PullResult(error="UNAUTHORIZED", status_code=status_code)
        if status_code == 404:
            self.last_error = None
            return PullResult(not_found=True, status_code=status_code)
        if not response.is_success:
            self._record_transient(f"pull returned HTTP {status_code}", "pull", status_code)
            return PullResult(error=f"HTTP {status_code}", status_code=status_code)

        try:
            remote = response.json()
        except ValueError as exc:
            self._record_transient(f"pull returned invalid JSON: {exc}", "pull", status_code)
            return PullResult(error="INVALID_JSON", status_code=status_code)
        if not isinstance(remote, dict):
            self._record_transient("pull returned a non-object document", "pull", status_code)
            return PullResult(error="INVALID_STATE", status_code=status_code)

        remote_version = coerce_version((remote.get("meta") or {}).get("version"))

        baseline = self.last_synced_version
        if baseline is None:
            baseline = document_version(self.get_state())
        if baseline is not None and remote_version < baseline:
            logger.info(
                "Discarding remote version %s; local is already at %s",
                remote_version,
                baseline,
                extra={"operation": "pull", "version": remote_version},
            )
            return PullResult(
                skipped=True,
                discarded=True,
                status_code=status_code,
                remote_version=remote_version,
            )

        if skip_if_unchanged and remote_version == self.last_synced_version:
            return PullResult(skipped=True, status_code=status_code, remote_version=remote_version)

        try:
            self.apply_remote(remote)
        except Exception as exc:
            logger.exception(
                "Applying remote version %s failed",
                remote_version,
                extra={"operation": "pull", "version": remote_version},
            )
            return PullResult(error=str(exc), status_code=status_code, remote_version=remote_version)

        self._record_success(remote_version)
        logger.debug(
            "Applied remote version %s",
            remote_version,
            extra={"operation": "pull", "version": remote_version, "status_code": status_code},
        )
        return PullResult(applied=True, status_code=status_code, remote_version=remote_version)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push_state(self, force: bool = False, retry_count: int = 0) -> bool:
        """Send the local document; returns True when the server accepted it."""
        if self._closed or self.is_pushing or self.is_pulling:
            return False

        state = self.get_state()
        local_version = document_version(state)
        if not force and local_version is not None and local_version == self.last_synced_version:
            return False

        payload = clone_state(state)
        expected_version = self.last_synced_version

        self.is_pushing = True
        self._emit_status()
        try:
            response = await self.client.store_state(payload, expected_version)
        except httpx.HTTPError as exc:
            self._record_transient(f"push failed: {exc!r}", "push")
            return False
        finally:
            self.is_pushing = False
            self._emit_status()

        status_code = response.status_code
        if status_code == 401:
            self._handle_unauthorized("push")
            return False
        if status_code == 409:
            return await self._resolve_conflict(retry_count)
        if not response.is_success:
            self._record_transient(f"push returned HTTP {status_code}", "push", status_code)
            return False

        confirmed = local_version
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("meta"), dict):
            confirmed = coerce_version(body["meta"].get("version"), local_version or 0)
        self._record_success(coerce_version(confirmed))
        self._emit_status()
        logger.debug(
            "Pushed version %s (expected %s)",
            confirmed,
            expected_version,
            extra={
                "operation": "push",
                "version": confirmed,
                "expected_version": expected_version,
                "status_code": status_code,
            },
        )
        return True

    async def _resolve_conflict(self, retry_count: int) -> bool:
        self.conflicts += 1
        if retry_count >= self.settings.conflict_retries:
            logger.warning(
                "Push still conflicting after %d retries; deferring to next sync",
                retry_count,
                extra={"operation": "push", "status_code": 409},
            )
            return False

        logger.info(
            "Push rejected with version conflict; pulling before retry %d",
            retry_count + 1,
            extra={"operation": "push", "status_code": 409, "expected_version": self.last_synced_version},
        )
        result = await self.pull_latest(skip_if_unchanged=False)
        if not result.applied or result.remote_version is None:
            return False

        if not self._rebase(result.remote_version):
            return False
        await asyncio.sleep(self.settings.conflict_backoff_ms / 1000)
        return await self.push_state(force=True, retry_count=retry_count + 1)

    def _rebase(self, remote_version: int) -> bool:
        try:
            if self.on_rebase is not None:
                self.on_rebase(remote_version)
            else:
                rebase_version(self.get_state(), remote_version)
        except Exception:
            logger.exception(
                "Rebasing onto remote version %s failed",
                remote_version,
                extra={"operation": "rebase", "version": remote_version},
            )
            return False
        return True

    def schedule_push(self, force: bool = False) -> None:
        """Push after a quiet period; every call restarts the timer.

        ``force`` sticks until the scheduled push runs, so a deferred
        :meth:`force_push` still sends an unchanged document.
        """
        if self._closed:
            return
        self._force_pending = self._force_pending or force
        if self._push_handle is not None:
            self._push_handle.cancel()
        loop = asyncio.get_running_loop()
        self._push_handle = loop.call_later(
            self.settings.push_debounce_ms / 1000,
            self._fire_scheduled_push,
        )

    def _fire_scheduled_push(self) -> None:
        self._push_handle = None
        self._spawn(self._scheduled_push())

    async def _scheduled_push(self) -> None:
        if self.is_pulling or self.is_pushing:
            self.schedule_push()
            return
        force, self._force_pending = self._force_pending, False
        await self.push_state(force=force)

    async def force_push(self) -> bool:
        """Push now, or re-arm the debounce when a pull or push is in flight."""
        if self._push_handle is not None:
            self._push_handle.cancel()
            self._push_handle = None
        if self.is_pulling or self.is_pushing:
            logger.debug("Sync busy; deferring forced push", extra={"operation": "push"})
            self.schedule_push(force=True)
            return False
        self._force_pending = False
        return await self.push_state(force=True)

    # ------------------------------------------------------------------
    # Polling and keep-alive
    # ------------------------------------------------------------------

    def start_polling(self) -> None:
        if self._closed or self.is_polling:
            return
        loop = asyncio.get_running_loop()
        self._poll_task = loop.create_task(self._poll_loop())
        if self.settings.keep_alive_interval_ms > 0:
            self._keep_alive_task = loop.create_task(self._keep_alive_loop())
        logger.info("Polling every %sms", self.settings.pull_interval_ms)
        self._emit_status()

    def stop_polling(self) -> None:
        for task in (self._poll_task, self._keep_alive_task):
            if task is not None and not task.done():
                task.cancel()
        self._poll_task = None
        self._keep_alive_task = None

    async def _poll_loop(self) -> None:
        interval = self.settings.pull_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            if self.is_pulling or self.is_pushing:
                continue
            try:
                await self.pull_latest(skip_if_unchanged=True)
            except Exception:
                logger.exception("Poll tick failed")

    async def _keep_alive_loop(self) -> None:
        interval = self.settings.keep_alive_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            await self.ping()

    def _schedule_keep_alive_retry(self) -> None:
        delay_ms = self.settings.keep_alive_retry_ms
        if self._closed or delay_ms <= 0 or self._keep_alive_retry_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._keep_alive_retry_handle = loop.call_later(delay_ms / 1000, self._fire_keep_alive_retry)

    def _fire_keep_alive_retry(self) -> None:
        self._keep_alive_retry_handle = None
        self._spawn(self.ping())

    async def ping(self) -> bool:
        """Hit ``/health`` so a sleeping backend starts warming up."""
        started = now_ms()
        try:
            response = await self.client.ping()
        except httpx.HTTPError as exc:
            logger.warning("Keep-alive ping failed: %r", exc, extra={"operation": "ping"})
            return False
        logger.debug(
            "Keep-alive ping %s in %sms",
            response.status_code,
            now_ms() - started,
            extra={"operation": "ping", "status_code": response.status_code},
        )
        return response.is_success

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def stop(self) -> None:
        """Cancel every timer and in-flight task owned by this manager."""
        self._closed = True
        self.stop_polling()
        for handle in (self._push_handle, self._keep_alive_retry_handle):
            if handle is not None:
                handle.cancel()
        self._push_handle = None
        self._keep_alive_retry_handle = None
        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def aclose(self) -> None:
        self.stop()
        pending = [task for task in self._tasks if task is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.client.aclose()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class DisabledSyncManager:
    """Inert stand-in used when there is no endpoint or credential."""

    enabled = False
    is_pulling = False
    is_pushing = False
    is_polling = False
    last_synced_version: Optional[int] = None

    def __init__(self, reason: str = "disabled"):
        self.reason = reason

    async def pull_latest(self, skip_if_unchanged: bool = False) -> PullResult:
        return PullResult(skipped=True)

    async def push_state(self, force: bool = False, retry_count: int = 0) -> bool:
        return False

    def schedule_push(self, force: bool = False) -> None:
        pass

    async def force_push(self) -> bool:
        return False

    def start_polling(self) -> None:
        pass

    def stop_polling(self) -> None:
        pass

    async def ping(self) -> bool:
        return False

    def stop(self) -> None:
        pass

    async def aclose(self) -> None:
        pass

    def get_status(self) -> SyncStatus:
        return SyncStatus(enabled=False, error=None)


def create_sync_manager(
    settings: SyncSettings,
    token: Optional[str],
    get_state: GetState,
    apply_remote: ApplyRemote,
    on_status: Optional[StatusCallback] = None,
    on_unauthorized: Optional[Callable[[], None]] = None,
    on_rebase: Optional[RebaseCallback] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
):
    """Build a live manager, or the disabled one when sync cannot run."""
    if not settings.enabled:
        return DisabledSyncManager("sync disabled in configuration")
    if not settings.base_url:
        return DisabledSyncManager("no base_url configured")
    if not token:
        return DisabledSyncManager("no credential")

    client = RemoteStateClient(
        settings.base_url,
        token=token,
        timeout_ms=settings.request_timeout_ms,
        transport=transport,
    )
    return SyncManager(
        settings,
        client,
        get_state=get_state,
        apply_remote=apply_remote,
        on_status=on_status,
        on_unauthorized=on_unauthorized,
        on_rebase=on_rebase,
    )


__all__ = ["DisabledSyncManager", "SyncManager", "create_sync_manager"]
