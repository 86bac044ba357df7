"""Tests for the push/pull/poll engine against a scripted HTTP transport."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from todosync.state.document import create_default_state
from todosync.sync import protocol
from todosync.sync.manager import DisabledSyncManager, SyncManager, create_sync_manager
from todosync.sync.protocol import SyncSettings
from todosync.sync.transport import RemoteStateClient

TS = 1_700_000_000_000


def _doc(version: int) -> Dict[str, Any]:
    doc = create_default_state(TS)
    doc["meta"]["version"] = version
    return doc


class Recorder:
    """Scripted server: ``routes`` maps "METHOD /path" to a response factory."""

    def __init__(self, routes: Dict[str, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        key = f"{request.method} {request.url.path}"
        self.calls.append({"key": key, "body": body, "auth": request.headers.get("authorization")})
        return self.routes[key](request)

    def count(self, key: str) -> int:
        return sum(1 for call in self.calls if call["key"] == key)


class Harness:
    def __init__(self, recorder: Recorder, local_version: int = 1, **overrides: Any):
        params = {
            "base_url": "http://sync.test",
            "push_debounce_ms": 20,
            "keep_alive_interval_ms": 0,
            "keep_alive_retry_ms": 0,
            "conflict_backoff_ms": 0,
        }
        params.update(overrides)
        self.settings = SyncSettings(**params)
        self.doc = _doc(local_version)
        self.applied: List[Dict[str, Any]] = []
        self.unauthorized = 0
        self.statuses: List[Any] = []
        client = RemoteStateClient(
            self.settings.base_url,
            token="tok",
            timeout_ms=self.settings.request_timeout_ms,
            transport=httpx.MockTransport(recorder),
        )
        self.manager = SyncManager(
            self.settings,
            client,
            get_state=lambda: self.doc,
            apply_remote=self._apply,
            on_status=self.statuses.append,
            on_unauthorized=self._on_unauthorized,
        )

    def _apply(self, remote: Dict[str, Any]) -> None:
        self.applied.append(remote)
        self.doc = remote

    def _on_unauthorized(self) -> None:
        self.unauthorized += 1


def _ok_put(request: httpx.Request) -> httpx.Response:
    state = json.loads(request.content)["state"]
    return httpx.Response(200, json={"ok": True, "meta": state["meta"]})


def _get_returning(version: int) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(200, json=_doc(version))


@pytest.mark.asyncio
async def test_rapid_schedule_push_issues_one_put():
    recorder = Recorder({"PUT /state": _ok_put})
    harness = Harness(recorder)

    for _ in range(5):
        harness.manager.schedule_push()
        await asyncio.sleep(0.002)
    await asyncio.sleep(0.1)

    assert recorder.count("PUT /state") == 1
    assert recorder.calls[0]["auth"] == "Bearer tok"
    assert harness.manager.last_synced_version == 1
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_push_sends_last_synced_as_expected_version():
    recorder = Recorder({"PUT /state": _ok_put})
    harness = Harness(recorder, local_version=4)

    assert await harness.manager.push_state() is True
    assert recorder.calls[0]["body"]["expectedVersion"] is None

    harness.doc["meta"]["version"] = 5
    assert await harness.manager.push_state() is True
    assert recorder.calls[1]["body"]["expectedVersion"] == 4
    assert harness.manager.last_synced_version == 5
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_unchanged_push_is_skipped_unless_forced():
    recorder = Recorder({"PUT /state": _ok_put})
    harness = Harness(recorder)
    harness.manager.last_synced_version = 1

    assert await harness.manager.push_state() is False
    assert recorder.calls == []
    assert await harness.manager.force_push() is True
    assert recorder.count("PUT /state") == 1
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_push_and_pull_exclude_each_other():
    recorder = Recorder({"PUT /state": _ok_put, "GET /state": _get_returning(3)})
    harness = Harness(recorder)

    harness.manager.is_pulling = True
    assert await harness.manager.push_state(force=True) is False
    harness.manager.is_pulling = False

    harness.manager.is_pushing = True
    result = await harness.manager.pull_latest()
    harness.manager.is_pushing = False

    assert result.skipped is True
    assert recorder.calls == []
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_force_push_during_pull_is_deferred_not_dropped():
    gate = asyncio.Event()

    async def slow_get(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return httpx.Response(404, json={"error": "NOT_FOUND"})

    recorder = Recorder({"GET /state": slow_get, "PUT /state": _ok_put})
    harness = Harness(recorder, local_version=2)
    harness.manager.last_synced_version = 2

    pull = asyncio.create_task(harness.manager.pull_latest())
    await asyncio.sleep(0.01)
    assert harness.manager.is_pulling

    harness.manager.schedule_push()
    assert await harness.manager.force_push() is False
    assert harness.manager.has_pending_push

    gate.set()
    await pull
    await asyncio.sleep(0.15)

    # Forced even though the version matches the last synced one.
    assert recorder.count("PUT /state") == 1
    assert harness.manager.has_pending_push is False
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_pull_applies_newer_remote():
    recorder = Recorder({"GET /state": _get_returning(3)})
    harness = Harness(recorder, local_version=1)

    result = await harness.manager.pull_latest()

    assert result.applied is True
    assert result.remote_version == 3
    assert harness.doc["meta"]["version"] == 3
    assert harness.manager.last_synced_version == 3
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_pull_never_regresses_below_last_synced():
    recorder = Recorder({"GET /state": _get_returning(3)})
    harness = Harness(recorder, local_version=5)
    harness.manager.last_synced_version = 5
    before = harness.doc

    result = await harness.manager.pull_latest()

    assert result.discarded is True and result.skipped is True
    assert harness.applied == []
    assert harness.doc is before
    assert harness.manager.last_synced_version == 5
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_pull_without_sync_history_compares_local_version():
    recorder = Recorder({"GET /state": _get_returning(1)})
    harness = Harness(recorder, local_version=2)

    result = await harness.manager.pull_latest()

    assert result.discarded is True
    assert harness.applied == []
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_skip_if_unchanged():
    recorder = Recorder({"GET /state": _get_returning(3)})
    harness = Harness(recorder, local_version=3)
    harness.manager.last_synced_version = 3

    result = await harness.manager.pull_latest(skip_if_unchanged=True)

    assert result.skipped is True and result.discarded is False
    assert harness.applied == []
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_pull_not_found_and_errors():
    responses = iter([
        httpx.Response(404, json={"error": "NOT_FOUND"}),
        httpx.Response(503, text="sleeping"),
        httpx.Response(200, text="<html>"),
    ])
    recorder = Recorder({"GET /state": lambda request: next(responses)})
    harness = Harness(recorder)

    assert (await harness.manager.pull_latest()).not_found is True
    server_error = await harness.manager.pull_latest()
    assert server_error.error == "HTTP 503"
    assert harness.manager.get_status().error is not None
    invalid = await harness.manager.pull_latest()
    assert invalid.error == "INVALID_JSON"
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_unauthorized_is_reported_and_not_retried():
    recorder = Recorder({
        "GET /state": lambda request: httpx.Response(401, json={"error": "UNAUTHORIZED"}),
        "PUT /state": lambda request: httpx.Response(401, json={"error": "UNAUTHORIZED"}),
    })
    harness = Harness(recorder)

    pulled = await harness.manager.pull_latest()
    pushed = await harness.manager.push_state(force=True)

    assert pulled.error == "UNAUTHORIZED"
    assert pushed is False
    assert harness.unauthorized == 2
    assert len(recorder.calls) == 2
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_conflict_pulls_rebases_and_retries_once():
    puts = iter([
        httpx.Response(409, json={"error": "VERSION_CONFLICT"}),
        None,
    ])

    def put(request: httpx.Request) -> httpx.Response:
        return next(puts) or _ok_put(request)

    recorder = Recorder({"PUT /state": put, "GET /state": _get_returning(3)})
    harness = Harness(recorder, local_version=2)
    harness.manager.last_synced_version = 1

    assert await harness.manager.push_state(force=True) is True

    assert [call["key"] for call in recorder.calls] == ["PUT /state", "GET /state", "PUT /state"]
    retry = recorder.calls[2]["body"]
    assert retry["expectedVersion"] == 3
    assert retry["state"]["meta"]["version"] == 4
    assert harness.manager.last_synced_version == 4
    assert harness.manager.conflicts == 1
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_conflict_retries_are_bounded():
    recorder = Recorder({
        "PUT /state": lambda request: httpx.Response(409, json={"error": "VERSION_CONFLICT"}),
        "GET /state": _get_returning(3),
    })
    harness = Harness(recorder, local_version=2, conflict_retries=2)

    assert await harness.manager.push_state(force=True) is False

    assert recorder.count("PUT /state") == 3
    assert recorder.count("GET /state") == 2
    assert harness.manager.conflicts == 3
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_failing_rebase_is_contained():
    recorder = Recorder({
        "PUT /state": lambda request: httpx.Response(409, json={"error": "VERSION_CONFLICT"}),
        "GET /state": _get_returning(3),
    })
    harness = Harness(recorder, local_version=2)
    harness.manager.last_synced_version = 1

    def broken_rebase(remote_version: int) -> None:
        raise RuntimeError("disk full")

    harness.manager.on_rebase = broken_rebase

    assert await harness.manager.push_state(force=True) is False
    assert [call["key"] for call in recorder.calls] == ["PUT /state", "GET /state"]
    assert harness.manager.is_pushing is False
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_hung_request_times_out_as_transient():
    async def hang(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=_doc(9))

    recorder = Recorder({"GET /state": hang, "PUT /state": hang})
    harness = Harness(recorder, request_timeout_ms=50)

    result = await asyncio.wait_for(harness.manager.pull_latest(), 2)
    assert result.error is not None
    assert result.applied is False
    assert "pull failed" in harness.manager.last_error
    assert harness.manager.is_pulling is False

    assert await asyncio.wait_for(harness.manager.push_state(force=True), 2) is False
    assert "push failed" in harness.manager.last_error
    assert harness.applied == []
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_stop_cancels_keep_alive_timers():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    recorder = Recorder({
        "PUT /state": refuse,
        "GET /health": lambda request: httpx.Response(200, json={"ok": True}),
    })
    harness = Harness(recorder, keep_alive_interval_ms=10, keep_alive_retry_ms=200)

    assert await harness.manager.push_state(force=True) is False
    assert harness.manager._keep_alive_retry_handle is not None
    harness.manager.start_polling()
    await asyncio.sleep(0.05)
    assert recorder.count("GET /health") >= 1

    await harness.manager.aclose()
    pings = recorder.count("GET /health")
    await asyncio.sleep(0.3)

    assert recorder.count("GET /health") == pings
    assert harness.manager._keep_alive_task is None
    assert harness.manager._keep_alive_retry_handle is None


@pytest.mark.asyncio
async def test_transport_failure_schedules_keep_alive_ping():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    recorder = Recorder({
        "PUT /state": refuse,
        "GET /health": lambda request: httpx.Response(200, json={"ok": True}),
    })
    harness = Harness(recorder, keep_alive_retry_ms=10)

    assert await harness.manager.push_state(force=True) is False
    assert "push failed" in harness.manager.last_error
    await asyncio.sleep(0.1)

    assert recorder.count("GET /health") == 1
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_polling_pulls_until_stopped(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(protocol, "MIN_POLL_INTERVAL_MS", 0)
    recorder = Recorder({"GET /state": _get_returning(1)})
    harness = Harness(recorder, pull_interval_ms=10)

    harness.manager.start_polling()
    assert harness.manager.is_polling
    await asyncio.sleep(0.1)
    harness.manager.stop_polling()
    seen = recorder.count("GET /state")
    await asyncio.sleep(0.05)

    assert seen >= 2
    assert recorder.count("GET /state") == seen
    assert harness.manager.is_polling is False
    await harness.manager.aclose()


@pytest.mark.asyncio
async def test_stop_cancels_pending_push():
    recorder = Recorder({"PUT /state": _ok_put})
    harness = Harness(recorder)

    harness.manager.schedule_push()
    assert harness.manager.has_pending_push
    await harness.manager.aclose()
    await asyncio.sleep(0.05)

    assert recorder.calls == []
    assert harness.manager.has_pending_push is False
    harness.manager.schedule_push()
    assert harness.manager.has_pending_push is False


@pytest.mark.asyncio
async def test_status_callback_tracks_flags():
    recorder = Recorder({"GET /state": _get_returning(2)})
    harness = Harness(recorder)

    await harness.manager.pull_latest()

    assert any(status.is_pulling for status in harness.statuses)
    assert harness.statuses[-1].is_pulling is False
    assert harness.statuses[-1].last_synced_version == 2
    await harness.manager.aclose()


def test_create_sync_manager_disabled_without_prerequisites():
    noop = lambda *args: None  # noqa: E731
    base = {"get_state": dict, "apply_remote": noop}

    assert isinstance(create_sync_manager(SyncSettings(enabled=False, base_url="http://x"), "t", **base), DisabledSyncManager)
    assert isinstance(create_sync_manager(SyncSettings(base_url=""), "t", **base), DisabledSyncManager)
    assert isinstance(create_sync_manager(SyncSettings(base_url="http://x"), None, **base), DisabledSyncManager)
    assert isinstance(create_sync_manager(SyncSettings(base_url="http://x/"), "t", **base), SyncManager)


@pytest.mark.asyncio
async def test_disabled_manager_is_inert():
    manager = DisabledSyncManager("no credential")

    assert (await manager.pull_latest()).skipped is True
    assert await manager.push_state(force=True) is False
    assert await manager.force_push() is False
    manager.schedule_push()
    manager.start_polling()
    assert manager.get_status().enabled is False
    await manager.aclose()


def test_settings_clamp_values():
    settings = SyncSettings(
        base_url="http://x///",
        push_debounce_ms=-5,
        pull_interval_ms=1,
        conflict_retries=-1,
    )

    assert settings.base_url == "http://x"
    assert settings.push_debounce_ms == 0
    assert settings.pull_interval_ms == protocol.MIN_POLL_INTERVAL_MS
    assert settings.conflict_retries == 0
    assert SyncSettings.from_config({"sync": {"conflict_retries": 5}}).conflict_retries == 5
