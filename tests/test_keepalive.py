"""Tests for the keep-alive worker."""

from __future__ import annotations

import httpx
import pytest

from todosync.keepalive import ping, resolve_interval_ms, resolve_target, run_keep_alive


def test_resolve_target_prefers_keep_alive_url():
    env = {"KEEP_ALIVE_URL": "https://a.example/", "BASE_URL": "https://b.example"}

    assert resolve_target(env) == "https://a.example/health"
    assert resolve_target({"RENDER_SERVICE_URL": "https://r.example"}) == "https://r.example/health"
    assert resolve_target({"BASE_URL": "  "}) is None


def test_resolve_interval_defaults_on_bad_values():
    assert resolve_interval_ms({"KEEP_ALIVE_INTERVAL_MS": "60000"}) == 60000
    assert resolve_interval_ms({"KEEP_ALIVE_INTERVAL_MS": "-5"}) == 3600000
    assert resolve_interval_ms({"KEEP_ALIVE_INTERVAL_MS": "soon"}) == 3600000
    assert resolve_interval_ms({"KEEP_ALIVE_INTERVAL_MS": "inf"}) == 3600000
    assert resolve_interval_ms({"KEEP_ALIVE_INTERVAL_MS": "nan"}) == 3600000
    assert resolve_interval_ms({}) == 3600000


@pytest.mark.asyncio
async def test_run_keep_alive_pings_target():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"ok": True})

    sent = await run_keep_alive(
        "https://svc.example/health",
        interval_ms=1,
        iterations=3,
        transport=httpx.MockTransport(handler),
    )

    assert sent == 3
    assert seen == ["https://svc.example/health"] * 3


@pytest.mark.asyncio
async def test_ping_reports_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/down":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(502, text="bad gateway")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await ping(client, "https://svc.example/down") is False
        assert await ping(client, "https://svc.example/health") is False
