"""Stand-alone worker that keeps a sleeping backend warm.

Pings ``<target>/health`` once at startup and then every interval, logging
latency and failures.  The target comes from ``KEEP_ALIVE_URL``, falling back
to ``BASE_URL`` and ``RENDER_SERVICE_URL``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Mapping, Optional

import httpx

from .configuration import DEFAULT_KEEP_ALIVE_INTERVAL_MS

logger = logging.getLogger("todosync.keepalive")

URL_ENV_VARS = ("KEEP_ALIVE_URL", "BASE_URL", "RENDER_SERVICE_URL")
INTERVAL_ENV = "KEEP_ALIVE_INTERVAL_MS"
PING_TIMEOUT_S = 5.0


def resolve_target(env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the health URL to ping, or None when nothing is configured."""
    env_source = env if env is not None else os.environ
    for name in URL_ENV_VARS:
        value = (env_source.get(name) or "").strip()
        if value:
            return value.rstrip("/") + "/health"
    return None


def resolve_interval_ms(env: Optional[Mapping[str, str]] = None) -> int:
    env_source = env if env is not None else os.environ
    raw = env_source.get(INTERVAL_ENV, "")
    try:
        value = int(float(raw))
    except (ValueError, OverflowError):
        return DEFAULT_KEEP_ALIVE_INTERVAL_MS
    return value if value > 0 else DEFAULT_KEEP_ALIVE_INTERVAL_MS


async def ping(client: httpx.AsyncClient, url: str) -> bool:
    started = time.monotonic()
    try:
        response = await client.get(url)
    except httpx.HTTPError as exc:
        logger.error("Keep-alive failed: %r", exc)
        return False

    duration_ms = int((time.monotonic() - started) * 1000)
    if not response.is_success:
        logger.warning(
            "Keep-alive: %s %s (%dms) - %s",
            response.status_code,
            response.reason_phrase,
            duration_ms,
            response.text[:200] or "<no body>",
        )
        return False
    logger.info("Keep-alive OK (%s) in %dms", response.status_code, duration_ms)
    return True


async def run_keep_alive(
    url: str,
    interval_ms: int = DEFAULT_KEEP_ALIVE_INTERVAL_MS,
    iterations: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """Ping ``url`` until cancelled (or ``iterations`` pings); returns pings sent."""
    logger.info("Keep-alive worker started. Target: %s, interval: %sms", url, interval_ms)
    sent = 0
    async with httpx.AsyncClient(timeout=PING_TIMEOUT_S, transport=transport) as client:
        try:
            while True:
                await ping(client, url)
                sent += 1
                if iterations is not None and sent >= iterations:
                    break
                await asyncio.sleep(interval_ms / 1000)
        except asyncio.CancelledError:
            logger.info("Keep-alive worker stopping after %d pings", sent)
            raise
    return sent


__all__ = ["ping", "resolve_interval_ms", "resolve_target", "run_keep_alive"]
