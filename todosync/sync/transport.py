"""HTTP transport between the sync manager and the remote state store."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from ..state.document import StateDocument

logger = logging.getLogger("todosync.sync.transport")

DEFAULT_TIMEOUT_MS = 5000


class RemoteStateClient:
    """Thin async wrapper around ``GET/PUT /state`` and ``GET /health``.

    Responses are returned as-is; status handling belongs to the caller.
    Network failures surface as :class:`httpx.HTTPError`.  ``timeout_ms``
    bounds each phase through ``httpx.Timeout`` and the whole request as a
    deadline, so a server that trickles bytes still turns into an
    :class:`httpx.TimeoutException`.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_ms: float = DEFAULT_TIMEOUT_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_ms = timeout_ms
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout_ms / 1000),
                transport=self._transport,
            )
        return self._http_client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        request = self._get_http_client().request(method, path, **kwargs)
        try:
            return await asyncio.wait_for(request, self.timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            logger.debug("%s %s gave up after %sms", method, path, self.timeout_ms)
            raise httpx.TimeoutException(f"{method} {path} timed out after {self.timeout_ms}ms") from exc

    async def fetch_state(self) -> httpx.Response:
        return await self._request("GET", "/state")

    async def store_state(self, state: StateDocument, expected_version: Optional[int]) -> httpx.Response:
        body: Dict[str, Any] = {"state": state, "expectedVersion": expected_version}
        return await self._request("PUT", "/state", json=body)

    async def ping(self) -> httpx.Response:
        return await self._request("GET", "/health")

    async def aclose(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None


__all__ = ["DEFAULT_TIMEOUT_MS", "RemoteStateClient"]
