"""
Shared HTTP plumbing for the FDC verifier and data-availability clients.

Both services speak JSON over POST with an X-API-KEY header. The caller
may share one httpx.AsyncClient across the process; otherwise a client
is opened per request.
"""

from __future__ import annotations

from typing import Any

import httpx


class JsonPoster:
    """POSTs JSON and returns the raw httpx.Response (status not checked).

    Args:
        api_key: Value for the X-API-KEY header, or None to omit it.
        timeout: Per-request timeout in seconds.
        client: Shared AsyncClient.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["X-API-KEY"] = api_key
        self._timeout = timeout
        self._client = client

    async def post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=self._headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload, headers=self._headers)
