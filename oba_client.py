"""Async client for the OneBusAway REST API."""
from __future__ import annotations

import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx


class OBAError(RuntimeError):
    """Raised when the OneBusAway server returns an unusable response."""


class OBAClient:
    """Minimal client for the OneBusAway ``/api/where`` endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_s, connect=5.0)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "OBAClient":
        """Build an ``OBAClient`` using environment configuration.

        * ``OBA_SERVER_URL`` - Required. Example: ``https://api.pugetsound.onebusaway.org``
        * ``OBA_API_KEY`` - API key sent as the ``key`` query parameter.
        * ``OBA_HTTP_TIMEOUT_S`` - Read timeout in seconds (default 20).
        """

        base_url = (os.getenv("OBA_SERVER_URL") or "").strip()
        if not base_url:
            raise RuntimeError("Missing required environment variable: OBA_SERVER_URL")
        api_key = (os.getenv("OBA_API_KEY") or "").strip()
        timeout_s = float(os.getenv("OBA_HTTP_TIMEOUT_S", "20"))
        return cls(base_url=base_url, api_key=api_key, timeout_s=timeout_s)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_data(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client = await self._ensure_client()
        query: Dict[str, Any] = dict(params or {})
        if self._api_key:
            query["key"] = self._api_key

        response = await client.get(
            f"{self._base_url}/api/where/{path}",
            params=query,
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        payload = response.json()

        if not isinstance(payload, dict):
            raise OBAError(f"Unexpected response body for {path}")
        code = payload.get("code", 200)
        if code != 200:
            raise OBAError(f"OBA returned code {code} for {path}: {payload.get('text', '')}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise OBAError(f"Missing data block for {path}")
        return data

    async def list_agencies_with_coverage(self) -> Dict[str, Any]:
        """Return the ``data`` block with ``list`` of agencies and their coverage spans."""
        return await self._get_data("agencies-with-coverage.json")

    async def list_routes_for_agency(self, agency_id: str) -> Dict[str, Any]:
        """Return the ``data`` block with ``list`` of routes and ``references.agencies``."""
        return await self._get_data(f"routes-for-agency/{quote(str(agency_id), safe='')}.json")
