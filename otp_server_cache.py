"""
Detects and caches which API dialect the OpenTripPlanner server speaks.

OTP 2.x answers ``GET <base>`` with JSON carrying ``version.major >= 2`` and is
queried over GraphQL. OTP 1.x (and anything returning XML or another non-JSON
body) is queried over the REST ``/routers/default/plan`` endpoint.
"""
from __future__ import annotations

import os
from typing import Any, Callable, Optional

import httpx

from preload_cache import CACHE_TTL_MS, PreloadCache

OTP_SERVER_URL = (os.getenv("OTP_SERVER_URL") or "").strip()
OTP_HTTP_TIMEOUT_S = float(os.getenv("OTP_HTTP_TIMEOUT_S", "10"))

OTP_API_GRAPHQL = "graphql"
OTP_API_REST = "rest"


def api_type_from_version(payload: Any) -> str:
    """Map the JSON root document of an OTP server to its API dialect."""
    version = payload.get("version") if isinstance(payload, dict) else None
    major = version.get("major") if isinstance(version, dict) else None
    if isinstance(major, str):
        # Some deployments report the version as strings ("2").
        try:
            major = float(major)
        except ValueError:
            return OTP_API_REST
    if isinstance(major, (int, float)) and not isinstance(major, bool) and major >= 2:
        return OTP_API_GRAPHQL
    return OTP_API_REST


class OtpVersionCache(PreloadCache):
    def __init__(
        self,
        server_url: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = OTP_HTTP_TIMEOUT_S,
        ttl_ms: float = CACHE_TTL_MS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        super().__init__("otp_server_cache", ttl_ms=ttl_ms, clock=clock)
        self.server_url = server_url
        self.http_client = http_client
        self.timeout_s = timeout_s

    async def preload(self, force_refresh: bool = False) -> Optional[str]:
        if not self.server_url:
            # Trip planning disabled for this deployment.
            return None
        return await super().preload(force_refresh)

    async def fetch(self) -> str:
        if self.http_client is not None:
            return await self._detect(self.http_client)
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            return await self._detect(client)

    async def _detect(self, client: httpx.AsyncClient) -> str:
        response = await client.get(self.server_url)
        response.raise_for_status()
        content_type = response.headers.get("content-type") or ""
        if "application/json" in content_type:
            api_type = api_type_from_version(response.json())
        else:
            # OTP 1.x returns XML
            api_type = OTP_API_REST
        print(f"[otp_server_cache] detected {api_type} API at {self.server_url}")
        return api_type


otp_version_cache = OtpVersionCache(OTP_SERVER_URL)


async def preload_otp_version(force_refresh: bool = False) -> None:
    """Detect the OTP API dialect unless a fresh detection is cached."""
    await otp_version_cache.preload(force_refresh)


def get_otp_api_type() -> Optional[str]:
    """Return ``"graphql"``, ``"rest"``, or None when not (yet) detected."""
    return otp_version_cache.value


def get_otp_cache_timestamp() -> Optional[float]:
    return otp_version_cache.ts


def clear_otp_cache() -> None:
    otp_version_cache.clear()
