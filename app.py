"""
Transit Rider Web Service (FastAPI)

Purpose
=======
Proxy OneBusAway (OBA) and OpenTripPlanner (OTP) for the rider-facing web app:
route lookup, region bounds and trip planning.

Key features
------------
- Preload the full agency/route list and region bounds into an in-memory cache
  at startup; refresh it hourly on access.
- Detect once whether the OTP server speaks GraphQL (OTP 2.x) or REST (OTP 1.x)
  and plan trips in the matching dialect.
- Cache status and a forced refresh endpoint for operators.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
"""

from __future__ import annotations

import asyncio
import os
import secrets
import time
from datetime import datetime
from typing import Any, Dict, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from fastapi import FastAPI, HTTPException, Request

from geo_utils import calculate_radius_from_bounds
from otp_plan import (
    PlanRequestError,
    build_graphql_body,
    build_graphql_url,
    build_rest_plan_url,
    collect_plan_params,
    map_graphql_response,
)
from otp_server_cache import (
    OTP_API_GRAPHQL,
    get_otp_api_type,
    get_otp_cache_timestamp,
    otp_version_cache,
    preload_otp_version,
)
from preload_cache import CacheState
from server_cache import (
    get_agencies_cache,
    get_bounds_cache,
    get_cache_state,
    get_cache_timestamp,
    get_routes_cache,
    preload_routes_data,
    routes_cache,
)

# ---------------------------
# Config
# ---------------------------
OTP_TIMEZONE = (os.getenv("OTP_TIMEZONE") or "").strip()
OTP_PLAN_TIMEOUT = httpx.Timeout(30.0, connect=5.0)
CACHE_REFRESH_INTERVAL_S = int(os.getenv("CACHE_REFRESH_INTERVAL_S", "300"))
ROUTES_RETRY_AFTER_S = 5

_background_tasks: Set[asyncio.Task] = set()


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _otp_timezone() -> Optional[ZoneInfo]:
    if not OTP_TIMEZONE:
        return None
    try:
        return ZoneInfo(OTP_TIMEZONE)
    except ZoneInfoNotFoundError:
        print(f"[config] unknown OTP_TIMEZONE {OTP_TIMEZONE!r}; using server local time")
        return None


def _cache_admin_secret() -> str:
    return (os.getenv("CACHE_ADMIN_SECRET") or "").strip()


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Transit Rider Web")


@app.on_event("startup")
async def init_otp_client() -> None:
    app.state.otp_client = httpx.AsyncClient(timeout=OTP_PLAN_TIMEOUT)


@app.on_event("startup")
async def warm_caches() -> None:
    """Preload caches in the background so startup is never blocked by upstreams."""
    async def _refresher():
        while True:
            # Both preloads are no-ops while the cached values are fresh.
            results = await asyncio.gather(
                preload_routes_data(),
                preload_otp_version(),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    print(f"[startup] cache preload failed: {result!r}")
            await asyncio.sleep(CACHE_REFRESH_INTERVAL_S)

    app.state.cache_refresher = _spawn(_refresher())


@app.on_event("shutdown")
async def shutdown_clients() -> None:
    refresher = getattr(app.state, "cache_refresher", None)
    if refresher is not None:
        refresher.cancel()
    otp_client = getattr(app.state, "otp_client", None)
    if otp_client is not None:
        await otp_client.aclose()
    await routes_cache.aclose()


def _get_otp_client() -> Optional[httpx.AsyncClient]:
    return getattr(app.state, "otp_client", None)


def _raise_routes_unavailable() -> None:
    """Raise the HTTP error matching why no routes snapshot is available."""
    if get_cache_state() == CacheState.ERROR:
        raise HTTPException(status_code=500, detail="Failed to fetch routes data")
    raise HTTPException(
        status_code=503,
        detail="Routes data is still loading",
        headers={"Retry-After": str(ROUTES_RETRY_AFTER_S)},
    )


async def _load_routes_snapshot() -> None:
    if get_routes_cache() is None:
        if routes_cache.is_refreshing():
            _raise_routes_unavailable()
        await preload_routes_data()
        if get_routes_cache() is None:
            _raise_routes_unavailable()
    elif routes_cache.is_stale(routes_cache.clock()) and not routes_cache.is_refreshing():
        # Serve the stale snapshot; refresh behind the response.
        _spawn(preload_routes_data())


# ---------------------------
# OBA endpoints
# ---------------------------
@app.get("/api/oba/routes")
async def oba_routes():
    await _load_routes_snapshot()
    return {"routes": get_routes_cache()}


@app.get("/api/oba/agencies")
async def oba_agencies():
    await _load_routes_snapshot()
    bounds = get_bounds_cache()
    return {
        "agencies": get_agencies_cache(),
        "bounds": bounds.to_dict() if bounds is not None else None,
        # Meters from the region center to a corner, for radius-scoped searches.
        "radius": calculate_radius_from_bounds(bounds) if bounds is not None else None,
    }


# ---------------------------
# OTP endpoints
# ---------------------------
@app.get("/api/otp/plan")
async def otp_plan(request: Request):
    query = request.query_params
    if not query.get("fromPlace") or not query.get("toPlace"):
        raise HTTPException(status_code=400, detail="Missing required parameters: fromPlace and toPlace")

    base_url = otp_version_cache.server_url
    if not base_url:
        raise HTTPException(status_code=503, detail="Trip planning is not configured for this region")

    tz = _otp_timezone()
    params = collect_plan_params(query, datetime.now(tz))
    # Undetected servers are treated as OTP 1.x.
    use_graphql = get_otp_api_type() == OTP_API_GRAPHQL

    if use_graphql:
        try:
            body = build_graphql_body(params, tz)
        except PlanRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        url = build_graphql_url(base_url)
    else:
        body = None
        url = build_rest_plan_url(base_url, params)
    print(f"[otp_plan] {'GraphQL' if use_graphql else 'REST'} request: {url}")

    client = _get_otp_client()
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=OTP_PLAN_TIMEOUT)
    try:
        if use_graphql:
            response = await client.post(url, json=body, headers={"Accept": "application/json"})
        else:
            response = await client.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as exc:
        print(f"[otp_plan] request failed: {exc!r}")
        raise HTTPException(
            status_code=500,
            detail={"message": "Failed to fetch trip planning data", "error": str(exc)},
        )
    finally:
        if owns_client:
            await client.aclose()

    if response.is_error:
        raise HTTPException(
            status_code=response.status_code,
            detail=f"OpenTripPlanner API returned status {response.status_code}",
        )
    try:
        data = response.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=500,
            detail={"message": "Failed to fetch trip planning data", "error": str(exc)},
        )

    if use_graphql:
        return map_graphql_response(data)
    return data


# ---------------------------
# Cache administration
# ---------------------------
def _cache_status() -> Dict[str, Any]:
    routes = get_routes_cache()
    agencies = get_agencies_cache()
    return {
        "routes": {
            "state": get_cache_state().value,
            "timestamp": get_cache_timestamp(),
            "refreshing": routes_cache.is_refreshing(),
            "route_count": len(routes) if routes is not None else None,
            "agency_count": len(agencies) if agencies is not None else None,
            "last_error": routes_cache.last_error,
        },
        "otp": {
            "enabled": bool(otp_version_cache.server_url),
            "api_type": get_otp_api_type(),
            "timestamp": get_otp_cache_timestamp(),
            "refreshing": otp_version_cache.is_refreshing(),
            "last_error": otp_version_cache.last_error,
        },
    }


@app.get("/api/cache/status")
async def cache_status():
    return _cache_status()


@app.post("/api/cache/refresh")
async def cache_refresh(request: Request):
    expected = _cache_admin_secret()
    if expected:
        provided = request.headers.get("x-admin-secret") or ""
        if not secrets.compare_digest(provided, expected):
            raise HTTPException(status_code=401, detail="Invalid admin secret.")
    start = time.perf_counter()
    await asyncio.gather(preload_routes_data(True), preload_otp_version(True))
    duration = time.perf_counter() - start
    print(f"[cache_refresh] forced refresh completed in {duration:.2f}s")
    return {"ok": True, **_cache_status()}


@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "routes_cache": get_cache_state().value,
        "otp_api_type": get_otp_api_type(),
    }
