"""
Server-side cache of OneBusAway agencies, routes and region bounds.

The full route list is expensive to build (one routes-for-agency call per
agency), so it is fetched once, kept for an hour, and refreshed on the first
access after it goes stale. Request handlers read the last known snapshot
synchronously through the ``get_*`` functions and never wait on a refresh.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from geo_utils import Bounds, calculate_bounds_from_agencies
from oba_client import OBAClient
from preload_cache import CACHE_TTL_MS, CacheState, PreloadCache


@dataclass
class RoutesSnapshot:
    """One consistent result of the agencies + routes fetch pipeline."""
    routes: List[Dict[str, Any]] = field(default_factory=list)
    agencies: List[Dict[str, Any]] = field(default_factory=list)
    bounds: Optional[Bounds] = None


def attach_agency_info(routes: List[Dict[str, Any]], references: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Set ``agencyInfo`` on each route from the response's agency references."""
    agency_reference_map = {
        agency.get("id"): agency for agency in references.get("agencies") or []
    }
    for route in routes:
        route["agencyInfo"] = agency_reference_map.get(route.get("agencyId"))
    return routes


class RoutesCache(PreloadCache):
    def __init__(
        self,
        client_factory: Callable[[], OBAClient] = OBAClient.from_env,
        ttl_ms: float = CACHE_TTL_MS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        super().__init__("routes_cache", ttl_ms=ttl_ms, clock=clock)
        self._client_factory = client_factory
        self._client: Optional[OBAClient] = None

    @property
    def client(self) -> OBAClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    @client.setter
    def client(self, client: Optional[OBAClient]) -> None:
        self._client = client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self) -> RoutesSnapshot:
        client = self.client
        agencies_response = await client.list_agencies_with_coverage()
        agencies = agencies_response["list"]
        bounds = calculate_bounds_from_agencies(agencies)

        async def _routes_for(agency: Dict[str, Any]) -> List[Dict[str, Any]]:
            routes_response = await client.list_routes_for_agency(agency["agencyId"])
            return attach_agency_info(
                routes_response["list"],
                routes_response.get("references") or {},
            )

        per_agency = await asyncio.gather(*(_routes_for(agency) for agency in agencies))
        routes = [route for agency_routes in per_agency for route in agency_routes]
        print(f"[routes_cache] fetched {len(routes)} routes for {len(agencies)} agencies")
        return RoutesSnapshot(routes=routes, agencies=agencies, bounds=bounds)


routes_cache = RoutesCache()


def set_oba_client(client: Optional[OBAClient]) -> None:
    routes_cache.client = client


async def preload_routes_data(force_refresh: bool = False) -> None:
    """Load routes into the cache unless a fresh snapshot is already present."""
    await routes_cache.preload(force_refresh)


def get_routes_cache() -> Optional[List[Dict[str, Any]]]:
    snapshot: Optional[RoutesSnapshot] = routes_cache.value
    return snapshot.routes if snapshot is not None else None


def get_agencies_cache() -> Optional[List[Dict[str, Any]]]:
    snapshot: Optional[RoutesSnapshot] = routes_cache.value
    return snapshot.agencies if snapshot is not None else None


def get_bounds_cache() -> Optional[Bounds]:
    snapshot: Optional[RoutesSnapshot] = routes_cache.value
    return snapshot.bounds if snapshot is not None else None


def get_cache_state() -> CacheState:
    return routes_cache.state


def get_cache_timestamp() -> Optional[float]:
    return routes_cache.ts


def clear_cache() -> None:
    """Reset every cached field (used by tests and manual invalidation)."""
    routes_cache.clear()
