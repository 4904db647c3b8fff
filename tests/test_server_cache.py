"""
Tests for the routes/agencies/bounds server cache.

Covers:
- First load populates routes, agencies and bounds
- Agency reference join onto routes
- TTL freshness, expiry and forced refresh
- Single-flight preloading under concurrency
- Failure handling with and without prior data
- clear_cache() reset, including while a refresh is in flight
"""
import asyncio
import copy
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import server_cache  # noqa: E402
from preload_cache import CACHE_TTL_MS, CacheState  # noqa: E402
from server_cache import (  # noqa: E402
    attach_agency_info,
    clear_cache,
    get_agencies_cache,
    get_bounds_cache,
    get_cache_state,
    get_cache_timestamp,
    get_routes_cache,
    preload_routes_data,
    routes_cache,
    set_oba_client,
)

MOCK_AGENCIES = [
    {
        "agencyId": "agency1",
        "name": "Test Agency 1",
        "lat": 47.6062,
        "lon": -122.3321,
        "latSpan": 1.0,
        "lonSpan": 1.0,
    },
    {
        "agencyId": "agency2",
        "name": "Test Agency 2",
        "lat": 47.5,
        "lon": -122.5,
        "latSpan": 0.5,
        "lonSpan": 0.5,
    },
]

MOCK_AGENCY_REFERENCES = [
    {"id": "agency1", "name": "Test Agency 1"},
    {"id": "agency2", "name": "Test Agency 2"},
]

MOCK_ROUTES = {
    "agency1": [
        {"id": "route1", "agencyId": "agency1", "shortName": "1", "longName": "Route 1"},
        {"id": "route2", "agencyId": "agency1", "shortName": "2", "longName": "Route 2"},
    ],
    "agency2": [
        {"id": "route3", "agencyId": "agency2", "shortName": "3", "longName": "Route 3"},
    ],
}


class FakeOBAClient:
    def __init__(self, agencies=None, routes=None, references=None, delay: float = 0.0):
        self.agencies = agencies if agencies is not None else MOCK_AGENCIES
        self.routes = routes if routes is not None else MOCK_ROUTES
        self.references = references if references is not None else MOCK_AGENCY_REFERENCES
        self.delay = delay
        self.error = None
        self.agency_calls = 0
        self.route_calls = []

    async def list_agencies_with_coverage(self):
        self.agency_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"list": copy.deepcopy(self.agencies)}

    async def list_routes_for_agency(self, agency_id):
        self.route_calls.append(agency_id)
        return {
            "list": copy.deepcopy(self.routes.get(agency_id, [])),
            "references": {"agencies": copy.deepcopy(self.references)},
        }

    async def aclose(self):
        pass


@pytest.fixture
def clock(monkeypatch):
    now = [1_700_000_000_000.0]
    monkeypatch.setattr(routes_cache, "clock", lambda: now[0])
    return now


@pytest.fixture
def oba():
    clear_cache()
    client = FakeOBAClient()
    set_oba_client(client)
    yield client
    clear_cache()
    set_oba_client(None)


def test_first_preload_populates_all_caches(oba, clock):
    asyncio.run(preload_routes_data())

    assert oba.agency_calls == 1
    assert sorted(oba.route_calls) == ["agency1", "agency2"]
    assert get_agencies_cache() == MOCK_AGENCIES
    assert get_cache_state() == CacheState.LOADED
    assert get_cache_timestamp() == clock[0]

    routes = get_routes_cache()
    assert [r["id"] for r in routes] == ["route1", "route2", "route3"]

    bounds = get_bounds_cache()
    assert bounds.north == pytest.approx(48.1062)
    assert bounds.south == pytest.approx(47.1062)
    assert bounds.east == pytest.approx(-121.8321)
    assert bounds.west == pytest.approx(-122.8321)


def test_routes_carry_agency_info(oba, clock):
    asyncio.run(preload_routes_data())

    route1 = next(r for r in get_routes_cache() if r["id"] == "route1")
    assert route1["agencyInfo"] == {"id": "agency1", "name": "Test Agency 1"}


def test_agency_info_comes_from_reference_block(oba, clock):
    oba.agencies = [{"agencyId": "1", "lat": 47.0, "lon": -122.0, "latSpan": 0.2, "lonSpan": 0.2}]
    oba.routes = {"1": [{"id": "route1", "agencyId": "1"}]}
    oba.references = [{"id": "1", "name": "Test Agency"}]

    asyncio.run(preload_routes_data())

    route = get_routes_cache()[0]
    assert route["agencyInfo"]["name"] == "Test Agency"
    assert route["agencyInfo"] != get_agencies_cache()[0]


def test_attach_agency_info_leaves_unknown_agency_empty():
    routes = [{"id": "r1", "agencyId": "missing"}]
    attach_agency_info(routes, {"agencies": [{"id": "other"}]})
    assert routes[0]["agencyInfo"] is None


def test_fresh_cache_skips_upstream(oba, clock):
    asyncio.run(preload_routes_data())
    asyncio.run(preload_routes_data())
    asyncio.run(preload_routes_data())

    assert oba.agency_calls == 1
    assert len(oba.route_calls) == 2


def test_concurrent_preloads_share_one_fetch(oba, clock):
    oba.delay = 0.05

    async def _run():
        await asyncio.gather(*(preload_routes_data() for _ in range(10)))

    asyncio.run(_run())

    assert oba.agency_calls == 1
    assert len(get_routes_cache()) == 3


def test_refetches_after_ttl(oba, clock):
    asyncio.run(preload_routes_data())

    clock[0] += CACHE_TTL_MS
    asyncio.run(preload_routes_data())
    assert oba.agency_calls == 1

    clock[0] += 1
    asyncio.run(preload_routes_data())
    assert oba.agency_calls == 2
    assert get_cache_timestamp() == clock[0]


def test_force_refresh_bypasses_fresh_cache(oba, clock):
    asyncio.run(preload_routes_data())
    asyncio.run(preload_routes_data(force_refresh=True))

    assert oba.agency_calls == 2


def test_first_failure_leaves_cache_empty(oba, clock):
    oba.error = RuntimeError("API Error")

    asyncio.run(preload_routes_data())

    assert get_routes_cache() is None
    assert get_agencies_cache() is None
    assert get_bounds_cache() is None
    assert get_cache_timestamp() is None
    assert get_cache_state() == CacheState.ERROR
    assert routes_cache.last_error == "API Error"


def test_failure_after_success_keeps_prior_data(oba, clock):
    asyncio.run(preload_routes_data())
    routes_before = get_routes_cache()
    ts_before = get_cache_timestamp()

    oba.error = RuntimeError("upstream down")
    clock[0] += 1000
    asyncio.run(preload_routes_data(force_refresh=True))

    assert get_routes_cache() is routes_before
    assert get_cache_timestamp() == ts_before
    assert get_cache_state() == CacheState.ERROR


def test_retries_on_next_call_after_failure(oba, clock):
    oba.error = RuntimeError("API Error")
    asyncio.run(preload_routes_data())
    assert get_routes_cache() is None

    oba.error = None
    asyncio.run(preload_routes_data())
    assert len(get_routes_cache()) == 3
    assert get_cache_state() == CacheState.LOADED


def test_missing_oba_configuration_is_a_refresh_failure(monkeypatch, clock):
    clear_cache()
    set_oba_client(None)
    monkeypatch.delenv("OBA_SERVER_URL", raising=False)

    asyncio.run(preload_routes_data())

    assert get_routes_cache() is None
    assert get_cache_state() == CacheState.ERROR
    clear_cache()


def test_clear_cache_resets_everything(oba, clock):
    asyncio.run(preload_routes_data())
    clear_cache()

    assert get_routes_cache() is None
    assert get_agencies_cache() is None
    assert get_bounds_cache() is None
    assert get_cache_timestamp() is None
    assert get_cache_state() == CacheState.UNINITIALIZED


def test_clear_during_refresh_discards_result(oba, clock):
    oba.delay = 0.05

    async def _run():
        task = asyncio.create_task(preload_routes_data())
        await asyncio.sleep(0.01)
        assert get_cache_state() == CacheState.LOADING
        clear_cache()
        await task

    asyncio.run(_run())

    assert get_routes_cache() is None
    assert get_cache_state() == CacheState.UNINITIALIZED
    assert not routes_cache.is_refreshing()


def test_module_singleton_is_routes_cache():
    assert server_cache.routes_cache is routes_cache
