"""TTL-bounded preload cache with single-flight refresh.

A ``PreloadCache`` holds the last successfully fetched value of one upstream
resource. ``preload()`` refreshes it when it is missing, stale, or a refresh is
forced, sharing one in-flight fetch between all concurrent callers. Failed
refreshes are logged and swallowed so callers only ever observe the last good
value (or ``None`` before the first success).
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Optional

# Cache TTL: 1 hour
CACHE_TTL_MS = 3_600_000


class CacheState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


def _now_ms() -> float:
    return time.time() * 1000


class PreloadCache:
    def __init__(
        self,
        name: str,
        ttl_ms: float = CACHE_TTL_MS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.name = name
        self.ttl_ms = ttl_ms
        self.clock = clock or _now_ms
        self.value: Any = None
        self.ts: Optional[float] = None
        self.state = CacheState.UNINITIALIZED
        self.last_error: Optional[str] = None
        self._inflight: Optional[asyncio.Task] = None

    async def fetch(self) -> Any:
        raise NotImplementedError

    def is_stale(self, now: float) -> bool:
        return self.ts is not None and now - self.ts > self.ttl_ms

    def is_refreshing(self) -> bool:
        return self._inflight is not None

    async def preload(self, force_refresh: bool = False) -> Any:
        now = self.clock()
        if self.value is not None and not self.is_stale(now) and not force_refresh:
            return self.value

        # Singleflight: no await between the check and the assignment below.
        inflight_task = self._inflight
        if inflight_task is None:
            inflight_task = asyncio.create_task(self._refresh(now))
            self._inflight = inflight_task
            self.state = CacheState.LOADING
        # A cancelled caller must not cancel the fetch shared with the others.
        return await asyncio.shield(inflight_task)

    async def _refresh(self, started_at: float) -> Any:
        task = asyncio.current_task()
        data: Any = None
        error: Optional[Exception] = None
        try:
            data = await self.fetch()
        except Exception as exc:
            error = exc
        finally:
            owner = self._inflight is task
            if owner:
                self._inflight = None

        if not owner:
            # clear() ran while fetching; drop the result.
            return self.value
        if error is not None:
            print(f"[{self.name}] refresh failed: {error!r}")
            self.state = CacheState.ERROR
            self.last_error = str(error) or error.__class__.__name__
            return self.value

        self.value = data
        self.ts = started_at
        self.state = CacheState.LOADED
        self.last_error = None
        print(f"[{self.name}] refresh completed")
        return data

    def clear(self) -> None:
        self.value = None
        self.ts = None
        self.state = CacheState.UNINITIALIZED
        self.last_error = None
        self._inflight = None
