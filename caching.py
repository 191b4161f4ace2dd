from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional


class TTLCache:
    """Single-flight TTL cache.

    Concurrent misses share one in-flight fetch. A failed fetch leaves the
    previous value in place and re-raises to every waiter.
    """

    def __init__(self, ttl: float):
        self.ttl = ttl
        self.value: Any = None
        self.ts: float = 0.0
        self.lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None

    def is_fresh(self, now: Optional[float] = None) -> bool:
        if self.value is None:
            return False
        now = time.time() if now is None else now
        return now - self.ts < self.ttl

    def age(self) -> Optional[float]:
        if self.value is None:
            return None
        return max(0.0, time.time() - self.ts)

    def peek(self) -> Any:
        return self.value

    def _reusable(self, task: Optional[asyncio.Task]) -> bool:
        # A task left behind by an event loop that has since closed is dead.
        return task is not None and not task.done() and task.get_loop() is asyncio.get_running_loop()

    async def _run(self, fetcher: Callable[[], Awaitable[Any]]):
        task = asyncio.current_task()
        try:
            data = await fetcher()
            self.value = data
            self.ts = time.time()
            return data
        finally:
            if self._inflight is task:
                self._inflight = None

    @staticmethod
    def _report(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            print(f"[cache] refresh failed: {exc!r}")

    async def get(self, fetcher: Callable[[], Awaitable[Any]], force: bool = False):
        async with self.lock:
            if not force and self.is_fresh():
                return self.value
            # Singleflight: reuse in-flight fetch task
            if self._reusable(self._inflight):
                inflight_task = self._inflight
            else:
                inflight_task = asyncio.create_task(self._run(fetcher))
                inflight_task.add_done_callback(self._report)
                self._inflight = inflight_task

        # Shielded so one caller's timeout or cancellation never cancels the
        # fetch the other callers are waiting on.
        return await asyncio.shield(inflight_task)


class PerKeyTTLCache:
    """LRU-bounded map of independent ``TTLCache`` instances."""

    def __init__(self, ttl: float, max_keys: int = 100):
        self.ttl = ttl
        self.max_keys = max_keys
        self._caches: Dict[Any, TTLCache] = {}
        self._access_order: List[Any] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._caches)

    async def get(self, key: Any, fetcher: Callable[[], Awaitable[Any]]):
        async with self._lock:
            cache = self._caches.get(key)
            if cache is None:
                while len(self._caches) >= self.max_keys and self._access_order:
                    oldest = self._access_order.pop(0)
                    self._caches.pop(oldest, None)
                cache = TTLCache(self.ttl)
                self._caches[key] = cache
                self._access_order.append(key)
            else:
                if key in self._access_order:
                    self._access_order.remove(key)
                self._access_order.append(key)
        return await cache.get(fetcher)
