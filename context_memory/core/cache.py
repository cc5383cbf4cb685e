"""Short-lived caching and debouncing for context retrieval."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from context_memory.models.schemas import CacheEntry, ContextResult, now_ms

logger = logging.getLogger(__name__)


class ContextCache:
    """Single-slot TTL cache for the last computed ``ContextResult``."""

    def __init__(self, ttl_ms: int = 2000):
        self.ttl_ms = ttl_ms
        self._entry: Optional[CacheEntry] = None
        self.hits = 0
        self.misses = 0

    def get(self) -> Optional[ContextResult]:
        """The cached result, or None if empty or expired."""
        entry = self._entry
        if entry is None or now_ms() - entry.computed_at >= self.ttl_ms:
            self.misses += 1
            return None

        self.hits += 1
        return entry.value

    def set(self, value: ContextResult):
        self._entry = CacheEntry.model_construct(value=value, computed_at=now_ms())

    def invalidate(self):
        if self._entry is not None:
            logger.debug("Context cache invalidated")
        self._entry = None

    def get_stats(self) -> dict:
        entry = self._entry
        return {
            "cached": entry is not None,
            "age_ms": now_ms() - entry.computed_at if entry else None,
            "ttl_ms": self.ttl_ms,
            "hits": self.hits,
            "misses": self.misses,
        }


class Debouncer:
    """Single-flight, cancel-and-reschedule debounce.

    A call that arrives within ``delay_ms`` of the last resolved call, or
    while a debounced call is pending, cancels the pending timer and starts
    a new one. When the timer finally fires the function runs once and
    every waiting caller gets that result. Calls outside the window run
    immediately.
    """

    def __init__(self, delay_ms: int = 500):
        self.delay_ms = delay_ms
        self._timer: Optional[asyncio.Task] = None
        self._waiters: List[asyncio.Future] = []
        self._last_resolved: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def _within_window(self) -> bool:
        if self._last_resolved is None:
            return False
        return (time.monotonic() - self._last_resolved) * 1000 < self.delay_ms

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        if not self.pending and not self._within_window():
            try:
                return await func()
            finally:
                self._last_resolved = time.monotonic()

        if self._timer is not None:
            self._timer.cancel()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._timer = asyncio.create_task(self._fire(func))
        return await waiter

    async def _fire(self, func: Callable[[], Awaitable[Any]]):
        await asyncio.sleep(self.delay_ms / 1000)

        waiters, self._waiters = self._waiters, []
        self._timer = None
        try:
            result = await func()
        except Exception as e:
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(e)
            return
        finally:
            self._last_resolved = time.monotonic()

        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(result)

    def cancel(self):
        """Drop the pending call; its waiters are cancelled."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        for waiter in self._waiters:
            if not waiter.done():
                waiter.cancel()
        self._waiters = []
