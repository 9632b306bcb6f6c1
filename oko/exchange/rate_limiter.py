"""
Shared request queue for exchange calls.

Bounded concurrency plus a minimum spacing between request starts. One instance
is shared by every caller of an adapter so bursts of per-position calls stay
within venue limits.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, TypeVar

from oko.constants import DEFAULT_MAX_CONCURRENT_REQUESTS, DEFAULT_MIN_REQUEST_INTERVAL_MS

T = TypeVar("T")


class RateLimiter:
    """Semaphore-bounded queue with a minimum interval between request starts."""

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        min_interval_ms: int = DEFAULT_MIN_REQUEST_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval_ms / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._last_request = float("-inf")
        self._running = 0
        self._waiting = 0

    async def _wait_turn(self) -> None:
        async with self._spacing_lock:
            elapsed = self._clock() - self._last_request
            if elapsed < self.min_interval:
                await self._sleep(self.min_interval - elapsed)
            self._last_request = self._clock()

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn once a concurrency slot is free and the spacing interval has passed."""
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._running += 1
        try:
            await self._wait_turn()
            return await fn()
        finally:
            self._running -= 1
            self._semaphore.release()

    def status(self) -> Dict[str, int]:
        return {
            "queue_length": self._waiting,
            "running": self._running,
            "max_concurrent": self.max_concurrent,
        }
