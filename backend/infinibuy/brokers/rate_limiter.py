"""
Per-Credential Rate Limiter
Infinibuy Trading Core

Paces outbound venue calls so that each app key keeps a minimum
spacing between request starts, and retries calls the venue rejected
for exceeding its rate limit with exponential backoff.

One limiter instance is shared by every client built for the same
process, so pacing holds across strategies.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from loguru import logger

from infinibuy.core.exceptions import RateLimitedError


T = TypeVar("T")


class RateLimiter:
    """
    Keyed request spacing + rate-limit retry.

    Usage:
        limiter = RateLimiter(spacing_ms=100)
        quote = await limiter.execute(app_key, lambda: client.fetch_quote(...))
    """

    def __init__(
        self,
        spacing_ms: int = 100,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.spacing_ms = spacing_ms
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_request: Dict[str, float] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def acquire(self, key: str) -> None:
        """Wait until key may issue its next request."""
        async with self._lock_for(key):
            loop = asyncio.get_running_loop()
            now = loop.time() * 1000  # ms
            last = self._last_request.get(key)
            if last is not None:
                elapsed = now - last
                if elapsed < self.spacing_ms:
                    await self._sleep((self.spacing_ms - elapsed) / 1000)
            self._last_request[key] = loop.time() * 1000

    def get_delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based)."""
        return self.backoff_seconds * (2 ** attempt)

    async def execute(self, key: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run call under key's pacing, retrying on RateLimitedError.

        Other exceptions propagate immediately.
        """
        attempt = 0
        while True:
            await self.acquire(key)
            try:
                return await call()
            except RateLimitedError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Rate limit retries exhausted for {key[:8]}...: {e}")
                    raise
                delay = self.get_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Rate limited ({e.code or e.status}), retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._last_request.clear()
        else:
            self._last_request.pop(key, None)
