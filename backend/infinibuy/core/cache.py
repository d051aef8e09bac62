"""
In-Process TTL Cache
Infinibuy Trading Core

Small expiring key/value store used for:
- Quote caching (a few seconds, keyed by ticker:exchange)
- Ticker-to-exchange lookups
- Per-user token issuance cooldowns

Instances are passed explicitly to the components that use them so
tests can substitute or reset them.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar


V = TypeVar("V")


@dataclass
class CacheStats:
    """Hit/miss counters."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class TTLCache(Generic[V]):
    """
    Expiring cache with lazy eviction.

    Usage:
        prices = TTLCache(default_ttl=5.0)
        prices.set("AAPL:NAS", quote)
        prices.get("AAPL:NAS")
    """

    def __init__(
        self,
        default_ttl: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10000,
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[float, V]] = {}
        self.stats = CacheStats()

    def get(self, key: str) -> Optional[V]:
        """Get a live value, evicting it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.stats.evictions += 1
            self.stats.misses += 1
            return None

        self.stats.hits += 1
        return value

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        """Store a value for ttl seconds (default_ttl when omitted)."""
        if len(self._entries) >= self.max_entries:
            self.cleanup()
        lifetime = self.default_ttl if ttl is None else ttl
        self._entries[key] = (self._clock() + lifetime, value)
        self.stats.sets += 1

    def remaining(self, key: str) -> float:
        """Seconds until key expires, 0 when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return 0.0
        return max(0.0, entry[0] - self._clock())

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self.stats = CacheStats()

    def cleanup(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self.stats.evictions += len(expired)
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return self.remaining(key) > 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "sets": self.stats.sets,
            "evictions": self.stats.evictions,
            "hit_rate": round(self.stats.hit_rate, 4),
        }
