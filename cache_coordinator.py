"""
cache_coordinator.py
=====================
In-memory TTL cache with single-flight recomputation.

State per key:

    EMPTY --set--> FRESH --ttl elapsed / invalidate--> EMPTY

get_or_compute adds an IN_FLIGHT state between a miss and the resolution of
the triggered computation. Callers arriving while a key is IN_FLIGHT await
the same future instead of starting a second computation.

All mutation happens on the owning event loop, so the in-flight map is the
only coordination needed. A computation that raises still clears its
in-flight marker, and the error reaches every waiter. A waiter that gives up
(timeout, cancellation) never cancels the computation itself.

An entry expires when ``now - created_at >= ttl``; a zero TTL entry is
expired the moment it is stored.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import CACHE_TTL, get_logger

logger = get_logger(__name__)


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return self.ttl <= 0 or now - self.created_at >= self.ttl


class CacheCoordinator:
    """
    Parameters
    ----------
    default_ttl    : TTL in seconds used when ``set`` gets none
    sweep_interval : seconds between background sweeps of expired entries
    clock          : monotonic time source, injectable for tests
    """

    def __init__(
        self,
        default_ttl: float = CACHE_TTL["processed_data"],
        sweep_interval: float = CACHE_TTL["sweep_interval"],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[asyncio.Task] = None

    # -- Basic operations -----------------------------------------------------

    def get(self, key: str) -> Any:
        """Return the stored value, or MISS (evicting an expired entry)."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("Cache miss for %s", key)
            return MISS
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            logger.debug("Cache expired for %s", key)
            return MISS
        self._hits += 1
        logger.debug("Cache hit for %s", key)
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(key=key, value=value, created_at=self._clock(), ttl=ttl)
        logger.debug("Cached %s (ttl=%.1fs)", key, ttl)

    def has(self, key: str) -> bool:
        """Freshness check that does not touch the hit/miss counters."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return False
        return True

    def peek(self, key: str) -> Any:
        """Return the stored value even if expired, without evicting; MISS if absent."""
        entry = self._entries.get(key)
        return MISS if entry is None else entry.value

    def invalidate(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug("Invalidated %s", key)
        return removed

    def clear(self) -> None:
        """Drop every entry and reset the counters."""
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        logger.info("Cache cleared")

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def keys(self) -> List[str]:
        return list(self._entries)

    def info(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        return {
            "exists": True,
            "expired": entry.is_expired(now),
            "age": now - entry.created_at,
            "ttl": entry.ttl,
        }

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hitCount": self._hits,
            "missCount": self._misses,
            "hitRate": (self._hits / total * 100) if total else 0.0,
            "entryCount": len(self._entries),
            "inFlight": len(self._in_flight),
        }

    def __len__(self) -> int:
        return len(self._entries)

    # -- Single-flight --------------------------------------------------------

    async def get_or_compute(
        self,
        key: str,
        ttl: Optional[float],
        compute_fn: Callable[[], Awaitable[Any]],
        force: bool = False,
    ) -> Any:
        """
        Return the fresh value for ``key``, computing it at most once at a time.

        ``force`` skips the freshness check but still joins a computation that
        is already in flight rather than starting another one.
        """
        if not force:
            value = self.get(key)
            if value is not MISS:
                return value

        pending = self._in_flight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._compute(key, ttl, compute_fn))
            self._in_flight[key] = pending
        else:
            logger.debug("Joining in-flight computation for %s", key)
        return await asyncio.shield(pending)

    async def _compute(
        self,
        key: str,
        ttl: Optional[float],
        compute_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            value = await compute_fn()
            self.set(key, value, ttl)
            return value
        finally:
            self._in_flight.pop(key, None)

    # -- Background sweep -----------------------------------------------------

    def sweep(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
