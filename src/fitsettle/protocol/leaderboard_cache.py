"""
fitsettle/protocol/leaderboard_cache.py

TTL cache for computed leaderboards.

Entries older than the TTL are recomputed on demand. With
get_or_compute_background(), an entry older than stale_after (but still
within the TTL) is served immediately and refreshed in the background, with
at most one refresh per key in flight.

The cache only affects display freshness. Settlement always recomputes from
a fresh fetch.

Usage:
    cache = LeaderboardCache(ttl=300, stale_after=60)
    key = CacheKey.for_competition(competition)
    result = await cache.get_or_compute(key, compute_leaderboard)
    if result.from_cache:
        print(f"cached {result.age_seconds:.0f}s ago")
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TYPE_CHECKING

import trio

from ..config import LEADERBOARD_STALE_SECONDS, LEADERBOARD_TTL_SECONDS

if TYPE_CHECKING:
    from ..metrics import SettlementMetrics
    from .competition import Competition

logger = logging.getLogger("fitsettle.protocol.leaderboard_cache")

ComputeFn = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class CacheKey:
    """Identifies one leaderboard computation."""
    competition_id: str
    scoring_policy: str
    window_start: Optional[int] = None
    window_end: Optional[int] = None

    @classmethod
    def for_competition(cls, competition: "Competition") -> "CacheKey":
        return cls(
            competition_id=competition.id,
            scoring_policy=competition.scoring_policy.value,
            window_start=competition.window_start,
            window_end=competition.window_end,
        )


@dataclass
class CachedResult:
    """A value and where it came from."""
    value: Any
    from_cache: bool
    age_seconds: float = 0.0
    stale: bool = False


@dataclass
class _Entry:
    value: Any
    stored_at: float
    ttl: float


class LeaderboardCache:
    """In-memory leaderboard cache with an injectable clock."""

    def __init__(
        self,
        ttl: float = LEADERBOARD_TTL_SECONDS,
        stale_after: float = LEADERBOARD_STALE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["SettlementMetrics"] = None,
    ):
        """
        Initialize LeaderboardCache.

        Args:
            ttl: Seconds an entry may be served at all
            stale_after: Seconds after which a background refresh is started
            clock: Monotonic time source
            metrics: Optional metrics collector
        """
        self.ttl = ttl
        self.stale_after = stale_after
        self._clock = clock
        self.metrics = metrics

        self._entries: Dict[CacheKey, _Entry] = {}
        self._refreshing: Set[CacheKey] = set()

        self._hits = 0
        self._misses = 0
        self._stale_hits = 0
        self._refresh_failures = 0

    def _record(self, result: str) -> None:
        if result == "hit":
            self._hits += 1
        elif result == "stale":
            self._stale_hits += 1
        else:
            self._misses += 1
        if self.metrics:
            self.metrics.record_cache(result)

    def _age(self, entry: _Entry) -> float:
        return max(0.0, self._clock() - entry.stored_at)

    def get(self, key: CacheKey) -> Optional[CachedResult]:
        """Cached value within its TTL, or None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = self._age(entry)
        if age >= entry.ttl:
            return None
        return CachedResult(value=entry.value, from_cache=True, age_seconds=age)

    def put(self, key: CacheKey, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock(), ttl=self.ttl if ttl is None else ttl)

    async def get_or_compute(self, key: CacheKey, compute_fn: ComputeFn, ttl: Optional[float] = None) -> CachedResult:
        """
        Serve a cached value within its TTL, otherwise compute and store it.

        Args:
            key: Cache key
            compute_fn: Async callable producing the value
            ttl: Override of the cache TTL for this entry

        Returns:
            CachedResult (from_cache=False when computed now)
        """
        cached = self.get(key)
        if cached is not None:
            self._record("hit")
            return cached

        self._record("miss")
        value = await compute_fn()
        self.put(key, value, ttl)
        return CachedResult(value=value, from_cache=False)

    async def get_or_compute_background(
        self,
        key: CacheKey,
        compute_fn: ComputeFn,
        nursery: trio.Nursery,
        ttl: Optional[float] = None,
        stale_after: Optional[float] = None,
    ) -> CachedResult:
        """
        Like get_or_compute(), but serves stale entries while refreshing.

        Args:
            key: Cache key
            compute_fn: Async callable producing the value
            nursery: Nursery the refresh task is started in
            ttl: Override of the cache TTL
            stale_after: Override of the staleness threshold

        Returns:
            CachedResult; stale=True when a refresh was needed
        """
        stale_after = self.stale_after if stale_after is None else stale_after
        entry = self._entries.get(key)

        if entry is not None:
            age = self._age(entry)
            if age < min(stale_after, entry.ttl):
                self._record("hit")
                return CachedResult(value=entry.value, from_cache=True, age_seconds=age)
            if age < entry.ttl:
                self._record("stale")
                if key not in self._refreshing:
                    self._refreshing.add(key)
                    nursery.start_soon(self._refresh, key, compute_fn, ttl)
                return CachedResult(value=entry.value, from_cache=True, age_seconds=age, stale=True)

        return await self.get_or_compute(key, compute_fn, ttl)

    async def _refresh(self, key: CacheKey, compute_fn: ComputeFn, ttl: Optional[float]) -> None:
        try:
            value = await compute_fn()
        except Exception as e:
            self._refresh_failures += 1
            logger.warning(f"Background refresh of {key.competition_id} failed; keeping cached value: {e}")
        else:
            self.put(key, value, ttl)
            logger.debug(f"Refreshed leaderboard for {key.competition_id}")
        finally:
            self._refreshing.discard(key)

    def is_refreshing(self, key: CacheKey) -> bool:
        return key in self._refreshing

    def invalidate(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_competition(self, competition_id: str) -> int:
        """Drop every entry of a competition. Returns how many were dropped."""
        keys = [k for k in self._entries if k.competition_id == competition_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "stale_hits": self._stale_hits,
            "refreshing": len(self._refreshing),
            "refresh_failures": self._refresh_failures,
        }
