"""
fitsettle/tests/test_leaderboard_cache.py

Unit tests for the leaderboard cache (TTL, staleness, background refresh).
"""

import pytest
import trio

from fitsettle.metrics import SettlementMetrics
from fitsettle.protocol.competition import Competition
from fitsettle.protocol.leaderboard_cache import CacheKey, LeaderboardCache


# ============================================================================
# Fixtures
# ============================================================================

class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Counter:
    """Async compute function returning an increasing value."""

    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        await trio.sleep(0)
        if self.fail:
            raise RuntimeError("relays unreachable")
        return f"board-{self.calls}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return LeaderboardCache(ttl=300, stale_after=60, clock=clock)


@pytest.fixture
def key():
    return CacheKey("comp-1", "sum-distance", 0, 100)


# ============================================================================
# get_or_compute() Tests
# ============================================================================

class TestGetOrCompute:
    """Tests for TTL behaviour."""

    @pytest.mark.trio
    async def test_miss_then_hit(self, cache, clock, key):
        compute = Counter()

        first = await cache.get_or_compute(key, compute)
        clock.advance(30)
        second = await cache.get_or_compute(key, compute)

        assert first.from_cache is False
        assert first.value == "board-1"
        assert second.from_cache is True
        assert second.value == "board-1"
        assert second.age_seconds == pytest.approx(30)
        assert compute.calls == 1

    @pytest.mark.trio
    async def test_expired_recomputes(self, cache, clock, key):
        compute = Counter()

        await cache.get_or_compute(key, compute)
        clock.advance(301)
        result = await cache.get_or_compute(key, compute)

        assert result.from_cache is False
        assert result.value == "board-2"

    @pytest.mark.trio
    async def test_ttl_override(self, cache, clock, key):
        compute = Counter()

        await cache.get_or_compute(key, compute, ttl=10)
        clock.advance(11)
        result = await cache.get_or_compute(key, compute)

        assert result.from_cache is False

    @pytest.mark.trio
    async def test_compute_error_propagates(self, cache, key):
        with pytest.raises(RuntimeError):
            await cache.get_or_compute(key, Counter(fail=True))
        assert cache.get(key) is None

    @pytest.mark.trio
    async def test_keys_distinguish_windows(self, cache):
        compute = Counter()

        await cache.get_or_compute(CacheKey("comp-1", "count", 0, 100), compute)
        result = await cache.get_or_compute(CacheKey("comp-1", "count", 0, 200), compute)

        assert result.from_cache is False

    @pytest.mark.trio
    async def test_metrics(self, clock, key):
        metrics = SettlementMetrics()
        cache = LeaderboardCache(clock=clock, metrics=metrics)
        compute = Counter()

        await cache.get_or_compute(key, compute)
        await cache.get_or_compute(key, compute)

        assert metrics.get_stats()["cache"] == {"hit": 1, "miss": 1, "stale": 0}


# ============================================================================
# Background Refresh Tests
# ============================================================================

class TestBackgroundRefresh:
    """Tests for stale-while-refresh."""

    @pytest.mark.trio
    async def test_fresh_entry_served(self, cache, clock, key):
        compute = Counter()
        await cache.get_or_compute(key, compute)
        clock.advance(10)

        async with trio.open_nursery() as nursery:
            result = await cache.get_or_compute_background(key, compute, nursery)

        assert result.from_cache is True
        assert result.stale is False
        assert compute.calls == 1

    @pytest.mark.trio
    async def test_stale_served_and_refreshed(self, cache, clock, key):
        compute = Counter()
        await cache.get_or_compute(key, compute)
        clock.advance(90)

        async with trio.open_nursery() as nursery:
            result = await cache.get_or_compute_background(key, compute, nursery)
            assert result.value == "board-1"
            assert result.stale is True

        assert compute.calls == 2
        assert cache.get(key).value == "board-2"
        assert cache.is_refreshing(key) is False

    @pytest.mark.trio
    async def test_single_refresh_in_flight(self, cache, clock, key):
        compute = Counter()
        await cache.get_or_compute(key, compute)
        clock.advance(90)

        async with trio.open_nursery() as nursery:
            for _ in range(5):
                await cache.get_or_compute_background(key, compute, nursery)
            assert cache.is_refreshing(key) is True

        assert compute.calls == 2

    @pytest.mark.trio
    async def test_refresh_failure_keeps_value(self, cache, clock, key):
        await cache.get_or_compute(key, Counter())
        clock.advance(90)

        async with trio.open_nursery() as nursery:
            await cache.get_or_compute_background(key, Counter(fail=True), nursery)

        assert cache.get(key).value == "board-1"
        assert cache.get_stats()["refresh_failures"] == 1

    @pytest.mark.trio
    async def test_missing_entry_computed_inline(self, cache, key):
        compute = Counter()

        async with trio.open_nursery() as nursery:
            result = await cache.get_or_compute_background(key, compute, nursery)

        assert result.from_cache is False
        assert result.value == "board-1"


# ============================================================================
# Invalidation Tests
# ============================================================================

class TestInvalidation:
    """Tests for invalidation helpers."""

    @pytest.mark.trio
    async def test_invalidate(self, cache, key):
        await cache.get_or_compute(key, Counter())

        assert cache.invalidate(key) is True
        assert cache.invalidate(key) is False
        assert cache.get(key) is None

    @pytest.mark.trio
    async def test_invalidate_competition(self, cache):
        compute = Counter()
        await cache.get_or_compute(CacheKey("comp-1", "count", 0, 100), compute)
        await cache.get_or_compute(CacheKey("comp-1", "sum-distance", 0, 100), compute)
        await cache.get_or_compute(CacheKey("comp-2", "count", 0, 100), compute)

        assert cache.invalidate_competition("comp-1") == 2
        assert cache.get_stats()["entries"] == 1

    @pytest.mark.trio
    async def test_clear(self, cache, key):
        await cache.get_or_compute(key, Counter())
        cache.clear()
        assert cache.get_stats()["entries"] == 0

    def test_key_for_competition(self):
        competition = Competition(
            id="comp-1", team_id="t", scoring_policy="fastest_time", window_start=5, window_end=9,
        )
        assert CacheKey.for_competition(competition) == CacheKey("comp-1", "min-duration", 5, 9)
