"""
Tests for the query result cache.
"""
import asyncio

import pytest

from kondor.models.query_models import QueryMeta, QueryResult
from kondor.query.result_cache import QueryResultCache, cache_key


def _result(value: float = 1.0) -> QueryResult:
    return QueryResult(
        meta=QueryMeta(date_range={"start": "2026-01-01", "end": "2026-01-02"}, generated_at="now"),
        rows=[{"date": "2026-01-01", "sessions": value}],
        totals={"sessions": value},
    )


class Counter:
    """Compute callable that counts executions and can be held open."""

    def __init__(self, value: float = 1.0):
        self.calls = 0
        self.value = value
        self.release = None

    async def __call__(self):
        self.calls += 1
        if self.release is not None:
            await self.release.wait()
        return _result(self.value)


PAYLOAD = {"brand_id": "b1", "metrics": ["sessions"], "preset": "last_7d"}


class TestGetOrCompute:
    """Tests for QueryResultCache.get_or_compute."""

    async def test_hit_returns_independent_copy(self):
        """Should hand out deep copies so callers cannot mutate the cache."""
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)
        compute = Counter()

        first = await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        first.rows[0]["sessions"] = 999
        second = await cache.get_or_compute("t1", "b1", PAYLOAD, compute)

        assert compute.calls == 1
        assert second.rows[0]["sessions"] == 1.0
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1

    async def test_tenant_is_part_of_key(self):
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)
        compute = Counter()
        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        await cache.get_or_compute("t2", "b1", PAYLOAD, compute)
        assert compute.calls == 2
        assert cache_key("t1", PAYLOAD) != cache_key("t2", PAYLOAD)

    async def test_identical_concurrent_queries_coalesce(self):
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)
        compute = Counter()
        compute.release = asyncio.Event()

        tasks = [
            asyncio.create_task(cache.get_or_compute("t1", "b1", PAYLOAD, compute))
            for _ in range(4)
        ]
        await asyncio.sleep(0.01)
        compute.release.set()
        results = await asyncio.gather(*tasks)

        assert compute.calls == 1
        assert cache.stats.coalesced == 3
        assert all(r.totals == {"sessions": 1.0} for r in results)

    async def test_errors_are_not_cached(self):
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)
        calls = {"n": 0}

        async def failing():
            calls["n"] += 1
            raise RuntimeError("boom")

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await cache.get_or_compute("t1", "b1", PAYLOAD, failing)
        assert calls["n"] == 2
        assert len(cache) == 0

    async def test_expired_entry_recomputes(self):
        now = {"t": 100.0}
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2, clock=lambda: now["t"])
        compute = Counter()
        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        now["t"] += 31
        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        assert compute.calls == 2

    async def test_capacity_evicts_oldest(self):
        cache = QueryResultCache(ttl_seconds=30, max_entries=2, concurrency=2)
        compute = Counter()
        for n in range(3):
            await cache.get_or_compute("t1", "b1", {**PAYLOAD, "limit": n + 1}, compute)
        assert len(cache) == 2
        assert cache.stats.evictions == 1
        await cache.get_or_compute("t1", "b1", {**PAYLOAD, "limit": 1}, compute)
        assert compute.calls == 4


class TestInvalidation:
    """Tests for brand invalidation and generation fencing."""

    async def test_invalidate_brand_drops_only_that_brand(self):
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)
        compute = Counter()
        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        await cache.get_or_compute("t1", "b2", {**PAYLOAD, "brand_id": "b2"}, compute)

        assert cache.invalidate_brand("t1", "b1") == 1
        assert len(cache) == 1

        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        assert compute.calls == 3

    async def test_result_computed_across_invalidation_is_not_stored(self):
        """Should not cache a result whose computation straddled a write."""
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)
        compute = Counter()
        compute.release = asyncio.Event()

        task = asyncio.create_task(cache.get_or_compute("t1", "b1", PAYLOAD, compute))
        await asyncio.sleep(0.01)
        cache.invalidate_brand("t1", "b1")
        compute.release.set()
        await task

        assert len(cache) == 0
        compute.release = None
        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        assert compute.calls == 2

    async def test_clear_resets_stats(self):
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)
        await cache.get_or_compute("t1", "b1", PAYLOAD, Counter())
        cache.clear()
        assert len(cache) == 0
        assert cache.stats.to_dict()["misses"] == 0

    async def test_restamp_keeps_result_of_own_write(self):
        """Should cache a result whose computation wrote facts and restamped."""
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)

        async def compute():
            cache.invalidate_brand("t1", "b1")
            cache.restamp("t1", "b1", PAYLOAD)
            return _result()

        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        assert len(cache) == 1

    async def test_write_after_restamp_still_fences(self):
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)

        async def compute():
            cache.restamp("t1", "b1", PAYLOAD)
            cache.invalidate_brand("t1", "b1")
            return _result()

        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        assert len(cache) == 0

    async def test_revoked_query_can_not_be_restamped(self):
        """Should keep results of queries that straddled a binding switch out of the cache."""
        cache = QueryResultCache(ttl_seconds=30, max_entries=10, concurrency=2)

        async def compute():
            cache.invalidate_brand("t1", "b1", revoke_inflight=True)
            cache.restamp("t1", "b1", PAYLOAD)
            return _result()

        await cache.get_or_compute("t1", "b1", PAYLOAD, compute)
        assert len(cache) == 0
