"""
Tests for kondor.core.concurrency.
"""
import asyncio

import pytest

from kondor.core.concurrency import InFlightCache, KeyedGate, map_with_concurrency


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestInFlightCache:
    """Tests for InFlightCache coalescing + TTL."""

    async def test_concurrent_calls_share_one_execution(self):
        """Should run the factory once for identical concurrent keys."""
        cache = InFlightCache(ttl_seconds=30)
        started = 0
        release = asyncio.Event()

        async def work():
            nonlocal started
            started += 1
            await release.wait()
            return "done"

        tasks = [asyncio.create_task(cache.run(("t", "b"), work)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        assert await asyncio.gather(*tasks) == ["done"] * 5
        assert started == 1

    async def test_result_reused_until_ttl(self):
        clock = FakeClock()
        cache = InFlightCache(ttl_seconds=30, clock=clock)
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            return calls

        assert await cache.run("k", work) == 1
        clock.now += 10
        assert await cache.run("k", work) == 1
        clock.now += 30
        assert await cache.run("k", work) == 2

    async def test_failure_is_not_cached(self):
        """Should drop failed executions so the next caller retries."""
        cache = InFlightCache(ttl_seconds=30)
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("upstream down")
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.run("k", flaky)
        assert await cache.run("k", flaky) == "ok"

    async def test_cancelled_waiter_does_not_cancel_task(self):
        """Should keep the shared task running when one awaiter times out."""
        cache = InFlightCache(ttl_seconds=30)
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return 42

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.run("k", slow), timeout=0.01)
        release.set()
        assert await cache.run("k", slow) == 42

    async def test_invalidate_by_predicate(self):
        cache = InFlightCache(ttl_seconds=30)

        async def work():
            return 1

        await cache.run(("t1", "b1", "x"), work)
        await cache.run(("t1", "b2", "x"), work)
        assert cache.invalidate(lambda k: k[1] == "b1") == 1
        assert len(cache) == 1

    async def test_expired_entries_are_swept(self):
        """Should forget expired results of keys that never come back."""
        clock = FakeClock()
        cache = InFlightCache(ttl_seconds=1, clock=clock)

        async def work():
            return 1

        for n in range(100):
            await cache.run(("range", n), work)
        assert len(cache) == 100

        clock.now += 3600
        await cache.run(("range", "new"), work)
        assert len(cache) == 1

    async def test_invalidate_detaches_running_task(self):
        """Should let the next caller start over while earlier awaiters keep their task."""
        cache = InFlightCache(ttl_seconds=30)
        release = asyncio.Event()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            mine = calls
            await release.wait()
            return mine

        first = asyncio.create_task(cache.run("k", work))
        await asyncio.sleep(0)
        assert cache.invalidate(lambda k: k == "k") == 1
        second = asyncio.create_task(cache.run("k", work))
        await asyncio.sleep(0)
        release.set()

        assert sorted(await asyncio.gather(first, second)) == [1, 2]
        assert calls == 2


class TestKeyedGate:
    """Tests for KeyedGate."""

    async def test_width_is_enforced_per_key(self):
        gate = KeyedGate(width=2)
        peak = 0
        current = 0

        async def hold():
            nonlocal peak, current
            async with gate.hold("brand"):
                current += 1
                peak = max(peak, current)
                await asyncio.sleep(0.01)
                current -= 1

        await asyncio.gather(*(hold() for _ in range(6)))
        assert peak == 2
        assert gate.active("brand") == 0

    async def test_keys_are_independent(self):
        gate = KeyedGate(width=1)
        inside = []

        async def hold(key):
            async with gate.hold(key):
                inside.append(key)
                await asyncio.sleep(0.01)

        await asyncio.gather(hold("a"), hold("b"))
        assert sorted(inside) == ["a", "b"]


class TestMapWithConcurrency:
    async def test_preserves_order_and_bounds_parallelism(self):
        running = 0
        peak = 0

        async def worker(x):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.001 * (5 - x))
            running -= 1
            return x * 10

        assert await map_with_concurrency(range(5), 2, worker) == [0, 10, 20, 30, 40]
        assert peak <= 2

    async def test_empty(self):
        async def worker(x):
            return x

        assert await map_with_concurrency([], 4, worker) == []
