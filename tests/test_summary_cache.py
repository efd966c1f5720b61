"""Tests for the read-through summary cache."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import psycopg
import pytest

from conftest import Clock, FakeCacheBackend, MockCursorContext, MockTransaction, hour
from headmaster_workers.errors import CacheBackendUnavailable
from headmaster_workers.metrics import get_metrics
from headmaster_workers.models import Summary, SummaryStatus
from headmaster_workers.summary_cache import PostgresSummaryCacheBackend, SummaryCache


def _summary(user_id, as_of, debt=0):
    return Summary(
        user_id=user_id,
        as_of=as_of,
        window_hours=24,
        status=SummaryStatus(
            state="debt_collection" if debt else "normal",
            event="debt_collection" if debt else "normal",
            debt_minutes=debt,
            active_minutes=0,
        ),
    )


class Computer:
    def __init__(self):
        self.calls = 0
        self.debt = 0

    async def __call__(self, user_id, as_of):
        self.calls += 1
        await asyncio.sleep(0)
        return _summary(user_id, as_of, self.debt)


@pytest.fixture
def clock():
    return Clock(hour(30))


@pytest.fixture
def backend():
    return FakeCacheBackend()


@pytest.fixture
def compute():
    return Computer()


class TestReadThrough:
    async def test_miss_then_hit(self, backend, compute, clock):
        cache = SummaryCache(backend, compute, clock=clock)

        first = await cache.get_or_compute(1, hour(24))
        second = await cache.get_or_compute(1, hour(24))

        assert first == second
        assert compute.calls == 1
        assert backend.puts == 1
        metrics = get_metrics()
        assert (metrics["cache_misses"], metrics["cache_hits"]) == (1, 1)

    async def test_keys_are_per_user_and_timestamp(self, backend, compute, clock):
        cache = SummaryCache(backend, compute, clock=clock)
        await cache.get_or_compute(1, hour(24))
        await cache.get_or_compute(1, hour(25))
        await cache.get_or_compute(2, hour(24))
        assert compute.calls == 3

    async def test_ttl_expiry_recomputes(self, backend, compute, clock):
        cache = SummaryCache(backend, compute, ttl_seconds=60, clock=clock)
        await cache.get_or_compute(1, hour(24))

        clock.advance(seconds=30)
        await cache.get_or_compute(1, hour(24))
        assert compute.calls == 1

        clock.advance(seconds=31)
        await cache.get_or_compute(1, hour(24))
        assert compute.calls == 2

    async def test_change_after_compute_invalidates(self, backend, compute, clock):
        changed_at = {"value": None}

        async def probe(user_id, as_of):
            return changed_at["value"]

        cache = SummaryCache(backend, compute, change_probe=probe, clock=clock)
        await cache.get_or_compute(1, hour(24))

        changed_at["value"] = clock.now - timedelta(seconds=1)
        await cache.get_or_compute(1, hour(24))
        assert compute.calls == 1

        clock.advance(minutes=5)
        changed_at["value"] = clock.now
        compute.debt = 30
        refreshed = await cache.get_or_compute(1, hour(24))
        assert compute.calls == 2
        assert refreshed.status.debt_minutes == 30


class TestBypass:
    async def test_read_failure_computes_directly(self, backend, compute, clock):
        backend.fail_reads = True
        cache = SummaryCache(backend, compute, clock=clock)

        summary = await cache.get_or_compute(1, hour(24))

        assert summary == _summary(1, hour(24))
        assert backend.puts == 0
        assert get_metrics()["cache_bypassed"] == 1

    async def test_write_failure_still_returns_summary(self, backend, compute, clock):
        backend.fail_writes = True
        cache = SummaryCache(backend, compute, clock=clock)

        assert await cache.get_or_compute(1, hour(24)) == _summary(1, hour(24))
        assert get_metrics()["cache_bypassed"] == 1

    async def test_compute_errors_propagate(self, backend, clock):
        async def broken(user_id, as_of):
            raise RuntimeError("boom")

        cache = SummaryCache(backend, broken, clock=clock)
        with pytest.raises(RuntimeError):
            await cache.get_or_compute(1, hour(24))
        assert cache._in_flight == {}


class TestSingleFlight:
    async def test_concurrent_callers_share_one_computation(self, backend, clock):
        gate = asyncio.Event()
        calls = 0

        async def slow(user_id, as_of):
            nonlocal calls
            calls += 1
            await gate.wait()
            return _summary(user_id, as_of)

        cache = SummaryCache(backend, slow, clock=clock)
        waiters = [asyncio.create_task(cache.get_or_compute(1, hour(24))) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert all(result == results[0] for result in results)
        assert cache._in_flight == {}


class TestPostgresBackend:
    def _conn(self, fetchone=None, error=None):
        cursor = AsyncMock()
        cursor.execute = AsyncMock(side_effect=error)
        cursor.fetchone = AsyncMock(return_value=fetchone)
        conn = AsyncMock()
        conn.transaction = MagicMock(return_value=MockTransaction())
        conn.cursor = MagicMock(return_value=MockCursorContext(cursor))
        return conn, cursor

    async def test_roundtrip_row(self):
        summary = _summary(1, hour(24), debt=20)
        conn, _ = self._conn(fetchone=(summary.model_dump_json(), hour(25)))

        entry = await PostgresSummaryCacheBackend(conn).get(1, hour(24))

        assert entry.summary == summary
        assert entry.computed_at == hour(25)

    async def test_undecodable_entry_is_a_miss(self):
        conn, _ = self._conn(fetchone=("{not json", hour(25)))
        assert await PostgresSummaryCacheBackend(conn).get(1, hour(24)) is None

    async def test_driver_errors_are_wrapped(self):
        conn, _ = self._conn(error=psycopg.OperationalError("down"))
        backend = PostgresSummaryCacheBackend(conn)
        with pytest.raises(CacheBackendUnavailable):
            await backend.get(1, hour(24))
        with pytest.raises(CacheBackendUnavailable):
            await backend.put(1, hour(24), _summary(1, hour(24)), hour(25))
        assert conn.transaction.call_count == 2

    async def test_put_upserts(self):
        conn, cursor = self._conn()
        summary = _summary(1, hour(24))
        await PostgresSummaryCacheBackend(conn).put(1, hour(24), summary, hour(25))
        sql, params = cursor.execute.await_args.args
        assert "ON CONFLICT (user_id, created_at) DO UPDATE" in sql
        assert params == (1, hour(24), summary.model_dump_json(), hour(25))
