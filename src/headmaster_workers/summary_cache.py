"""Read-through cache for per-user summaries, keyed by (user_id, as_of).

Never authoritative: a summary is always recomputable from the ledger, so any
backend trouble just means computing it directly. An entry is stale when it is
older than the TTL, or when a config version or override that is in force at
``as_of`` was written after the entry was computed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import psycopg
from pydantic import ValidationError

from .errors import CacheBackendUnavailable
from .metrics import increment
from .models import Summary, as_utc

logger = logging.getLogger(__name__)

ComputeFn = Callable[[int, datetime], Awaitable[Summary]]
ChangeProbeFn = Callable[[int, datetime], Awaitable[datetime | None]]
ClockFn = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CachedSummary:
    summary: Summary
    computed_at: datetime


class PostgresSummaryCacheBackend:
    """``summary_cache`` table access; every driver error becomes CacheBackendUnavailable."""

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def get(self, user_id: int, as_of: datetime) -> CachedSummary | None:
        try:
            # Savepoints keep a cache failure from poisoning the job transaction.
            async with self.conn.transaction(), self.conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT summary, computed_at
                    FROM summary_cache
                    WHERE user_id = %s AND created_at = %s
                    """,
                    (user_id, as_of),
                )
                row = await cur.fetchone()
        except psycopg.Error as exc:
            raise CacheBackendUnavailable(f"summary cache read failed: {exc}") from exc

        if row is None:
            return None
        try:
            summary = Summary.model_validate_json(row[0])
        except ValidationError:
            logger.warning("Discarding undecodable summary cache entry for user %d", user_id)
            return None
        return CachedSummary(summary=summary, computed_at=as_utc(row[1]))

    async def put(
        self, user_id: int, as_of: datetime, summary: Summary, computed_at: datetime
    ) -> None:
        try:
            async with self.conn.transaction(), self.conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO summary_cache (user_id, created_at, summary, computed_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, created_at) DO UPDATE SET
                        summary = EXCLUDED.summary,
                        computed_at = EXCLUDED.computed_at
                    """,
                    (user_id, as_of, summary.model_dump_json(), computed_at),
                )
        except psycopg.Error as exc:
            raise CacheBackendUnavailable(f"summary cache write failed: {exc}") from exc


class SummaryCache:
    def __init__(
        self,
        backend: Any,
        compute: ComputeFn,
        change_probe: ChangeProbeFn | None = None,
        ttl_seconds: float = 0,
        clock: ClockFn = _utcnow,
    ) -> None:
        self.backend = backend
        self.compute = compute
        self.change_probe = change_probe
        self.ttl = timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None
        self.clock = clock
        self._in_flight: dict[tuple[int, datetime], asyncio.Task[Summary]] = {}

    async def get_or_compute(self, user_id: int, as_of: datetime) -> Summary:
        """Cached summary if fresh, otherwise compute + store.

        At most one computation per (user_id, as_of) is in flight; concurrent
        callers for the same key share its result.
        """
        key = (user_id, as_utc(as_of))
        pending = self._in_flight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load(*key))
            self._in_flight[key] = pending
            pending.add_done_callback(lambda task: self._forget(key, task))
        return await asyncio.shield(pending)

    def _forget(self, key: tuple[int, datetime], task: asyncio.Task[Summary]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _is_fresh(self, entry: CachedSummary, user_id: int, as_of: datetime) -> bool:
        if self.ttl is not None and self.clock() - entry.computed_at > self.ttl:
            return False
        if self.change_probe is not None:
            changed_at = await self.change_probe(user_id, as_of)
            if changed_at is not None and changed_at > entry.computed_at:
                return False
        return True

    async def _load(self, user_id: int, as_of: datetime) -> Summary:
        try:
            entry = await self.backend.get(user_id, as_of)
        except CacheBackendUnavailable as exc:
            increment("cache_bypassed")
            logger.warning("Summary cache unavailable, computing directly: %s", exc)
            return await self.compute(user_id, as_of)

        if entry is not None and await self._is_fresh(entry, user_id, as_of):
            increment("cache_hits")
            return entry.summary

        increment("cache_misses")
        computed_at = self.clock()
        summary = await self.compute(user_id, as_of)
        try:
            await self.backend.put(user_id, as_of, summary, computed_at)
        except CacheBackendUnavailable as exc:
            increment("cache_bypassed")
            logger.warning("Summary cache write skipped: %s", exc)
        return summary
