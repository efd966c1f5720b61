"""Shared fixtures and in-memory stand-ins for the engine's collaborators."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime, time, timedelta

import pytest

from headmaster_workers.config_resolver import select_effective_config
from headmaster_workers.errors import (
    CacheBackendUnavailable,
    ConfigMissing,
    NonMonotonicHour,
    OverrideLookupFailure,
)
from headmaster_workers.metrics import reset_metrics
from headmaster_workers.models import ActivityFact, ConfigVersion, LedgerState, as_utc, floor_hour
from headmaster_workers.summary_cache import CachedSummary

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


def make_config(
    *,
    user_id: int = 1,
    version: int = 1,
    goal: int = 30,
    debt_limit: int | None = 90,
    activity_limit: int | None = None,
    created_at: datetime = T0,
    day_starts_at: time = time(8, 0),
    day_ends_at: time = time(22, 0),
    day_length: int | None = None,
) -> ConfigVersion:
    return ConfigVersion(
        user_id=user_id,
        version=version,
        hourly_activity_goal=goal,
        day_starts_at=day_starts_at,
        day_ends_at=day_ends_at,
        day_length=day_length,
        hourly_debt_limit=debt_limit,
        hourly_activity_limit=activity_limit,
        created_at=created_at,
    )


def fact(active: int = 0, *, hr: bool = True, sleep: bool = False) -> ActivityFact:
    return ActivityFact(active_minutes=active, heartrate_present=hr, is_sleep=sleep)


def hour(n: int) -> datetime:
    return T0 + timedelta(hours=n)


class FakeStateStore:
    """Ledger rows in a dict; ``commit`` enforces the cursor like the SQL does."""

    def __init__(self) -> None:
        self.rows: dict[int, LedgerState] = {}
        self.commits: list[LedgerState] = []
        self.transactions = 0

    async def load(self, user_id: int) -> LedgerState:
        return self.rows.get(user_id) or LedgerState.initial(user_id)

    async def commit(self, previous: LedgerState, new: LedgerState) -> None:
        stored = self.rows.get(new.user_id)
        stored_cursor = stored.last_evaluated_hour if stored else None
        if stored_cursor != previous.last_evaluated_hour:
            raise NonMonotonicHour(new.user_id, new.last_evaluated_hour, stored_cursor)
        self.rows[new.user_id] = new
        self.commits.append(new)

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield


class FakeConfigSource:
    def __init__(self, *versions: ConfigVersion) -> None:
        self.versions: dict[int, list[ConfigVersion]] = {}
        for version in versions:
            self.add(version)

    def add(self, version: ConfigVersion) -> None:
        self.versions.setdefault(version.user_id, []).append(version)

    async def effective_config(self, user_id: int, at: datetime) -> ConfigVersion:
        config = select_effective_config(self.versions.get(user_id, []), at)
        if config is None:
            raise ConfigMissing(user_id)
        return config

    async def first_configured_at(self, user_id: int) -> datetime:
        versions = self.versions.get(user_id)
        if not versions:
            raise ConfigMissing(user_id)
        return min(v.created_at for v in versions)

    async def latest_change_at(self, user_id: int, as_of: datetime) -> datetime | None:
        created = [
            v.created_at for v in self.versions.get(user_id, []) if v.created_at <= as_utc(as_of)
        ]
        return max(created) if created else None


class FakeOverrideSource:
    def __init__(self) -> None:
        self.overrides: dict[tuple[int, datetime], bool] = {}
        self.changed_at: dict[int, datetime] = {}
        self.fail_changes = False

    def set(self, user_id: int, at: datetime, is_active: bool, updated_at: datetime) -> None:
        self.overrides[(user_id, floor_hour(at))] = is_active
        self.changed_at[user_id] = max(updated_at, self.changed_at.get(user_id, updated_at))

    async def resolve_for_hour(self, user_id: int, at: datetime) -> bool | None:
        return self.overrides.get((user_id, floor_hour(at)))

    async def latest_change_at(self, user_id: int, as_of: datetime) -> datetime | None:
        if self.fail_changes:
            raise OverrideLookupFailure("override store down")
        return self.changed_at.get(user_id)


class FakeCacheBackend:
    def __init__(self) -> None:
        self.entries: dict[tuple[int, datetime], CachedSummary] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.puts = 0

    async def get(self, user_id, as_of):
        if self.fail_reads:
            raise CacheBackendUnavailable("cache down")
        return self.entries.get((user_id, as_of))

    async def put(self, user_id, as_of, summary, computed_at):
        if self.fail_writes:
            raise CacheBackendUnavailable("cache down")
        self.puts += 1
        self.entries[(user_id, as_of)] = CachedSummary(summary=summary, computed_at=computed_at)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class MockCursorContext:
    """Async context manager handing out a prepared mock cursor."""

    def __init__(self, cursor):
        self.cursor = cursor

    async def __aenter__(self):
        return self.cursor

    async def __aexit__(self, *args):
        return False


class MockTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False
