"""Telemetry boundary: where per-hour activity facts come from.

The engine only sees ``ActivityFactSource.fetch_hour``. Vendor adapters live
outside this package and serve either ready-made hourly facts or raw days
(hourly samples + sleep intervals). ``DayNormalizingFactSource`` turns raw
days into facts with ``normalize_day``, applying the day-window policy that
marks hours outside the user's waking day as sleep.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from .errors import FactSourceUnavailable
from .models import ActivityFact, ConfigVersion, floor_hour, local_date_hour

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59)


class ActivityFactSource(Protocol):
    """Per-user, per-hour fact supplier.

    Returns ``None`` when the adapter has no data for the hour; never a
    synthesized zero.
    """

    async def fetch_hour(self, user_id: int, hour: datetime) -> ActivityFact | None: ...


class StaticActivityFactSource:
    """In-memory facts keyed by (user_id, hour start). Used for backfills and replays."""

    def __init__(
        self, facts: Mapping[tuple[int, datetime], ActivityFact] | None = None
    ) -> None:
        self._facts: dict[tuple[int, datetime], ActivityFact] = {}
        self.calls = 0
        for (user_id, hour), fact in (facts or {}).items():
            self.put(user_id, hour, fact)

    def put(self, user_id: int, hour: datetime, fact: ActivityFact) -> None:
        self._facts[(user_id, floor_hour(hour))] = fact

    async def fetch_hour(self, user_id: int, hour: datetime) -> ActivityFact | None:
        self.calls += 1
        return self._facts.get((user_id, floor_hour(hour)))


class HttpActivityFactSource:
    """Fact source backed by the telemetry adapter's HTTP API.

    ``GET {base_url}/users/{user_id}/hours/{hour}`` answers either
    ``{"status": "ok", "fact": {...}}`` or ``{"status": "no_data"}``; a 404
    is treated as no data. ``GET {base_url}/users/{user_id}/days/{date}``
    serves the raw day (hourly samples + sleep intervals) for
    ``DayNormalizingFactSource``. Transport errors and 5xx responses are
    retried here, never by the engine.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, url: str) -> httpx.Response:
        attempt = 1
        while True:
            try:
                response = await self._client.get(url)
            except httpx.TransportError as exc:
                if attempt >= self.max_attempts:
                    raise
                logger.warning("Telemetry request %s failed (%s), retrying", url, exc)
            else:
                if response.status_code < 500 or attempt >= self.max_attempts:
                    return response
                logger.warning(
                    "Telemetry request %s answered %d, retrying", url, response.status_code
                )
            await asyncio.sleep(self.retry_backoff_seconds * 2 ** (attempt - 1))
            attempt += 1

    async def _fetch_json(self, url: str, what: str) -> dict[str, Any] | None:
        """Response body, or None on 404. Every failure is FactSourceUnavailable."""
        try:
            response = await self._get_with_retry(url)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise FactSourceUnavailable(f"telemetry fetch failed for {what}: {exc}") from exc

    async def fetch_hour(self, user_id: int, hour: datetime) -> ActivityFact | None:
        hour = floor_hour(hour)
        what = f"user {user_id} at {hour.isoformat()}"
        body = await self._fetch_json(f"/users/{user_id}/hours/{hour.isoformat()}", what)
        if body is None or body.get("status") == "no_data" or body.get("fact") is None:
            return None
        try:
            return ActivityFact.model_validate(body["fact"])
        except ValidationError as exc:
            raise FactSourceUnavailable(f"telemetry returned an invalid fact for {what}") from exc

    async def fetch_day(self, user_id: int, day: date) -> RawDay | None:
        what = f"user {user_id} on {day.isoformat()}"
        body = await self._fetch_json(f"/users/{user_id}/days/{day.isoformat()}", what)
        if body is None or body.get("status") == "no_data":
            return None
        try:
            payload = RawDayPayload.model_validate(body)
        except ValidationError as exc:
            raise FactSourceUnavailable(f"telemetry returned an invalid day for {what}") from exc
        return payload.to_raw_day()


@dataclass(frozen=True)
class HourlyActivitySample:
    hour: int
    active_minutes: int
    heartrate_present: bool = True


@dataclass(frozen=True)
class SleepInterval:
    start: time
    end: time


def _shift(day: date, moment: time, delta: timedelta) -> time:
    shifted = datetime.combine(day, moment) + delta
    if shifted.date() != day:
        # Overflowing the 24h boundary pins the end to the last second of the day.
        return END_OF_DAY
    return shifted.time()


def day_end(day: date, intervals: list[SleepInterval], config: ConfigVersion) -> time:
    """End of the waking day: first wake-up + day_length, extended by later naps.

    Never later than ``day_ends_at``; evenings stay free regardless of sleep data.
    """
    end: time | None = None
    for interval in intervals:
        if end is None:
            end = _shift(day, interval.end, timedelta(hours=config.effective_day_length))
        else:
            nap = datetime.combine(day, interval.end) - datetime.combine(day, interval.start)
            end = _shift(day, end, max(nap, timedelta(0)))
    if end is None:
        return config.day_ends_at
    return min(end, config.day_ends_at)


def sleep_hours(
    day: date, sleep_intervals: Iterable[SleepInterval], config: ConfigVersion
) -> set[int]:
    """Hours of ``day`` that count as sleep or off-hours."""
    intervals = list(sleep_intervals)
    if not intervals:
        # No sleep data: everything before the configured day start is night.
        intervals = [SleepInterval(start=time(0, 0), end=config.day_starts_at)]

    blocked: list[SleepInterval] = []
    for interval in intervals:
        if interval.start > interval.end:
            # Crosses midnight: keep the morning part and the late-evening part.
            blocked.append(SleepInterval(start=time(0, 0), end=interval.end))
            blocked.append(SleepInterval(start=interval.start, end=END_OF_DAY))
        else:
            blocked.append(interval)
    blocked.append(SleepInterval(start=day_end(day, intervals, config), end=END_OF_DAY))
    threshold = 60 - config.hourly_activity_goal

    hours: set[int] = set()
    for hour in range(24):
        for interval in blocked:
            if interval.start.hour <= hour < interval.end.hour:
                hours.add(hour)
            elif hour == interval.end.hour and interval.end.minute > threshold:
                hours.add(hour)
    return hours


def normalize_day(
    day: date,
    samples: Iterable[HourlyActivitySample],
    sleep_intervals: Iterable[SleepInterval],
    config: ConfigVersion,
) -> dict[int, ActivityFact]:
    """Turn one raw day into facts keyed by hour of day.

    Hours without a sample are left out: they are gaps, not zero-activity hours.
    """
    asleep = sleep_hours(day, sleep_intervals, config)
    facts: dict[int, ActivityFact] = {}
    for sample in samples:
        if not 0 <= sample.hour <= 23:
            logger.warning("Dropping sample with out-of-range hour %d for %s", sample.hour, day)
            continue
        if sample.hour in facts:
            logger.warning("Duplicate sample for hour %d on %s, keeping first", sample.hour, day)
            continue
        facts[sample.hour] = ActivityFact(
            active_minutes=max(0, min(60, sample.active_minutes)),
            heartrate_present=sample.heartrate_present,
            is_sleep=sample.hour in asleep,
        )
    return facts


@dataclass(frozen=True)
class RawDay:
    samples: list[HourlyActivitySample]
    sleep_intervals: list[SleepInterval]


class _SamplePayload(BaseModel):
    hour: int
    active_minutes: int
    heartrate_present: bool = True


class _SleepPayload(BaseModel):
    start: time
    end: time


class RawDayPayload(BaseModel):
    status: str = "ok"
    samples: list[_SamplePayload] = []
    sleep: list[_SleepPayload] = []

    def to_raw_day(self) -> RawDay:
        return RawDay(
            samples=[
                HourlyActivitySample(s.hour, s.active_minutes, s.heartrate_present)
                for s in self.samples
            ],
            sleep_intervals=[SleepInterval(s.start, s.end) for s in self.sleep],
        )


class RawDaySource(Protocol):
    async def fetch_day(self, user_id: int, day: date) -> RawDay | None: ...


class EffectiveConfigSource(Protocol):
    async def effective_config(self, user_id: int, hour: datetime) -> ConfigVersion: ...


class DayNormalizingFactSource:
    """Fact source over raw telemetry days.

    Each (user, local day, config version) is fetched and normalized once and
    kept for the lifetime of the source, which is one job. The day window is
    computed with the config in effect at the requested hour, so a config
    change mid-day renormalizes the rest of that day.
    """

    def __init__(
        self,
        days: RawDaySource,
        configs: EffectiveConfigSource,
        timezone_name: str = "UTC",
    ) -> None:
        self.days = days
        self.configs = configs
        self.timezone_name = timezone_name
        self._normalized: dict[tuple[int, date, int], dict[int, ActivityFact]] = {}

    async def fetch_hour(self, user_id: int, hour: datetime) -> ActivityFact | None:
        hour = floor_hour(hour)
        day, local_hour = local_date_hour(hour, self.timezone_name)
        config = await self.configs.effective_config(user_id, hour)
        key = (user_id, day, config.version)
        facts = self._normalized.get(key)
        if facts is None:
            raw = await self.days.fetch_day(user_id, day)
            if raw is None:
                facts = {}
            else:
                facts = normalize_day(day, raw.samples, raw.sleep_intervals, config)
            self._normalized[key] = facts
        return facts.get(local_hour)
