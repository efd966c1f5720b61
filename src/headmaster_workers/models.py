"""Ledger data contracts: activity facts, config versions, states, events, summaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator

StateKind = Literal["normal", "debt_collection", "paused"]
EventKind = Literal["normal", "debt_collection", "debt_collection_paused"]

STATE_KINDS: tuple[StateKind, ...] = ("normal", "debt_collection", "paused")

EVENT_KIND_BY_STATE: dict[StateKind, EventKind] = {
    "normal": "normal",
    "debt_collection": "debt_collection",
    "paused": "debt_collection_paused",
}

# Plugin argv names, kept compatible with existing notification scripts.
PLUGIN_EVENT_NAMES: dict[EventKind, str] = {
    "normal": "Normal",
    "debt_collection": "DebtCollection",
    "debt_collection_paused": "DebtCollectionPaused",
}

ONE_HOUR = timedelta(hours=1)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def floor_hour(value: datetime) -> datetime:
    """Return the UTC start of the hour containing ``value``."""
    return as_utc(value).replace(minute=0, second=0, microsecond=0)


def local_date_hour(hour: datetime, timezone_name: str = "UTC") -> tuple[date, int]:
    """Map a UTC hour start onto the user's wall-clock (date, hour)."""
    local = as_utc(hour).astimezone(ZoneInfo(timezone_name))
    return local.date(), local.hour


class ActivityFact(BaseModel):
    """Normalized per-hour telemetry record produced by the telemetry adapter."""

    model_config = ConfigDict(frozen=True)

    active_minutes: int = Field(ge=0, le=60)
    heartrate_present: bool
    is_sleep: bool = False


class ConfigVersion(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    version: int = Field(ge=1)
    hourly_activity_goal: int
    day_starts_at: time
    day_ends_at: time
    day_length: int | None = None
    hourly_debt_limit: int | None = None
    hourly_activity_limit: int | None = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def debt_limit(self) -> int:
        if self.hourly_debt_limit is not None:
            return self.hourly_debt_limit
        return self.hourly_activity_goal * 3

    @property
    def activity_limit(self) -> int | None:
        return self.hourly_activity_limit

    @property
    def effective_day_length(self) -> int:
        if self.day_length is not None:
            return self.day_length
        return self.day_ends_at.hour - self.day_starts_at.hour


class ConfigChanges(BaseModel):
    """Partial settings update; optional limits given as 0 are treated as unset."""

    hourly_activity_goal: int | None = None
    day_starts_at: time | None = None
    day_ends_at: time | None = None
    day_length: int | None = None
    hourly_debt_limit: int | None = None
    hourly_activity_limit: int | None = None

    @field_validator("day_length", "hourly_debt_limit", "hourly_activity_limit")
    @classmethod
    def zero_means_unset(cls, value: int | None) -> int | None:
        if value == 0:
            return None
        return value


class ActiveHoursOverride(BaseModel):
    user_id: int
    override_date: date
    override_hour: int = Field(ge=0, le=23)
    is_active: bool
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LedgerState:
    """Materialized per-user ledger row; ``last_evaluated_hour`` is the cursor."""

    user_id: int
    state: StateKind = "normal"
    debt_minutes: int = 0
    last_evaluated_hour: datetime | None = None

    def __post_init__(self) -> None:
        if self.state not in STATE_KINDS:
            raise ValueError(f"unknown ledger state {self.state!r}")
        if self.debt_minutes < 0:
            raise ValueError("debt_minutes must be >= 0")
        if (self.state == "normal") != (self.debt_minutes == 0):
            raise ValueError(
                f"state={self.state} is inconsistent with debt_minutes={self.debt_minutes}"
            )

    @classmethod
    def initial(cls, user_id: int) -> LedgerState:
        return cls(user_id=user_id)

    @property
    def event_kind(self) -> EventKind:
        return EVENT_KIND_BY_STATE[self.state]

    @property
    def next_hour(self) -> datetime | None:
        if self.last_evaluated_hour is None:
            return None
        return self.last_evaluated_hour + ONE_HOUR


class TransitionEvent(BaseModel):
    """The entire driver-boundary contract for one state transition."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    hour: datetime
    event: EventKind
    debt_minutes: int = Field(ge=0)
    active_minutes: int = Field(ge=0)

    def plugin_args(self) -> list[str]:
        name = PLUGIN_EVENT_NAMES[self.event]
        if self.event == "normal":
            return [name, "", ""]
        return [name, str(self.active_minutes), str(self.debt_minutes)]


class HourLog(BaseModel):
    hour: datetime
    state: StateKind
    debt_minutes: int
    active_minutes: int
    accounted_minutes: int
    required_minutes: int
    tracking_disabled: bool = False
    sensor_gap: bool = False
    override: bool | None = None
    config_version: int


class SummaryStatus(BaseModel):
    state: StateKind
    event: EventKind
    debt_minutes: int
    active_minutes: int
    hour: datetime | None = None


class Summary(BaseModel):
    user_id: int
    as_of: datetime
    window_hours: int
    status: SummaryStatus
    day_log: list[HourLog] = Field(default_factory=list)
