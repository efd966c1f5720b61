"""Debt ledger: the per-user hourly state machine.

Pure functions only. Callers hand in one hour at a time together with the
config version effective for that hour and the manual override (if any); the
ledger returns the next state, the hour's log row and, when downstream drivers
need to hear about it, a transition event. Persistence and event delivery live
elsewhere.

Per hour:
1. sensor gap (no fact, or no heart-rate signal) without override: debt is
   frozen, debt collection is paused
2. sleep credits the full goal
3. an override wins over both: True credits the goal, False counts zero
4. required = goal + carried debt
5. countable minutes are capped by hourly_activity_limit (never below the goal)
6. shortfall becomes the new debt, capped by hourly_debt_limit
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from .errors import NonMonotonicHour
from .models import (
    ActivityFact,
    ConfigVersion,
    HourLog,
    LedgerState,
    TransitionEvent,
    as_utc,
)


@dataclass(frozen=True)
class HourInput:
    hour: datetime
    fact: ActivityFact | None
    config: ConfigVersion
    override: bool | None = None


@dataclass(frozen=True)
class HourOutcome:
    state: LedgerState
    log: HourLog
    event: TransitionEvent | None


def check_hour_order(state: LedgerState, hour: datetime) -> None:
    """Reject hours that are not exactly the next hour after the cursor."""
    if hour.minute or hour.second or hour.microsecond:
        raise ValueError(f"hour must be aligned to the hour boundary, got {hour.isoformat()}")
    expected = state.next_hour
    if expected is None:
        return
    if hour != expected:
        raise NonMonotonicHour(
            state.user_id,
            hour,
            state.last_evaluated_hour,
            expected_hour=expected,
        )


def is_sensor_gap(fact: ActivityFact | None, override: bool | None) -> bool:
    if override is not None:
        return False
    return fact is None or not fact.heartrate_present


def effective_minutes(
    fact: ActivityFact | None,
    config: ConfigVersion,
    override: bool | None,
) -> int:
    """Minutes counted toward this hour, before the per-hour cap."""
    if override is True:
        return config.hourly_activity_goal
    if override is False:
        return 0
    if fact is None:
        return 0
    if fact.is_sleep:
        return config.hourly_activity_goal
    return fact.active_minutes


def countable_minutes(minutes: int, config: ConfigVersion) -> int:
    limit = config.activity_limit
    if limit is None:
        return minutes
    return min(minutes, limit)


def required_minutes(state: LedgerState, config: ConfigVersion) -> int:
    # Paused keeps its debt; pausing never erases what is owed.
    return state.debt_minutes + config.hourly_activity_goal


def should_emit(previous: LedgerState, current: LedgerState) -> bool:
    if previous.state != current.state:
        return True
    return current.state == "debt_collection" and previous.debt_minutes != current.debt_minutes


def evaluate_hour(state: LedgerState, item: HourInput) -> HourOutcome:
    """Advance ``state`` by exactly one hour."""
    hour = as_utc(item.hour)
    check_hour_order(state, hour)

    fact = item.fact
    config = item.config
    override = item.override
    raw_minutes = fact.active_minutes if fact is not None else 0
    required = required_minutes(state, config)

    if is_sensor_gap(fact, override):
        next_kind = "paused" if state.state == "debt_collection" else state.state
        new_state = LedgerState(
            user_id=state.user_id,
            state=next_kind,
            debt_minutes=state.debt_minutes,
            last_evaluated_hour=hour,
        )
        accounted = 0
        sensor_gap = True
    else:
        accounted = countable_minutes(effective_minutes(fact, config, override), config)
        if accounted >= required:
            new_state = LedgerState(user_id=state.user_id, last_evaluated_hour=hour)
        else:
            new_state = LedgerState(
                user_id=state.user_id,
                state="debt_collection",
                debt_minutes=min(required - accounted, config.debt_limit),
                last_evaluated_hour=hour,
            )
        sensor_gap = False

    tracking_disabled = override is True or (
        override is None and fact is not None and fact.is_sleep and not sensor_gap
    )
    log = HourLog(
        hour=hour,
        state=new_state.state,
        debt_minutes=new_state.debt_minutes,
        active_minutes=raw_minutes,
        accounted_minutes=accounted,
        required_minutes=required,
        tracking_disabled=tracking_disabled,
        sensor_gap=sensor_gap,
        override=override,
        config_version=config.version,
    )

    event = None
    if should_emit(state, new_state):
        event = TransitionEvent(
            user_id=state.user_id,
            hour=hour,
            event=new_state.event_kind,
            debt_minutes=new_state.debt_minutes,
            active_minutes=raw_minutes,
        )

    return HourOutcome(state=new_state, log=log, event=event)


def replay(
    initial: LedgerState, items: Iterable[HourInput]
) -> tuple[LedgerState, list[HourOutcome]]:
    """Fold ordered hour inputs over ``initial``; deterministic for equal inputs."""
    state = initial
    outcomes: list[HourOutcome] = []
    for item in items:
        outcome = evaluate_hour(state, item)
        outcomes.append(outcome)
        state = outcome.state
    return state, outcomes
