"""Hourly evaluation engine: resolvers -> ledger -> state store -> emitter.

One engine instance serves one connection; users are evaluated
independently, each strictly hour by hour from its own cursor. Every hour is
resolve, fetch, evaluate, then commit; the event (if any) goes out after the
commit succeeded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

from .emitter import EventEmitter
from .errors import (
    ConfigMissing,
    FactSourceUnavailable,
    NonMonotonicHour,
    OverrideLookupFailure,
    classify_ledger_error,
)
from .ledger import HourInput, HourOutcome, check_hour_order, evaluate_hour, replay
from .metrics import increment
from .models import (
    ONE_HOUR,
    ActivityFact,
    ConfigVersion,
    LedgerState,
    Summary,
    SummaryStatus,
    TransitionEvent,
    as_utc,
    floor_hour,
)
from .summary_cache import SummaryCache
from .telemetry import ActivityFactSource

logger = logging.getLogger(__name__)

StopReason = Literal["caught_up", "config_missing", "non_monotonic_hour", "fact_source_unavailable"]


class StateStore(Protocol):
    async def load(self, user_id: int) -> LedgerState: ...

    async def commit(self, previous: LedgerState, new: LedgerState) -> None: ...

    def transaction(self) -> Any: ...


class ConfigSource(Protocol):
    async def effective_config(self, user_id: int, hour: datetime) -> ConfigVersion: ...

    async def first_configured_at(self, user_id: int) -> datetime: ...

    async def latest_change_at(self, user_id: int, as_of: datetime) -> datetime | None: ...


class OverrideSource(Protocol):
    async def resolve_for_hour(self, user_id: int, hour: datetime) -> bool | None: ...

    async def latest_change_at(self, user_id: int, as_of: datetime) -> datetime | None: ...


@dataclass
class EvaluationRun:
    user_id: int
    state: LedgerState
    hours_evaluated: int = 0
    events: list[TransitionEvent] = field(default_factory=list)
    stopped: StopReason = "caught_up"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _log_extra(
    user_id: int, hour: datetime | None = None, exc: BaseException | None = None
) -> dict[str, Any]:
    extra: dict[str, Any] = {"headmaster_user_id": user_id}
    if hour is not None:
        extra["headmaster_hour"] = hour.isoformat()
    if exc is not None:
        extra["headmaster_error_class"] = classify_ledger_error(exc)
    return extra


class EvaluationEngine:
    def __init__(
        self,
        *,
        states: StateStore,
        configs: ConfigSource,
        overrides: OverrideSource,
        facts: ActivityFactSource,
        emitter: EventEmitter | None = None,
        cache_backend: Any | None = None,
        cache_ttl_seconds: float = 0,
        summary_window_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if summary_window_hours <= 0:
            raise ValueError("summary_window_hours must be positive")
        self.states = states
        self.configs = configs
        self.overrides = overrides
        self.facts = facts
        self.emitter = emitter or EventEmitter()
        self.summary_window_hours = summary_window_hours
        self.clock = clock
        self.cache: SummaryCache | None = None
        if cache_backend is not None:
            self.cache = SummaryCache(
                cache_backend,
                self.compute_summary,
                change_probe=self.latest_change_at,
                ttl_seconds=cache_ttl_seconds,
                clock=clock,
            )

    # -- evaluation ---------------------------------------------------------

    async def _hour_input(
        self, user_id: int, hour: datetime, fact: ActivityFact | None
    ) -> HourInput:
        config = await self.configs.effective_config(user_id, hour)
        override = await self.overrides.resolve_for_hour(user_id, hour)
        return HourInput(hour=hour, fact=fact, config=config, override=override)

    async def _advance(
        self, state: LedgerState, hour: datetime, fact: ActivityFact | None
    ) -> HourOutcome:
        outcome = evaluate_hour(state, await self._hour_input(state.user_id, hour, fact))
        async with self.states.transaction():
            await self.states.commit(state, outcome.state)
        increment("hours_evaluated")
        if outcome.event is not None:
            await self.emitter.emit(outcome.event)
        return outcome

    async def apply_fact(
        self, user_id: int, hour: datetime, fact: ActivityFact | None
    ) -> HourOutcome | None:
        """Evaluate one pushed fact. Out-of-order hours are dropped (returns None)."""
        hour = as_utc(hour)
        state = await self.states.load(user_id)
        try:
            check_hour_order(state, hour)
            return await self._advance(state, hour, fact)
        except NonMonotonicHour as exc:
            increment("hours_rejected")
            logger.warning("Dropping fact: %s", exc, extra=_log_extra(user_id, hour, exc))
            return None

    async def evaluate_user(
        self, user_id: int, until_hour: datetime | None = None
    ) -> EvaluationRun:
        """Evaluate every complete hour between the cursor and ``until_hour``.

        ``until_hour`` is exclusive and defaults to the start of the current
        hour. A user without a cursor starts at the hour of their first config.
        """
        until = floor_hour(until_hour or self.clock())
        state = await self.states.load(user_id)
        run = EvaluationRun(user_id=user_id, state=state)

        try:
            hour = state.next_hour or floor_hour(await self.configs.first_configured_at(user_id))
        except ConfigMissing as exc:
            return self._skip_user(run, exc)

        while hour < until:
            try:
                fact = await self.facts.fetch_hour(user_id, hour)
                outcome = await self._advance(run.state, hour, fact)
            except ConfigMissing as exc:
                return self._skip_user(run, exc)
            except NonMonotonicHour as exc:
                # Another writer advanced this user's cursor; it owns the rest.
                increment("hours_rejected")
                logger.warning(
                    "Stopping evaluation, cursor moved: %s",
                    exc,
                    extra=_log_extra(user_id, hour, exc),
                )
                run.stopped = "non_monotonic_hour"
                return run
            except FactSourceUnavailable as exc:
                logger.warning(
                    "Stopping evaluation, telemetry unavailable: %s",
                    exc,
                    extra=_log_extra(user_id, hour, exc),
                )
                run.stopped = "fact_source_unavailable"
                return run

            run.state = outcome.state
            run.hours_evaluated += 1
            if outcome.event is not None:
                run.events.append(outcome.event)
            hour += ONE_HOUR

        if run.hours_evaluated:
            logger.info(
                "Evaluated %d hour(s) for user %d (state=%s, debt=%d)",
                run.hours_evaluated,
                user_id,
                run.state.state,
                run.state.debt_minutes,
                extra=_log_extra(user_id, run.state.last_evaluated_hour),
            )
        return run

    def _skip_user(self, run: EvaluationRun, exc: ConfigMissing) -> EvaluationRun:
        increment("users_skipped")
        logger.error(
            "Skipping user %d: %s", run.user_id, exc, extra=_log_extra(run.user_id, exc=exc)
        )
        run.stopped = "config_missing"
        return run

    # -- summaries ----------------------------------------------------------

    async def latest_change_at(self, user_id: int, as_of: datetime) -> datetime | None:
        """Newest config or override write that affects hours before ``as_of``."""
        try:
            override_change = await self.overrides.latest_change_at(user_id, as_of)
        except OverrideLookupFailure as exc:
            logger.warning(
                "Treating cached summary as stale: %s", exc, extra=_log_extra(user_id, exc=exc)
            )
            return self.clock()
        changes = [
            changed
            for changed in (await self.configs.latest_change_at(user_id, as_of), override_change)
            if changed is not None
        ]
        return max(changes) if changes else None

    async def compute_summary(self, user_id: int, as_of: datetime) -> Summary:
        """From-scratch replay of the trailing window of complete hours before ``as_of``."""
        as_of = as_utc(as_of)
        end = floor_hour(as_of)
        start = max(
            end - self.summary_window_hours * ONE_HOUR,
            floor_hour(await self.configs.first_configured_at(user_id)),
        )

        items: list[HourInput] = []
        hour = start
        while hour < end:
            fact = await self.facts.fetch_hour(user_id, hour)
            items.append(await self._hour_input(user_id, hour, fact))
            hour += ONE_HOUR

        final, outcomes = replay(LedgerState.initial(user_id), items)
        status = SummaryStatus(
            state=final.state,
            event=final.event_kind,
            debt_minutes=final.debt_minutes,
            active_minutes=outcomes[-1].log.active_minutes if outcomes else 0,
            hour=final.last_evaluated_hour,
        )
        return Summary(
            user_id=user_id,
            as_of=as_of,
            window_hours=self.summary_window_hours,
            status=status,
            day_log=[outcome.log for outcome in outcomes],
        )

    async def summary(self, user_id: int, as_of: datetime | None = None) -> Summary:
        as_of = as_utc(as_of or self.clock())
        if self.cache is None:
            return await self.compute_summary(user_id, as_of)
        return await self.cache.get_or_compute(user_id, as_of)
