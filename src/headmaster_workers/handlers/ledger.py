"""Ledger job handlers: per-user evaluation, fan-out, summary refresh."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..config_resolver import ConfigResolver
from ..engine import EvaluationEngine
from ..models import as_utc, floor_hour
from ..overrides import OverrideResolver
from ..registry import register
from ..runtime import Runtime, get_runtime
from ..state_store import LedgerStateStore
from ..summary_cache import PostgresSummaryCacheBackend
from ..telemetry import ActivityFactSource, DayNormalizingFactSource

logger = logging.getLogger(__name__)


def build_engine(conn: psycopg.AsyncConnection[Any], runtime: Runtime) -> EvaluationEngine:
    configs = ConfigResolver(conn)
    facts: ActivityFactSource = runtime.facts
    if runtime.days is not None:
        facts = DayNormalizingFactSource(runtime.days, configs, runtime.day_timezone)
    return EvaluationEngine(
        states=LedgerStateStore(conn),
        configs=configs,
        overrides=OverrideResolver(conn, runtime.day_timezone),
        facts=facts,
        emitter=runtime.emitter,
        cache_backend=PostgresSummaryCacheBackend(conn),
        cache_ttl_seconds=runtime.summary_cache_ttl_seconds,
        summary_window_hours=runtime.summary_window_hours,
    )


def _coerce_user_id(payload: dict[str, Any]) -> int:
    raw = payload.get("user_id")
    if raw is None or isinstance(raw, bool):
        raise ValueError("payload.user_id is required")
    return int(raw)


def _coerce_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    return as_utc(datetime.fromisoformat(str(raw)))


async def _enqueue_dedup(
    conn: psycopg.AsyncConnection[Any],
    *,
    user_id: int,
    job_type: str,
    payload: dict[str, Any],
) -> bool:
    """Enqueue ``job_type`` for a user unless one is already pending or running."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO background_jobs (user_id, job_type, payload)
            SELECT %s, %s, %s
            WHERE NOT EXISTS (
                SELECT 1
                FROM background_jobs
                WHERE job_type = %s
                  AND user_id = %s
                  AND status IN ('pending', 'processing')
            )
            RETURNING id
            """,
            (user_id, job_type, Json(payload), job_type, user_id),
        )
        row = await cur.fetchone()
    return row is not None


@register("ledger.evaluate")
async def handle_ledger_evaluate(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Evaluate one user up to ``until_hour`` (default: the last complete hour)."""
    user_id = _coerce_user_id(payload)
    until_hour = _coerce_datetime(payload.get("until_hour"))

    engine = build_engine(conn, get_runtime())
    run = await engine.evaluate_user(user_id, until_hour)

    next_hour = run.state.next_hour
    if run.hours_evaluated and next_hour is not None:
        await _enqueue_dedup(
            conn,
            user_id=user_id,
            job_type="summary.refresh",
            payload={"user_id": user_id, "as_of": next_hour.isoformat()},
        )

    logger.info(
        "ledger.evaluate user=%d hours=%d events=%d stopped=%s",
        user_id,
        run.hours_evaluated,
        len(run.events),
        run.stopped,
        extra={"headmaster_user_id": user_id},
    )


@register("ledger.evaluate_all")
async def handle_ledger_evaluate_all(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Fan out one ``ledger.evaluate`` job per configured user."""
    until_hour = _coerce_datetime(payload.get("until_hour"))
    scheduler_key = str(payload.get("scheduler_key") or "").strip()
    missed_runs = int(payload.get("missed_runs") or 0)

    user_ids = await ConfigResolver(conn).configured_user_ids()
    job_payload: dict[str, Any] = {}
    if until_hour is not None:
        job_payload["until_hour"] = floor_hour(until_hour).isoformat()

    enqueued = 0
    for user_id in user_ids:
        if await _enqueue_dedup(
            conn,
            user_id=user_id,
            job_type="ledger.evaluate",
            payload={**job_payload, "user_id": user_id},
        ):
            enqueued += 1

    if scheduler_key:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE scheduler_state
                SET last_enqueued_jobs = %s,
                    updated_at = NOW()
                WHERE scheduler_key = %s
                """,
                (enqueued, scheduler_key),
            )

    logger.info(
        "ledger.evaluate_all enqueued %d job(s) across %d user(s) (missed_runs=%d)",
        enqueued,
        len(user_ids),
        max(0, missed_runs),
    )


@register("summary.refresh")
async def handle_summary_refresh(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    user_id = _coerce_user_id(payload)
    as_of = _coerce_datetime(payload.get("as_of"))

    engine = build_engine(conn, get_runtime())
    summary = await engine.summary(user_id, as_of)
    logger.info(
        "summary.refresh user=%d as_of=%s state=%s debt=%d",
        user_id,
        summary.as_of.isoformat(),
        summary.status.state,
        summary.status.debt_minutes,
        extra={"headmaster_user_id": user_id},
    )
