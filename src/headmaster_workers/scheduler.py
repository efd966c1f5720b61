"""Durable recurring scheduler for the hourly ledger evaluation."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .models import as_utc, floor_hour

logger = logging.getLogger(__name__)

EVALUATION_SCHEDULER_KEY = "hourly_ledger_evaluation"
EVALUATE_ALL_JOB_TYPE = "ledger.evaluate_all"


def due_run_count(now: datetime, next_run_at: datetime, interval_hours: int) -> int:
    """Return how many runs are due, including missed catch-up slots."""
    if interval_hours <= 0:
        raise ValueError("interval_hours must be positive")

    now_utc = as_utc(now)
    next_run_utc = as_utc(next_run_at)
    if now_utc < next_run_utc:
        return 0

    elapsed_seconds = (now_utc - next_run_utc).total_seconds()
    slot_seconds = interval_hours * 3600
    return int(elapsed_seconds // slot_seconds) + 1


async def _release_finished_job(cur: psycopg.AsyncCursor[Any], job_id: int) -> bool:
    """Settle the in-flight job's outcome. Returns True while it is still running."""
    await cur.execute(
        """
        SELECT status, error_message, completed_at
        FROM background_jobs
        WHERE id = %s
        """,
        (job_id,),
    )
    job = await cur.fetchone()

    if job is None:
        await cur.execute(
            """
            UPDATE scheduler_state
            SET in_flight_job_id = NULL,
                in_flight_started_at = NULL,
                last_run_status = 'failed',
                last_error = 'in-flight evaluation job missing',
                next_run_at = LEAST(next_run_at, NOW()),
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (EVALUATION_SCHEDULER_KEY,),
        )
        return False

    if job["status"] in ("pending", "processing"):
        await cur.execute(
            """
            UPDATE scheduler_state
            SET last_run_status = 'running',
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (EVALUATION_SCHEDULER_KEY,),
        )
        return True

    if job["status"] == "completed":
        await cur.execute(
            """
            UPDATE scheduler_state
            SET in_flight_job_id = NULL,
                in_flight_started_at = NULL,
                last_run_completed_at = COALESCE(%s, NOW()),
                last_run_status = 'completed',
                last_error = NULL,
                total_runs = total_runs + 1,
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (job["completed_at"], EVALUATION_SCHEDULER_KEY),
        )
    else:
        await cur.execute(
            """
            UPDATE scheduler_state
            SET in_flight_job_id = NULL,
                in_flight_started_at = NULL,
                last_run_status = 'failed',
                last_error = COALESCE(%s, 'evaluation job failed'),
                next_run_at = LEAST(next_run_at, NOW()),
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (job["error_message"], EVALUATION_SCHEDULER_KEY),
        )
    return False


async def ensure_evaluation_scheduler(
    conn: psycopg.AsyncConnection[Any],
    interval_hours: int = 1,
    now: datetime | None = None,
) -> int | None:
    """Maintain durable scheduler state and enqueue at most one in-flight job.

    Returns the id of a newly enqueued ``ledger.evaluate_all`` job, if any.
    Missed slots collapse into one job; the engine catches up hour by hour
    from each user's cursor anyway.
    """
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO scheduler_state (
                scheduler_key, interval_hours, next_run_at, last_run_status
            )
            VALUES (%s, %s, date_trunc('hour', NOW()), 'idle')
            ON CONFLICT (scheduler_key) DO NOTHING
            """,
            (EVALUATION_SCHEDULER_KEY, interval_hours),
        )

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT scheduler_key, interval_hours, next_run_at, in_flight_job_id
            FROM scheduler_state
            WHERE scheduler_key = %s
            FOR UPDATE
            """,
            (EVALUATION_SCHEDULER_KEY,),
        )
        state = await cur.fetchone()
        if state is None:
            return None

        if int(state["interval_hours"]) != interval_hours:
            await cur.execute(
                """
                UPDATE scheduler_state
                SET interval_hours = %s,
                    updated_at = NOW()
                WHERE scheduler_key = %s
                """,
                (interval_hours, EVALUATION_SCHEDULER_KEY),
            )

        in_flight_job_id = state["in_flight_job_id"]
        if in_flight_job_id is not None:
            if await _release_finished_job(cur, int(in_flight_job_id)):
                return None

        await cur.execute(
            """
            SELECT interval_hours, next_run_at
            FROM scheduler_state
            WHERE scheduler_key = %s
            FOR UPDATE
            """,
            (EVALUATION_SCHEDULER_KEY,),
        )
        refreshed = await cur.fetchone()
        if refreshed is None:
            return None

        interval_h = int(refreshed["interval_hours"])
        now_utc = as_utc(now or datetime.now(UTC))
        run_count = due_run_count(now_utc, refreshed["next_run_at"], interval_h)
        if run_count == 0:
            return None

        missed_runs = max(0, run_count - 1)
        payload = {
            "interval_hours": interval_h,
            "scheduler_key": EVALUATION_SCHEDULER_KEY,
            "until_hour": floor_hour(now_utc).isoformat(),
            "due_runs": run_count,
            "missed_runs": missed_runs,
        }
        await cur.execute(
            """
            INSERT INTO background_jobs (user_id, job_type, payload, scheduled_for)
            VALUES (NULL, %s, %s, NOW())
            RETURNING id
            """,
            (EVALUATE_ALL_JOB_TYPE, Json(payload)),
        )
        row = await cur.fetchone()
        if row is None:
            return None
        new_job_id = int(row["id"])

        await cur.execute(
            """
            UPDATE scheduler_state
            SET in_flight_job_id = %s,
                in_flight_started_at = NOW(),
                last_run_started_at = NOW(),
                last_run_status = 'running',
                next_run_at = next_run_at + make_interval(hours => %s),
                last_missed_runs = %s,
                total_catch_up_runs = total_catch_up_runs + %s,
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (
                new_job_id,
                interval_h * run_count,
                missed_runs,
                missed_runs,
                EVALUATION_SCHEDULER_KEY,
            ),
        )

    logger.info(
        "Scheduled %s job %d (due_runs=%d, missed_runs=%d)",
        EVALUATE_ALL_JOB_TYPE,
        new_job_id,
        run_count,
        missed_runs,
    )
    return new_job_id
