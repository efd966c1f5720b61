import asyncio
import logging
import signal
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .errors import classify_ledger_error, is_fatal_for_user
from .metrics import record_job_completed, record_job_dead, record_job_failed
from .registry import get_handler
from .runtime import build_runtime, close_runtime, set_runtime
from .scheduler import ensure_evaluation_scheduler

logger = logging.getLogger(__name__)

JOBS_CHANNEL = "headmaster_jobs"


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """Build the runtime, tick the evaluation scheduler, then serve jobs until signalled."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )
        if self.config.listen_database_url != self.config.database_url:
            logger.info("Worker LISTEN uses dedicated database URL")

        set_runtime(build_runtime(self.config))
        try:
            await self._tick_scheduler()

            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._listen_loop())
                tg.create_task(self._poll_loop())
        finally:
            await close_runtime()

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def _tick_scheduler(self) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                await ensure_evaluation_scheduler(
                    conn, self.config.evaluation_interval_hours
                )
                await conn.commit()
        except psycopg.Error as exc:
            logger.warning("Evaluation scheduler tick skipped: %s", exc)

    async def _listen_loop(self) -> None:
        """Wake on NOTIFY from ledger writers; one connection survives idle timeouts."""
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {JOBS_CHANNEL}")
                    logger.info("Listening on %s channel", JOBS_CHANNEL)

                    while not self._shutdown.is_set():
                        gen = conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        )
                        async for notify in gen:
                            logger.debug(
                                "NOTIFY received: %s", notify.payload
                            )
                            await self._process_batch()
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("LISTEN connection lost, reconnecting in 5s")
                await asyncio.sleep(5)

        logger.info("Listen loop stopped")

    async def _poll_loop(self) -> None:
        """Hourly scheduler tick plus a batch, for jobs whose NOTIFY was missed."""
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break
            except TimeoutError:
                pass

            await self._tick_scheduler()
            await self._process_batch()

        logger.info("Poll loop stopped")

    async def _process_batch(self) -> None:
        """Claims are committed before any handler runs."""
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                jobs = await self._claim_jobs(conn)
                await conn.commit()

                for job in jobs:
                    await self._process_job(conn, job)
        except psycopg.Error:
            logger.exception("Error in process_batch")

    async def _claim_jobs(
        self, conn: psycopg.AsyncConnection[Any]
    ) -> list[dict[str, Any]]:
        """Due jobs, oldest first; SKIP LOCKED lets several workers share the queue."""
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                WHERE id IN (
                    SELECT id FROM background_jobs
                    WHERE status = 'pending' AND scheduled_for <= NOW()
                    ORDER BY scheduled_for, priority DESC, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, user_id, job_type, payload, attempt, max_retries
                """,
                (self.config.batch_size,),
            )
            return await cur.fetchall()

    async def _process_job(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]
    ) -> None:
        """Run a handler and mark the job completed atomically.

        On failure the whole transaction is rolled back, evaluated hours included.
        """
        job_id = job["id"]
        job_type = job["job_type"]
        log_extra = {"headmaster_job_id": job_id, "headmaster_job_type": job_type}

        handler = get_handler(job_type)
        if handler is None:
            logger.warning("No handler for job_type=%s (job_id=%d)", job_type, job_id)
            await self._fail_job(conn, job_id, f"No handler for job_type={job_type}")
            return

        try:
            async with conn.transaction():
                await handler(conn, job["payload"] or {})
                await conn.execute(
                    """
                    UPDATE background_jobs
                    SET status = 'completed', completed_at = NOW()
                    WHERE id = %s
                    """,
                    (job_id,),
                )
            record_job_completed()
            logger.info("Job %d completed (type=%s)", job_id, job_type, extra=log_extra)

        except Exception as exc:
            log_extra["headmaster_error_class"] = classify_ledger_error(exc)
            logger.exception("Job %d failed (type=%s)", job_id, job_type, extra=log_extra)

            attempt = job["attempt"]
            max_retries = min(job["max_retries"], self.config.max_retries)

            # A missing or invalid user config will not heal on retry.
            if is_fatal_for_user(exc) or attempt >= max_retries:
                await self._dead_job(conn, job_id, str(exc))
            else:
                record_job_failed()
                await self._retry_job(conn, job_id, attempt, str(exc))

    async def _fail_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'dead', error_message = %s, completed_at = NOW()
                WHERE id = %s
                """,
                (error, job_id),
            )
        await conn.commit()

    async def _dead_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        record_job_dead()
        logger.error("Job %d is dead: %s", job_id, error)
        await self._fail_job(conn, job_id, error)

    async def _retry_job(
        self,
        conn: psycopg.AsyncConnection[Any],
        job_id: int,
        attempt: int,
        error: str,
    ) -> None:
        backoff_seconds = 2**attempt
        logger.info("Job %d retrying in %ds (attempt=%d)", job_id, backoff_seconds, attempt)
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'pending',
                    error_message = %s,
                    scheduled_for = NOW() + make_interval(secs => %s)
                WHERE id = %s
                """,
                (error, float(backoff_seconds), job_id),
            )
        await conn.commit()
