"""Tests for job processing outcomes in the worker loop."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import MockCursorContext, MockTransaction
from headmaster_workers.config import Config
from headmaster_workers.errors import ConfigMissing, FactSourceUnavailable
from headmaster_workers.metrics import get_metrics
from headmaster_workers.worker import Worker


def _worker(max_retries=3):
    return Worker(
        Config(
            database_url="postgresql://test@localhost/headmaster",
            listen_database_url="postgresql://test@localhost/headmaster",
            max_retries=max_retries,
        )
    )


def _conn():
    cursor = AsyncMock()
    conn = AsyncMock()
    conn.transaction = MagicMock(return_value=MockTransaction())
    conn.cursor = MagicMock(return_value=MockCursorContext(cursor))
    return conn, cursor


def _job(attempt=1, max_retries=3, job_type="ledger.evaluate"):
    return {
        "id": 5,
        "user_id": 1,
        "job_type": job_type,
        "payload": {"user_id": 1},
        "attempt": attempt,
        "max_retries": max_retries,
    }


async def test_successful_job_is_completed():
    conn, _ = _conn()
    handler = AsyncMock()

    with patch("headmaster_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job())

    handler.assert_awaited_once_with(conn, {"user_id": 1})
    sql, params = conn.execute.await_args.args
    assert "status = 'completed'" in sql
    assert params == (5,)
    assert get_metrics()["jobs_processed"] == 1


async def test_unknown_job_type_is_dead_immediately():
    conn, cursor = _conn()

    with patch("headmaster_workers.worker.get_handler", return_value=None):
        await _worker()._process_job(conn, _job(job_type="mystery"))

    sql, params = cursor.execute.await_args.args
    assert "status = 'dead'" in sql
    assert params == ("No handler for job_type=mystery", 5)
    conn.commit.assert_awaited()


async def test_failed_job_is_retried_with_backoff():
    conn, cursor = _conn()
    handler = AsyncMock(side_effect=RuntimeError("telemetry down"))

    with patch("headmaster_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job(attempt=2))

    sql, params = cursor.execute.await_args.args
    assert "status = 'pending'" in sql
    assert params == ("telemetry down", 4.0, 5)
    assert get_metrics()["jobs_failed"] == 1


@pytest.mark.parametrize("attempt,job_max,config_max", [(3, 3, 5), (2, 5, 2)])
async def test_exhausted_job_is_dead(attempt, job_max, config_max):
    conn, cursor = _conn()
    handler = AsyncMock(side_effect=RuntimeError("still broken"))

    with patch("headmaster_workers.worker.get_handler", return_value=handler):
        await _worker(max_retries=config_max)._process_job(
            conn, _job(attempt=attempt, max_retries=job_max)
        )

    sql, params = cursor.execute.await_args.args
    assert "status = 'dead'" in sql
    assert params == ("still broken", 5)
    assert get_metrics()["jobs_dead"] == 1


async def test_fatal_user_error_is_dead_without_retry(caplog):
    conn, cursor = _conn()
    handler = AsyncMock(side_effect=ConfigMissing(1))

    with patch("headmaster_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job(attempt=1))

    sql, params = cursor.execute.await_args.args
    assert "status = 'dead'" in sql
    assert params == ("user 1 has no config", 5)
    assert get_metrics()["jobs_dead"] == 1
    assert get_metrics()["jobs_failed"] == 0
    failed = next(r for r in caplog.records if r.getMessage().startswith("Job 5 failed"))
    assert failed.headmaster_error_class == "fatal_user"


async def test_deferred_error_is_retried_and_classified(caplog):
    conn, cursor = _conn()
    handler = AsyncMock(side_effect=FactSourceUnavailable("adapter timed out"))

    with patch("headmaster_workers.worker.get_handler", return_value=handler):
        await _worker()._process_job(conn, _job(attempt=1))

    sql, _ = cursor.execute.await_args.args
    assert "status = 'pending'" in sql
    failed = next(r for r in caplog.records if r.getMessage().startswith("Job 5 failed"))
    assert failed.headmaster_error_class == "deferred"
