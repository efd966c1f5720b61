"""In-memory worker metrics.

Asyncio is single-threaded, so plain dicts are safe without locking.
"""

import time

_start_time = time.monotonic()

_COUNTERS = (
    "jobs_processed",
    "jobs_failed",
    "jobs_dead",
    "hours_evaluated",
    "hours_rejected",
    "users_skipped",
    "events_emitted",
    "subscriber_failures",
    "cache_hits",
    "cache_misses",
    "cache_bypassed",
    "plugin_runs",
    "plugin_failures",
)

_metrics: dict = {name: 0 for name in _COUNTERS}
_metrics["handlers"] = {}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    """Record a single handler invocation with timing."""
    h = _metrics["handlers"].setdefault(handler_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    h["invocations"] += 1
    h["total_duration_ms"] += duration_ms
    if success:
        h["successes"] += 1
    else:
        h["failures"] += 1


def increment(name: str, amount: int = 1) -> None:
    if name not in _COUNTERS:
        raise KeyError(f"unknown metric {name!r}")
    _metrics[name] += amount


def record_job_completed() -> None:
    increment("jobs_processed")


def record_job_failed() -> None:
    increment("jobs_failed")


def record_job_dead() -> None:
    increment("jobs_dead")


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    snapshot: dict = {"uptime_seconds": round(time.monotonic() - _start_time, 1)}
    for name in _COUNTERS:
        snapshot[name] = _metrics[name]
    snapshot["handlers"] = {
        name: dict(stats)
        for name, stats in _metrics["handlers"].items()
    }
    return snapshot


def reset_metrics() -> None:
    for name in _COUNTERS:
        _metrics[name] = 0
    _metrics["handlers"] = {}
