"""Process-wide collaborators shared by job handlers.

Handlers only receive ``(conn, payload)``; the fact source, the emitter (with
its plugin dispatcher) and the evaluation settings are built once at worker
startup from ``Config`` and looked up here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import Config
from .emitter import EventEmitter
from .plugins import PluginDispatcher, discover_plugins
from .telemetry import (
    ActivityFactSource,
    HttpActivityFactSource,
    RawDaySource,
    StaticActivityFactSource,
)

logger = logging.getLogger(__name__)

TELEMETRY_MODES = ("day", "hour")


@dataclass
class Runtime:
    facts: ActivityFactSource
    emitter: EventEmitter
    summary_window_hours: int = 24
    summary_cache_ttl_seconds: float = 60.0
    day_timezone: str = "UTC"
    # Raw-day telemetry; when set, facts are normalized per job against the user config.
    days: RawDaySource | None = None


_runtime: Runtime | None = None


def build_runtime(config: Config) -> Runtime:
    if config.telemetry_mode not in TELEMETRY_MODES:
        raise ValueError(
            f"HEADMASTER_TELEMETRY_MODE must be one of {TELEMETRY_MODES}, "
            f"got {config.telemetry_mode!r}"
        )

    facts: ActivityFactSource
    days: RawDaySource | None = None
    if config.telemetry_url:
        http = HttpActivityFactSource(
            config.telemetry_url,
            timeout_seconds=config.telemetry_timeout_seconds,
        )
        facts = http
        if config.telemetry_mode == "day":
            days = http
    else:
        logger.warning("HEADMASTER_TELEMETRY_URL not set; every hour evaluates as a sensor gap")
        facts = StaticActivityFactSource()

    extra = []
    if config.plugins_dir:
        extra.append(PluginDispatcher(discover_plugins(config.plugins_dir)))

    return Runtime(
        facts=facts,
        emitter=EventEmitter(extra_subscribers=extra),
        summary_window_hours=config.summary_window_hours,
        summary_cache_ttl_seconds=config.summary_cache_ttl_seconds,
        day_timezone=config.day_timezone,
        days=days,
    )


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("worker runtime not configured")
    return _runtime


async def close_runtime() -> None:
    global _runtime
    if _runtime is not None and isinstance(_runtime.facts, HttpActivityFactSource):
        await _runtime.facts.aclose()
    _runtime = None
