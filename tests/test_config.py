from __future__ import annotations

import pytest

from headmaster_workers.config import Config

_ENV = (
    "HEADMASTER_WORKER_LISTEN_DATABASE_URL",
    "HEADMASTER_POLL_INTERVAL",
    "HEADMASTER_TELEMETRY_URL",
    "HEADMASTER_TELEMETRY_MODE",
    "HEADMASTER_PLUGINS_DIR",
    "HEADMASTER_SUMMARY_WINDOW_HOURS",
    "HEADMASTER_SUMMARY_CACHE_TTL",
    "HEADMASTER_EVALUATION_INTERVAL_HOURS",
)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_config_from_env_requires_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL must be set"):
        Config.from_env()


def test_config_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/headmaster")

    cfg = Config.from_env()
    assert cfg.listen_database_url == "postgresql://app@db/headmaster"
    assert cfg.telemetry_url is None
    assert cfg.telemetry_mode == "day"
    assert cfg.plugins_dir is None
    assert cfg.summary_window_hours == 24
    assert cfg.summary_cache_ttl_seconds == 60.0
    assert cfg.evaluation_interval_hours == 1


def test_config_from_env_honors_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/headmaster")
    monkeypatch.setenv("HEADMASTER_WORKER_LISTEN_DATABASE_URL", "postgresql://app@db/direct")
    monkeypatch.setenv("HEADMASTER_TELEMETRY_URL", "http://telemetry:9000")
    monkeypatch.setenv("HEADMASTER_TELEMETRY_MODE", "hour")
    monkeypatch.setenv("HEADMASTER_PLUGINS_DIR", "/etc/headmaster/plugins")
    monkeypatch.setenv("HEADMASTER_SUMMARY_CACHE_TTL", "0")
    monkeypatch.setenv("HEADMASTER_POLL_INTERVAL", "0.5")

    cfg = Config.from_env()
    assert cfg.listen_database_url == "postgresql://app@db/direct"
    assert cfg.telemetry_url == "http://telemetry:9000"
    assert cfg.telemetry_mode == "hour"
    assert cfg.plugins_dir == "/etc/headmaster/plugins"
    assert cfg.summary_cache_ttl_seconds == 0
    assert cfg.poll_interval_seconds == 0.5


def test_config_from_env_clamps_windows(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/headmaster")
    monkeypatch.setenv("HEADMASTER_SUMMARY_WINDOW_HOURS", "0")
    monkeypatch.setenv("HEADMASTER_EVALUATION_INTERVAL_HOURS", "-3")

    cfg = Config.from_env()
    assert cfg.summary_window_hours == 1
    assert cfg.evaluation_interval_hours == 1
