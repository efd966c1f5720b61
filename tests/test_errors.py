from __future__ import annotations

from datetime import UTC, datetime

from headmaster_workers.errors import (
    LEDGER_ERROR_CLASS_BY_CODE,
    CacheBackendUnavailable,
    ConfigMissing,
    FactSourceUnavailable,
    InvalidConfig,
    LedgerError,
    NonMonotonicHour,
    OverrideLookupFailure,
    classify_ledger_error,
    classify_ledger_error_code,
    is_fatal_for_user,
)


def test_classify_ledger_error_code_maps_known_classes() -> None:
    assert classify_ledger_error_code("config_missing") == "fatal_user"
    assert classify_ledger_error_code("invalid_config") == "fatal_user"
    assert classify_ledger_error_code("non_monotonic_hour") == "ordering"
    assert classify_ledger_error_code("override_lookup_failure") == "degraded"
    assert classify_ledger_error_code("cache_backend_unavailable") == "degraded"
    assert classify_ledger_error_code("fact_source_unavailable") == "deferred"


def test_classify_ledger_error_code_normalizes_and_defaults() -> None:
    assert classify_ledger_error_code("  Config_Missing ") == "fatal_user"
    assert classify_ledger_error_code(None) == "other"
    assert classify_ledger_error_code("") == "other"
    assert classify_ledger_error_code("disk_on_fire") == "other"


def test_classify_exceptions() -> None:
    hour = datetime(2026, 3, 2, 8, tzinfo=UTC)
    assert classify_ledger_error(ConfigMissing(1)) == "fatal_user"
    assert classify_ledger_error(InvalidConfig("hourly_activity_goal", "1..60")) == "fatal_user"
    assert classify_ledger_error(NonMonotonicHour(1, hour, None)) == "ordering"
    assert classify_ledger_error(OverrideLookupFailure("db down")) == "degraded"
    assert classify_ledger_error(CacheBackendUnavailable("db down")) == "degraded"
    assert classify_ledger_error(FactSourceUnavailable("timeout")) == "deferred"
    assert classify_ledger_error(RuntimeError("boom")) == "other"


def test_only_config_errors_are_fatal_for_user() -> None:
    assert is_fatal_for_user(ConfigMissing(1, ["hourly_activity_goal"])) is True
    assert is_fatal_for_user(OverrideLookupFailure("db down")) is False
    assert is_fatal_for_user(ValueError("x")) is False


def test_error_messages_name_the_problem() -> None:
    hour = datetime(2026, 3, 2, 8, tzinfo=UTC)
    assert "missing keys: day_starts_at" in str(ConfigMissing(3, ["day_starts_at"]))
    assert str(ConfigMissing(3)) == "user 3 has no config"
    message = str(NonMonotonicHour(3, hour, hour, expected_hour=hour.replace(hour=9)))
    assert "expected 2026-03-02T09:00:00+00:00" in message


def test_every_ledger_error_code_is_classified() -> None:
    for cls in LedgerError.__subclasses__():
        assert cls.code in LEDGER_ERROR_CLASS_BY_CODE, cls.__name__
