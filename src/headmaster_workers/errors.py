"""Stable error taxonomy for the hourly evaluation engine."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

LedgerErrorClass = Literal[
    "fatal_user",
    "ordering",
    "degraded",
    "deferred",
    "other",
]

LEDGER_ERROR_CLASS_BY_CODE: dict[str, LedgerErrorClass] = {
    "config_missing": "fatal_user",
    "invalid_config": "fatal_user",
    "non_monotonic_hour": "ordering",
    "override_lookup_failure": "degraded",
    "cache_backend_unavailable": "degraded",
    "fact_source_unavailable": "deferred",
}


class LedgerError(Exception):
    code = "ledger_error"


class ConfigMissing(LedgerError):
    code = "config_missing"

    def __init__(self, user_id: int, keys: list[str] | None = None) -> None:
        self.user_id = user_id
        self.keys = list(keys or [])
        if self.keys:
            message = f"user {user_id} config is missing keys: {', '.join(self.keys)}"
        else:
            message = f"user {user_id} has no config"
        super().__init__(message)


class InvalidConfig(LedgerError):
    code = "invalid_config"

    def __init__(self, key: str, hint: str) -> None:
        self.key = key
        self.hint = hint
        super().__init__(f"invalid value for {key}: expected {hint}")


class NonMonotonicHour(LedgerError):
    code = "non_monotonic_hour"

    def __init__(
        self,
        user_id: int,
        hour: datetime,
        last_evaluated_hour: datetime | None,
        expected_hour: datetime | None = None,
    ) -> None:
        self.user_id = user_id
        self.hour = hour
        self.last_evaluated_hour = last_evaluated_hour
        self.expected_hour = expected_hour
        message = (
            f"user {user_id}: hour {hour.isoformat()} rejected "
            f"(last_evaluated_hour={last_evaluated_hour.isoformat() if last_evaluated_hour else None}"
        )
        if expected_hour is not None:
            message += f", expected {expected_hour.isoformat()}"
        super().__init__(message + ")")


class OverrideLookupFailure(LedgerError):
    code = "override_lookup_failure"


class CacheBackendUnavailable(LedgerError):
    code = "cache_backend_unavailable"


class FactSourceUnavailable(LedgerError):
    """Telemetry could not answer for an hour; the hour stays unevaluated."""

    code = "fact_source_unavailable"


def classify_ledger_error_code(error_code: str | None) -> LedgerErrorClass:
    normalized = str(error_code or "").strip().lower()
    if not normalized:
        return "other"
    return LEDGER_ERROR_CLASS_BY_CODE.get(normalized, "other")


def classify_ledger_error(exc: BaseException) -> LedgerErrorClass:
    return classify_ledger_error_code(getattr(exc, "code", None))


def is_fatal_for_user(exc: BaseException) -> bool:
    return classify_ledger_error(exc) == "fatal_user"
