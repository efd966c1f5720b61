import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"
    telemetry_url: str | None = None
    telemetry_timeout_seconds: float = 10.0
    telemetry_mode: str = "day"
    plugins_dir: str | None = None
    summary_window_hours: int = 24
    summary_cache_ttl_seconds: float = 60.0
    day_timezone: str = "UTC"
    evaluation_interval_hours: int = 1

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=(
                os.environ.get("HEADMASTER_WORKER_LISTEN_DATABASE_URL") or database_url
            ),
            poll_interval_seconds=float(os.environ.get("HEADMASTER_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("HEADMASTER_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("HEADMASTER_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("HEADMASTER_HEALTH_PORT", "8081")),
            log_format=os.environ.get("HEADMASTER_LOG_FORMAT", "json"),
            telemetry_url=os.environ.get("HEADMASTER_TELEMETRY_URL") or None,
            telemetry_timeout_seconds=float(
                os.environ.get("HEADMASTER_TELEMETRY_TIMEOUT", "10.0")
            ),
            telemetry_mode=os.environ.get("HEADMASTER_TELEMETRY_MODE", "day"),
            plugins_dir=os.environ.get("HEADMASTER_PLUGINS_DIR") or None,
            summary_window_hours=max(
                1, int(os.environ.get("HEADMASTER_SUMMARY_WINDOW_HOURS", "24"))
            ),
            summary_cache_ttl_seconds=float(
                os.environ.get("HEADMASTER_SUMMARY_CACHE_TTL", "60")
            ),
            day_timezone=os.environ.get("HEADMASTER_DAY_TIMEZONE", "UTC"),
            evaluation_interval_hours=max(
                1, int(os.environ.get("HEADMASTER_EVALUATION_INTERVAL_HOURS", "1"))
            ),
        )
