"""Config version log and effective-as-of resolution.

Config rows are never updated in place: every settings change appends a new
version to ``config_versions`` and refreshes the ``config`` row that holds the
current version. Historical hours always resolve against the version that was
in force when the hour started, so replays stay deterministic after a goal
change.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .errors import ConfigMissing, InvalidConfig
from .models import ConfigChanges, ConfigVersion, as_utc

logger = logging.getLogger(__name__)

REQUIRED_FIRST_VERSION_KEYS: tuple[str, ...] = (
    "hourly_activity_goal",
    "day_starts_at",
    "day_ends_at",
)

_CONFIG_COLUMNS = (
    "user_id, version, hourly_activity_goal, day_starts_at, day_ends_at, "
    "day_length, hourly_debt_limit, hourly_activity_limit, created_at"
)


def _check_range(key: str, value: int | None, lower: int, upper: int) -> None:
    if value is None:
        return
    if value < lower or value > upper:
        raise InvalidConfig(key, f"{lower} <= value <= {upper}")


def validate_config(config: ConfigVersion) -> ConfigVersion:
    if config.hourly_activity_goal <= 0 or config.hourly_activity_goal > 60:
        raise InvalidConfig("hourly_activity_goal", "0 < value <= 60")
    if config.day_starts_at > config.day_ends_at:
        raise InvalidConfig("day_starts_at | day_ends_at", "day should start before it ends")
    _check_range("hourly_debt_limit", config.hourly_debt_limit, 1, 3600)
    # Credited hours (sleep, active override) must survive the cap intact.
    _check_range(
        "hourly_activity_limit",
        config.hourly_activity_limit,
        config.hourly_activity_goal,
        60,
    )
    _check_range("day_length", config.day_length, 1, 24)
    return config


def build_config_version(
    user_id: int,
    current: ConfigVersion | None,
    changes: ConfigChanges,
    created_at: datetime,
) -> ConfigVersion:
    """Merge ``changes`` over ``current`` into the next (validated) version."""
    updates = changes.model_dump(exclude_unset=True)
    if current is None:
        missing = [key for key in REQUIRED_FIRST_VERSION_KEYS if updates.get(key) is None]
        if missing:
            raise ConfigMissing(user_id, missing)
        base: dict[str, Any] = {"user_id": user_id, "version": 1}
    else:
        base = current.model_dump()
        base["version"] = current.version + 1

    for key, value in updates.items():
        if value is None and key in REQUIRED_FIRST_VERSION_KEYS:
            continue
        base[key] = value
    base["created_at"] = as_utc(created_at)
    return validate_config(ConfigVersion(**base))


def select_effective_config(
    versions: Sequence[ConfigVersion], hour: datetime
) -> ConfigVersion | None:
    """Highest version created at or before ``hour``.

    Hours older than the first version fall back to the earliest version so
    backfilled history can still be evaluated.
    """
    if not versions:
        return None
    hour = as_utc(hour)
    ordered = sorted(versions, key=lambda v: v.version)
    effective: ConfigVersion | None = None
    for version in ordered:
        if version.created_at <= hour:
            effective = version
    return effective or ordered[0]


class ConfigResolver:
    """Reads the config version log for one connection.

    Version lists are memoized per user for the lifetime of the resolver;
    they are append-only, and ``append_config`` drops the memo it touches.
    """

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn
        self._versions: dict[int, list[ConfigVersion]] = {}

    async def list_versions(self, user_id: int) -> list[ConfigVersion]:
        cached = self._versions.get(user_id)
        if cached is not None:
            return cached

        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"""
                SELECT {_CONFIG_COLUMNS}
                FROM config_versions
                WHERE user_id = %s
                ORDER BY version ASC
                """,
                (user_id,),
            )
            rows = await cur.fetchall()

        versions = [ConfigVersion(**row) for row in rows]
        self._versions[user_id] = versions
        return versions

    async def effective_config(self, user_id: int, hour: datetime) -> ConfigVersion:
        config = select_effective_config(await self.list_versions(user_id), hour)
        if config is None:
            raise ConfigMissing(user_id)
        return config

    async def current_config(self, user_id: int) -> ConfigVersion:
        versions = await self.list_versions(user_id)
        if not versions:
            raise ConfigMissing(user_id)
        return versions[-1]

    async def latest_change_at(self, user_id: int, as_of: datetime) -> datetime | None:
        """Creation time of the newest version already in force at ``as_of``."""
        as_of = as_utc(as_of)
        created = [
            v.created_at for v in await self.list_versions(user_id) if v.created_at <= as_of
        ]
        return max(created) if created else None

    async def first_configured_at(self, user_id: int) -> datetime:
        versions = await self.list_versions(user_id)
        if not versions:
            raise ConfigMissing(user_id)
        return versions[0].created_at

    async def configured_user_ids(self) -> list[int]:
        async with self.conn.cursor() as cur:
            await cur.execute("SELECT user_id FROM config ORDER BY user_id")
            rows = await cur.fetchall()
        return [int(row[0]) for row in rows]

    async def append_config(
        self,
        user_id: int,
        changes: ConfigChanges,
        created_at: datetime | None = None,
    ) -> ConfigVersion:
        """Append a new version and make it current. Runs in one transaction."""
        created_at = created_at or datetime.now(UTC)

        async with self.conn.transaction():
            async with self.conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    SELECT {_CONFIG_COLUMNS}
                    FROM config_versions
                    WHERE user_id = %s
                    ORDER BY version DESC
                    LIMIT 1
                    FOR UPDATE
                    """,
                    (user_id,),
                )
                row = await cur.fetchone()

            current = ConfigVersion(**row) if row else None
            version = build_config_version(user_id, current, changes, created_at)
            values = (
                version.user_id,
                version.version,
                version.hourly_activity_goal,
                version.day_starts_at,
                version.day_ends_at,
                version.day_length,
                version.hourly_debt_limit,
                version.hourly_activity_limit,
            )

            async with self.conn.cursor() as cur:
                await cur.execute(
                    f"""
                    INSERT INTO config_versions ({_CONFIG_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (*values, version.created_at),
                )
                await cur.execute(
                    """
                    INSERT INTO config (
                        user_id, version, hourly_activity_goal, day_starts_at, day_ends_at,
                        day_length, hourly_debt_limit, hourly_activity_limit
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE SET
                        version = EXCLUDED.version,
                        hourly_activity_goal = EXCLUDED.hourly_activity_goal,
                        day_starts_at = EXCLUDED.day_starts_at,
                        day_ends_at = EXCLUDED.day_ends_at,
                        day_length = EXCLUDED.day_length,
                        hourly_debt_limit = EXCLUDED.hourly_debt_limit,
                        hourly_activity_limit = EXCLUDED.hourly_activity_limit
                    """,
                    values,
                )

        self._versions.pop(user_id, None)
        logger.info(
            "Config version %d appended for user %d (goal=%d)",
            version.version,
            user_id,
            version.hourly_activity_goal,
        )
        return version
