"""Manual per-hour activity overrides (and amnesty, which is routed through them)."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime
from typing import Any

import psycopg

from .errors import OverrideLookupFailure
from .models import ActiveHoursOverride, as_utc, local_date_hour

logger = logging.getLogger(__name__)


class OverrideResolver:
    """Lookups against ``active_hours_overrides``.

    Day-sized reads are memoized per resolver so that an evaluation run does
    one query per user-day instead of one per hour.
    """

    def __init__(self, conn: psycopg.AsyncConnection[Any], timezone_name: str = "UTC") -> None:
        self.conn = conn
        self.timezone_name = timezone_name
        self._days: dict[tuple[int, date], dict[int, bool]] = {}

    async def list_overrides(self, user_id: int, override_date: date) -> dict[int, bool]:
        key = (user_id, override_date)
        cached = self._days.get(key)
        if cached is not None:
            return cached

        try:
            # Savepoint: a failed lookup must not abort the caller's transaction.
            async with self.conn.transaction(), self.conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT override_hour, is_active
                    FROM active_hours_overrides
                    WHERE user_id = %s AND override_date = %s
                    """,
                    (user_id, override_date),
                )
                rows = await cur.fetchall()
        except psycopg.Error as exc:
            raise OverrideLookupFailure(
                f"override lookup failed for user {user_id} on {override_date}: {exc}"
            ) from exc

        overrides = {int(hour): bool(is_active) for hour, is_active in rows}
        self._days[key] = overrides
        return overrides

    async def resolve_override(
        self, user_id: int, override_date: date, override_hour: int
    ) -> bool | None:
        overrides = await self.list_overrides(user_id, override_date)
        return overrides.get(override_hour)

    async def resolve_for_hour(self, user_id: int, hour: datetime) -> bool | None:
        """Fail-open lookup for the engine: backend errors mean "no override"."""
        override_date, override_hour = local_date_hour(hour, self.timezone_name)
        try:
            return await self.resolve_override(user_id, override_date, override_hour)
        except OverrideLookupFailure as exc:
            logger.warning(
                "Override lookup failed, falling back to computed policy: %s",
                exc,
                extra={"headmaster_user_id": user_id, "headmaster_hour": hour.isoformat()},
            )
            return None

    async def latest_change_at(self, user_id: int, as_of: datetime) -> datetime | None:
        """Newest ``updated_at`` among overrides for hours starting before ``as_of``."""
        as_of = as_utc(as_of)
        local_date, local_hour = local_date_hour(as_of, self.timezone_name)
        try:
            async with self.conn.transaction(), self.conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT MAX(updated_at)
                    FROM active_hours_overrides
                    WHERE user_id = %s
                      AND (override_date < %s
                           OR (override_date = %s AND override_hour < %s))
                    """,
                    (user_id, local_date, local_date, local_hour),
                )
                row = await cur.fetchone()
        except psycopg.Error as exc:
            raise OverrideLookupFailure(
                f"override change lookup failed for user {user_id}: {exc}"
            ) from exc
        if not row or row[0] is None:
            return None
        return as_utc(row[0])

    async def set_overrides(
        self,
        user_id: int,
        override_date: date,
        hours: Mapping[int, bool],
        updated_at: datetime | None = None,
    ) -> list[ActiveHoursOverride]:
        updated_at = as_utc(updated_at or datetime.now(UTC))
        rows = [
            ActiveHoursOverride(
                user_id=user_id,
                override_date=override_date,
                override_hour=hour,
                is_active=is_active,
                updated_at=updated_at,
            )
            for hour, is_active in sorted(hours.items())
        ]
        async with self.conn.cursor() as cur:
            for row in rows:
                await cur.execute(
                    """
                    INSERT INTO active_hours_overrides (
                        user_id, override_date, override_hour, is_active, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, override_date, override_hour) DO UPDATE SET
                        is_active = EXCLUDED.is_active,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        row.user_id,
                        row.override_date,
                        row.override_hour,
                        row.is_active,
                        row.updated_at,
                    ),
                )

        self._days.pop((user_id, override_date), None)
        logger.info(
            "Stored %d override(s) for user %d on %s", len(rows), user_id, override_date
        )
        return rows

    async def grant_amnesty(
        self,
        user_id: int,
        override_date: date,
        hours: Iterable[int],
        updated_at: datetime | None = None,
    ) -> list[ActiveHoursOverride]:
        """Clear debt for the given hours by marking them active.

        Takes effect only for hours not yet evaluated (or on replay).
        """
        return await self.set_overrides(
            user_id,
            override_date,
            {hour: True for hour in hours},
            updated_at=updated_at,
        )
