"""Persistence for the single mutable ledger row per user.

The row's ``last_evaluated_hour`` is the evaluation cursor. Every commit is a
conditional write against the cursor the caller read, so a second writer for
the same user loses the race instead of evaluating an hour twice.
"""

from __future__ import annotations

from typing import Any

import psycopg
from psycopg.rows import dict_row

from .errors import NonMonotonicHour
from .models import LedgerState, as_utc


class LedgerStateStore:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def load(self, user_id: int) -> LedgerState:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT user_id, state, debt_minutes, last_evaluated_hour
                FROM ledger_state
                WHERE user_id = %s
                """,
                (user_id,),
            )
            row = await cur.fetchone()

        if row is None:
            return LedgerState.initial(user_id)

        last_hour = row["last_evaluated_hour"]
        return LedgerState(
            user_id=int(row["user_id"]),
            state=row["state"],
            debt_minutes=int(row["debt_minutes"]),
            last_evaluated_hour=as_utc(last_hour) if last_hour is not None else None,
        )

    async def commit(self, previous: LedgerState, new: LedgerState) -> None:
        """Persist ``new`` only if the stored cursor still equals ``previous``'s."""
        if new.last_evaluated_hour is None:
            raise ValueError("cannot commit a ledger state without an evaluated hour")

        async with self.conn.cursor() as cur:
            if previous.last_evaluated_hour is None:
                await cur.execute(
                    """
                    INSERT INTO ledger_state (
                        user_id, state, debt_minutes, last_evaluated_hour, updated_at
                    )
                    VALUES (%s, %s, %s, %s, NOW())
                    ON CONFLICT (user_id) DO NOTHING
                    """,
                    (new.user_id, new.state, new.debt_minutes, new.last_evaluated_hour),
                )
            else:
                await cur.execute(
                    """
                    UPDATE ledger_state
                    SET state = %s,
                        debt_minutes = %s,
                        last_evaluated_hour = %s,
                        updated_at = NOW()
                    WHERE user_id = %s
                      AND last_evaluated_hour = %s
                    """,
                    (
                        new.state,
                        new.debt_minutes,
                        new.last_evaluated_hour,
                        new.user_id,
                        previous.last_evaluated_hour,
                    ),
                )
            written = cur.rowcount

        if written != 1:
            raise NonMonotonicHour(
                new.user_id,
                new.last_evaluated_hour,
                previous.last_evaluated_hour,
            )

    def transaction(self) -> Any:
        """One hour's commit; a savepoint when the caller already holds a transaction."""
        return self.conn.transaction()
