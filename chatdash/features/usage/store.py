"""
chatdash/features/usage/store.py

Usage counter storage.

increment_if_under_quota is a single conditional upsert:

    INSERT ... VALUES (count = 1)
    ON CONFLICT (user_id, period_start)
    DO UPDATE SET count = count + 1 WHERE count < :quota
    RETURNING count

so the quota check and the increment happen in one statement and two
concurrent senders cannot both pass a check that should reject one of them.
"""

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select

from chatdash.core.database import get_db_session, dialect_insert, message_usage
from chatdash.core.timeutil import as_utc, utc_now
from chatdash.models.usage import UsageRecord


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        count=row._mapping["count"],  # Row.count is the tuple method
        period_start=as_utc(row.period_start),
        period_end=as_utc(row.period_end),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class UsageStore:
    def get(self, user_id: str, period_start: datetime, period_end: datetime) -> Optional[UsageRecord]:
        with get_db_session() as session:
            row = session.execute(
                select(message_usage)
                .where(message_usage.c.user_id == user_id)
                .where(message_usage.c.period_start >= as_utc(period_start))
                .where(message_usage.c.period_end <= as_utc(period_end))
            ).first()
        return _row_to_record(row) if row else None

    def create_for_period(self, user_id: str, period_start: datetime, period_end: datetime) -> UsageRecord:
        """Create an empty record for the period (no-op if one exists)."""
        now = utc_now()
        stmt = dialect_insert(message_usage).values(
            user_id=user_id,
            count=0,
            period_start=as_utc(period_start),
            period_end=as_utc(period_end),
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(
            index_elements=[message_usage.c.user_id, message_usage.c.period_start],
        )
        with get_db_session() as session:
            session.execute(stmt)
        return self.get(user_id, period_start, period_end)

    def increment_if_under_quota(
        self,
        user_id: str,
        period_start: datetime,
        period_end: datetime,
        quota: int,
    ) -> Tuple[bool, int]:
        """
        Atomically count one message if the period is under quota.

        Returns:
            (accepted, count) where count is the new count on acceptance and
            the unchanged current count on rejection.
        """
        if quota <= 0:
            existing = self.get(user_id, period_start, period_end)
            return False, existing.count if existing else 0

        now = utc_now()
        stmt = (
            dialect_insert(message_usage)
            .values(
                user_id=user_id,
                count=1,
                period_start=as_utc(period_start),
                period_end=as_utc(period_end),
                created_at=now,
                updated_at=now,
            )
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[message_usage.c.user_id, message_usage.c.period_start],
            set_={"count": message_usage.c.count + 1, "updated_at": now},
            where=message_usage.c.count < quota,
        ).returning(message_usage.c.count)

        with get_db_session() as session:
            row = session.execute(stmt).first()

        if row is not None:
            return True, row._mapping["count"]

        existing = self.get(user_id, period_start, period_end)
        return False, existing.count if existing else 0
