"""
chatdash/features/subscriptions/store.py

Subscription record store.

Narrow query interface over the subscriptions table:
- get(user_id)
- upsert(subscription)   (created_at is never overwritten)
- update(user_id, **fields) -> bool
"""

import logging
from typing import Any, Optional

from sqlalchemy import select, update as sa_update

from chatdash.core.database import get_db_session, dialect_insert, subscriptions
from chatdash.core.timeutil import as_utc
from chatdash.models.plan import Tier
from chatdash.models.subscription import Subscription


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "stripe_customer_id",
    "stripe_subscription_id",
    "status",
    "tier",
    "current_period_end",
    "cancel_at_period_end",
    "last_event_at",
    "updated_at",
})


def _row_to_subscription(row) -> Subscription:
    try:
        tier = Tier(row.tier)
    except ValueError:
        logger.warning(
            "[subscriptions] unknown stored tier, treating as free",
            extra={"user_id": row.user_id, "tier": row.tier},
        )
        tier = Tier.FREE
    return Subscription(
        user_id=row.user_id,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        status=row.status,
        tier=tier,
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        last_event_at=as_utc(row.last_event_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _column_value(key: str, value: Any) -> Any:
    if isinstance(value, Tier):
        return value.value
    if key in ("current_period_end", "last_event_at", "updated_at", "created_at"):
        return as_utc(value)
    return value


class SubscriptionStore:
    """One subscription row per user."""

    def get(self, user_id: str) -> Optional[Subscription]:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.user_id == user_id)
            ).first()
        return _row_to_subscription(row) if row else None

    def upsert(self, subscription: Subscription) -> None:
        values = {
            key: _column_value(key, value)
            for key, value in subscription.model_dump().items()
        }
        stmt = dialect_insert(subscriptions).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[subscriptions.c.user_id],
            set_={k: v for k, v in values.items() if k not in ("user_id", "created_at")},
        )
        with get_db_session() as session:
            session.execute(stmt)

    def update(self, user_id: str, **fields: Any) -> bool:
        """Apply a partial update; returns False when no row matched."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
        if not fields:
            return False

        with get_db_session() as session:
            result = session.execute(
                sa_update(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .values(**{k: _column_value(k, v) for k, v in fields.items()})
            )
            return result.rowcount > 0
