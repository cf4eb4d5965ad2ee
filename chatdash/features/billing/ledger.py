"""
Webhook event ledger.

One row per provider event id. Processed events short-circuit replays;
failed events keep their error and are re-applied when the provider
re-delivers them.
"""
import hashlib
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from chatdash.core.database import get_db_session, dialect_insert, billing_events


def payload_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class BillingEventLedger:
    def is_processed(self, event_id: str) -> bool:
        with get_db_session() as session:
            row = session.execute(
                select(billing_events.c.processed).where(
                    billing_events.c.stripe_event_id == event_id
                )
            ).first()
        return bool(row and row.processed)

    def record_received(self, event_id: str, event_type: str, body_hash: str, at: datetime) -> None:
        """Insert the event row; a re-delivery keeps the existing row."""
        stmt = dialect_insert(billing_events).values(
            stripe_event_id=event_id,
            event_type=event_type,
            payload_hash=body_hash,
            processed=False,
            created_at=at,
        ).on_conflict_do_nothing(index_elements=[billing_events.c.stripe_event_id])
        with get_db_session() as session:
            session.execute(stmt)

    def mark_processed(self, event_id: str, at: datetime) -> None:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(processed=True, processed_at=at, error=None)
            )

    def mark_failed(self, event_id: str, error: str) -> None:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(error=error[:2000])
            )

    def get_error(self, event_id: str) -> Optional[str]:
        with get_db_session() as session:
            row = session.execute(
                select(billing_events.c.error).where(
                    billing_events.c.stripe_event_id == event_id
                )
            ).first()
        return row.error if row else None
