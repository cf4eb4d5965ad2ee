"""
chatdash/models/subscription.py

Subscription record mirrored from the billing provider.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from chatdash.models.plan import Tier


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    UNPAID = "unpaid"


class Subscription(BaseModel):
    """
    One row per user.

    status is kept as the provider's raw string so that statuses the
    provider adds later are stored rather than rejected; anything other
    than "active" resolves to free-tier entitlements.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    status: str
    tier: Tier = Tier.FREE
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_event_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value
