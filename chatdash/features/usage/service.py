"""
chatdash/features/usage/service.py

Usage gate (monthly message quota).

Handles:
- Calendar-month period computation (UTC)
- "May this user send one more message?" with an atomic check-and-increment
- Usage summaries for the dashboard
"""

import logging
import math
from calendar import monthrange
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from chatdash.core.timeutil import as_utc, utc_now
from chatdash.features.entitlements.service import (
    effective_tier,
    message_limit,
    usage_percentage,
    format_remaining,
)
from chatdash.features.plans.catalog import PlanCatalog
from chatdash.features.subscriptions.store import SubscriptionStore
from chatdash.features.usage.store import UsageStore
from chatdash.models.plan import Tier
from chatdash.models.usage import UsageDecision, UsagePeriod


logger = logging.getLogger(__name__)

LOW_BALANCE_THRESHOLD = 5


def current_period(now: Optional[datetime] = None) -> UsagePeriod:
    """Calendar month containing `now`: [first instant, last instant]."""
    now = as_utc(now) if now is not None else utc_now()
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    days = monthrange(now.year, now.month)[1]
    end = start + timedelta(days=days) - timedelta(microseconds=1)
    return UsagePeriod(start=start, end=end)


class UsageGate:
    """Combines entitlements with the usage counter for one user at a time."""

    def __init__(self, catalog: PlanCatalog, subscriptions: SubscriptionStore, usage: UsageStore):
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.usage = usage

    def try_consume_one_message(self, user_id: str, now: Optional[datetime] = None) -> UsageDecision:
        subscription = self.subscriptions.get(user_id)
        quota = message_limit(subscription, self.catalog)

        if math.isinf(quota):
            return UsageDecision(allowed=True, remaining=math.inf)

        period = current_period(now)
        accepted, count = self.usage.increment_if_under_quota(
            user_id, period.start, period.end, int(quota)
        )

        if not accepted:
            logger.warning(
                "[usage] QUOTA_REACHED",
                extra={
                    "user_id": user_id,
                    "tier": effective_tier(subscription).value,
                    "quota": quota,
                    "current_usage": count,
                },
            )
            return UsageDecision(allowed=False, remaining=0)

        return UsageDecision(allowed=True, remaining=int(quota) - count)

    def current_tier(self, user_id: str) -> Tier:
        return effective_tier(self.subscriptions.get(user_id))

    def usage_summary(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Read-only usage view for the current period."""
        subscription = self.subscriptions.get(user_id)
        tier = effective_tier(subscription)
        quota = message_limit(subscription, self.catalog)
        period = current_period(now)
        record = self.usage.get(user_id, period.start, period.end)
        used = record.count if record else 0
        remaining = math.inf if math.isinf(quota) else max(0, int(quota) - used)

        return {
            "tier": tier.value,
            "plan_name": self.catalog.get(tier).name,
            "used": used,
            "limit": None if math.isinf(quota) else int(quota),
            "remaining": None if math.isinf(remaining) else remaining,
            "remaining_display": format_remaining(remaining),
            "percentage": usage_percentage(used, quota),
            "low_balance": 0 < remaining <= LOW_BALANCE_THRESHOLD,
            "period_start": period.start,
            "period_end": period.end,
        }
