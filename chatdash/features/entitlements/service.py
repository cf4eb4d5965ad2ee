"""
chatdash/features/entitlements/service.py

Entitlement resolver.

Pure functions over a subscription snapshot and the plan catalog:
- Non-active or missing subscriptions resolve to free-tier limits
- Unbounded quotas are math.inf, never a finite sentinel
"""

import math
from typing import Optional, Union

from chatdash.features.plans.catalog import PlanCatalog
from chatdash.models.plan import FeatureLimits, Tier
from chatdash.models.subscription import Subscription


FEATURE_NAMES = frozenset(FeatureLimits.model_fields)


def effective_tier(subscription: Optional[Subscription]) -> Tier:
    if subscription is None or not subscription.is_active:
        return Tier.FREE
    return subscription.tier


def resolve_feature_limits(subscription: Optional[Subscription], catalog: PlanCatalog) -> FeatureLimits:
    return catalog.limits_for(effective_tier(subscription))


def has_access(subscription: Optional[Subscription], feature: str, catalog: PlanCatalog) -> bool:
    """
    Boolean lookup of a gated capability.

    messages_per_month is a quota, so it counts as access when > 0.
    """
    if feature not in FEATURE_NAMES:
        raise ValueError(f"Unknown feature: {feature}")
    limits = resolve_feature_limits(subscription, catalog)
    if feature == "messages_per_month":
        return limits.messages_per_month > 0
    return bool(getattr(limits, feature))


def message_limit(subscription: Optional[Subscription], catalog: PlanCatalog) -> Union[int, float]:
    return resolve_feature_limits(subscription, catalog).messages_per_month


def usage_percentage(used: int, limit: Union[int, float]) -> int:
    if math.isinf(limit):
        return 0
    if limit <= 0:
        return 100
    return min(round(used / limit * 100), 100)


def format_remaining(remaining: Union[int, float]) -> str:
    if math.isinf(remaining):
        return "Unlimited"
    return str(int(remaining))
