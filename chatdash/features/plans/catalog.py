"""
chatdash/features/plans/catalog.py

Plan catalog.

Built once at start-up from settings and handed to the entitlement
resolver, usage gate and billing code. Price ids come from configuration;
a missing price id leaves the plan visible but unpurchasable.
"""

import math
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from chatdash.core.config import Settings
from chatdash.models.plan import FeatureLimits, Plan, Tier, TIER_ORDER


FREE_MESSAGES_PER_MONTH = 100


# Limits per tier; unbounded quotas are math.inf
TIER_LIMITS: Mapping[Tier, FeatureLimits] = MappingProxyType({
    Tier.FREE: FeatureLimits(
        messages_per_month=FREE_MESSAGES_PER_MONTH,
    ),
    Tier.PRO: FeatureLimits(
        messages_per_month=math.inf,
        custom_templates=True,
        advanced_ai=True,
        priority_support=True,
    ),
    Tier.ENTERPRISE: FeatureLimits(
        messages_per_month=math.inf,
        custom_templates=True,
        advanced_ai=True,
        priority_support=True,
        team_collaboration=True,
        custom_ai_training=True,
        api_access=True,
    ),
})


class PlanCatalog:
    """Immutable tier -> Plan table with price-id lookups."""

    def __init__(self, plans: List[Plan]):
        by_tier: Dict[Tier, Plan] = {}
        for plan in plans:
            if plan.tier in by_tier:
                raise ValueError(f"Duplicate plan for tier: {plan.tier.value}")
            by_tier[plan.tier] = plan
        missing = [t.value for t in TIER_ORDER if t not in by_tier]
        if missing:
            raise ValueError(f"Missing plans for tiers: {', '.join(missing)}")

        self._plans = MappingProxyType(by_tier)
        # Empty price ids never enter the lookup table
        self._tier_by_price = MappingProxyType({
            plan.stripe_price_id: plan.tier
            for plan in by_tier.values()
            if plan.purchasable
        })

    def get(self, tier: Tier) -> Plan:
        return self._plans[tier]

    def plans(self) -> List[Plan]:
        """All plans in tier order."""
        return [self._plans[t] for t in TIER_ORDER]

    def limits_for(self, tier: Tier) -> FeatureLimits:
        return self._plans[tier].limits

    def tier_for_price(self, price_id: Optional[str]) -> Tier:
        """Map a provider price id to a tier; unknown ids map to free."""
        if not price_id:
            return Tier.FREE
        return self._tier_by_price.get(price_id, Tier.FREE)

    def is_purchasable_price(self, price_id: Optional[str]) -> bool:
        return bool(price_id) and price_id in self._tier_by_price

    def upgrade_options(self, current: Tier) -> List[Plan]:
        """Plans strictly above the current tier."""
        return [self._plans[t] for t in TIER_ORDER if t > current]


def build_catalog(cfg: Settings) -> PlanCatalog:
    """Construct the catalog from deployment configuration."""
    return PlanCatalog([
        Plan(
            tier=Tier.FREE,
            name="Free",
            description="For personal use",
            price=0,
            features=(
                f"{FREE_MESSAGES_PER_MONTH} messages per month",
                "Basic chat features",
                "Community support",
            ),
            stripe_price_id="",
            limits=TIER_LIMITS[Tier.FREE],
        ),
        Plan(
            tier=Tier.PRO,
            name="Pro",
            description="For professionals",
            price=19,
            features=(
                "Unlimited messages",
                "Advanced AI features",
                "Priority support",
                "Custom chat templates",
            ),
            stripe_price_id=cfg.STRIPE_PRO_PRICE_ID or "",
            limits=TIER_LIMITS[Tier.PRO],
        ),
        Plan(
            tier=Tier.ENTERPRISE,
            name="Enterprise",
            description="For teams and organizations",
            price=99,
            features=(
                "Everything in Pro",
                "Team collaboration",
                "Custom AI model training",
                "Dedicated support",
                "API access",
            ),
            stripe_price_id=cfg.STRIPE_ENTERPRISE_PRICE_ID or "",
            limits=TIER_LIMITS[Tier.ENTERPRISE],
        ),
    ])
