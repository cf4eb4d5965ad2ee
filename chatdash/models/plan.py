"""
chatdash/models/plan.py

Plan and feature-limit models.

Tiers are strictly ordered (free < pro < enterprise); the order drives
upgrade/downgrade comparisons. A plan whose price id is empty can be shown
but never purchased.
"""

import math
from enum import Enum
from typing import Tuple, Union
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


TIER_ORDER: Tuple[Tier, ...] = (Tier.FREE, Tier.PRO, Tier.ENTERPRISE)


class FeatureLimits(BaseModel):
    """
    Resolved entitlements for a subscription state.

    messages_per_month is an int, or math.inf for unbounded plans.
    """
    model_config = ConfigDict(frozen=True)

    messages_per_month: Union[int, float]
    custom_templates: bool = False
    advanced_ai: bool = False
    priority_support: bool = False
    team_collaboration: bool = False
    custom_ai_training: bool = False
    api_access: bool = False

    @property
    def unlimited_messages(self) -> bool:
        return math.isinf(self.messages_per_month)


class Plan(BaseModel):
    """A subscription tier with display metadata and limits."""
    model_config = ConfigDict(frozen=True)

    tier: Tier
    name: str
    description: str
    price: int  # whole currency units per month
    features: Tuple[str, ...]
    stripe_price_id: str = ""
    limits: FeatureLimits

    @property
    def purchasable(self) -> bool:
        return self.tier != Tier.FREE and bool(self.stripe_price_id)
