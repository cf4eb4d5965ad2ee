"""Plan catalog API (public)."""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from chatdash.api.deps import get_catalog
from chatdash.features.plans.catalog import PlanCatalog
from chatdash.models.plan import Plan


router = APIRouter(prefix="/plans", tags=["plans"])


class PlanResponse(BaseModel):
    tier: str
    name: str
    description: str
    price: int
    features: List[str]
    stripe_price_id: Optional[str]
    purchasable: bool
    messages_per_month: Optional[int]  # None means unlimited


def plan_to_response(plan: Plan) -> PlanResponse:
    return PlanResponse(
        tier=plan.tier.value,
        name=plan.name,
        description=plan.description,
        price=plan.price,
        features=list(plan.features),
        stripe_price_id=plan.stripe_price_id or None,
        purchasable=plan.purchasable,
        messages_per_month=None if plan.limits.unlimited_messages else int(plan.limits.messages_per_month),
    )


@router.get("", response_model=List[PlanResponse])
def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    """All plans in tier order."""
    return [plan_to_response(p) for p in catalog.plans()]
