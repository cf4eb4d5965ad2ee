"""
Usage API.

- GET  /api/usage: current-period usage summary
- POST /api/usage/consume: count one message against the quota
"""

import math
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from chatdash.api.deps import get_catalog, get_usage_gate
from chatdash.api.plans import PlanResponse, plan_to_response
from chatdash.core.auth import CurrentUser, get_current_user
from chatdash.features.entitlements.service import format_remaining
from chatdash.features.plans.catalog import PlanCatalog
from chatdash.features.usage.service import UsageGate
from chatdash.models.plan import Tier
from chatdash.models.usage import UsageDecision


router = APIRouter(prefix="/usage", tags=["usage"])


class UsageSummaryResponse(BaseModel):
    tier: str
    plan_name: str
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    remaining_display: str
    percentage: int
    low_balance: bool
    period_start: datetime
    period_end: datetime


class ConsumeResponse(BaseModel):
    allowed: bool
    remaining: Optional[int]  # None means unlimited
    remaining_display: str
    upgrade_options: List[PlanResponse] = []


def quota_exceeded_response(user_tier: Tier, catalog: PlanCatalog) -> JSONResponse:
    """402 notice for an exhausted quota; a normal outcome, not an error."""
    body = ConsumeResponse(
        allowed=False,
        remaining=0,
        remaining_display=format_remaining(0),
        upgrade_options=[plan_to_response(p) for p in catalog.upgrade_options(user_tier)],
    )
    return JSONResponse(status_code=402, content=body.model_dump())


def decision_to_response(decision: UsageDecision) -> ConsumeResponse:
    return ConsumeResponse(
        allowed=decision.allowed,
        remaining=None if math.isinf(decision.remaining) else int(decision.remaining),
        remaining_display=format_remaining(decision.remaining),
    )


@router.get("", response_model=UsageSummaryResponse)
def usage_summary(
    user: CurrentUser = Depends(get_current_user),
    gate: UsageGate = Depends(get_usage_gate),
):
    return UsageSummaryResponse(**gate.usage_summary(user.user_id))


@router.post("/consume", response_model=ConsumeResponse)
def consume_message(
    user: CurrentUser = Depends(get_current_user),
    gate: UsageGate = Depends(get_usage_gate),
    catalog: PlanCatalog = Depends(get_catalog),
):
    decision = gate.try_consume_one_message(user.user_id)
    if not decision.allowed:
        return quota_exceeded_response(gate.current_tier(user.user_id), catalog)
    return decision_to_response(decision)
