"""
Billing API routes.

- POST /api/webhooks/stripe: Stripe webhook receiver
- POST /api/stripe/create-checkout-session: Start subscription checkout
- POST /api/stripe/create-portal-session: Open the billing portal
- GET  /api/billing/status: Current user's billing status
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from chatdash.api.deps import get_billing_service, get_settings, get_synchronizer
from chatdash.core.auth import CurrentUser, get_current_user
from chatdash.core.config import Settings
from chatdash.features.billing.service import BillingService
from chatdash.features.billing.synchronizer import BillingEventSynchronizer


router = APIRouter(tags=["billing"])

RETURN_PATH = "/dashboard"


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    price_id: str = Field(..., min_length=1)


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class LimitsResponse(BaseModel):
    messages_per_month: Optional[int]  # None means unlimited
    custom_templates: bool
    advanced_ai: bool
    priority_support: bool
    team_collaboration: bool
    custom_ai_training: bool
    api_access: bool


class BillingStatusResponse(BaseModel):
    """User billing status."""
    enabled: bool
    tier: str
    plan_name: str
    status: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    limits: LimitsResponse


def _return_url(request: Request, cfg: Settings) -> str:
    """Redirect target after checkout/portal; only allowed origins are echoed."""
    origin = request.headers.get("origin")
    base = origin if origin and origin in cfg.cors_origins() else cfg.APP_URL
    return f"{base.rstrip('/')}{RETURN_PATH}"


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    synchronizer: BillingEventSynchronizer = Depends(get_synchronizer),
):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true, "event_id": ..., "action": ...}

    Errors:
        400: Missing or invalid signature
        500: Processing failed (Stripe retries)
        503: Billing disabled
    """
    # Raw body; signature is computed over the exact bytes
    body = await request.body()
    # Provider lookups and storage writes are blocking
    result = await run_in_threadpool(synchronizer.handle, body, stripe_signature)
    return {"received": True, "event_id": result.event_id, "action": result.action}


@router.post("/stripe/create-checkout-session", response_model=CheckoutResponse)
def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    billing: BillingService = Depends(get_billing_service),
    cfg: Settings = Depends(get_settings),
):
    session = billing.start_checkout(user, body.price_id, _return_url(request, cfg))
    return CheckoutResponse(session_id=session.id, url=session.url)


@router.post("/stripe/create-portal-session", response_model=PortalResponse)
def create_portal_session(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    billing: BillingService = Depends(get_billing_service),
    cfg: Settings = Depends(get_settings),
):
    url = billing.start_portal(user, _return_url(request, cfg))
    return PortalResponse(url=url)


@router.get("/billing/status", response_model=BillingStatusResponse)
def billing_status(
    user: CurrentUser = Depends(get_current_user),
    billing: BillingService = Depends(get_billing_service),
):
    status = billing.billing_status(user.user_id)
    limits = status["limits"]
    return BillingStatusResponse(
        enabled=status["enabled"],
        tier=status["tier"],
        plan_name=status["plan_name"],
        status=status["status"],
        current_period_end=status["current_period_end"],
        cancel_at_period_end=status["cancel_at_period_end"],
        limits=LimitsResponse(
            messages_per_month=None if limits.unlimited_messages else int(limits.messages_per_month),
            custom_templates=limits.custom_templates,
            advanced_ai=limits.advanced_ai,
            priority_support=limits.priority_support,
            team_collaboration=limits.team_collaboration,
            custom_ai_training=limits.custom_ai_training,
            api_access=limits.api_access,
        ),
    )
