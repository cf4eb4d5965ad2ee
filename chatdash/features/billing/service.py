"""
Billing service orchestrator.

Business logic that coordinates:
- Checkout for a catalog price
- Billing portal access
- Billing status for the current user

All Stripe-specific code is in stripe_provider.py.
"""
import logging
from typing import Optional, Dict, Any

from chatdash.core.auth import CurrentUser
from chatdash.core.config import Settings
from chatdash.core.errors import (
    BillingDisabledError,
    NotFoundError,
    UpstreamProviderError,
    ValidationError,
)
from chatdash.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    CheckoutSession,
)
from chatdash.features.billing.stripe_provider import StripeProvider
from chatdash.features.entitlements.service import effective_tier, resolve_feature_limits
from chatdash.features.plans.catalog import PlanCatalog
from chatdash.features.subscriptions.store import SubscriptionStore


logger = logging.getLogger(__name__)


def build_provider(cfg: Settings) -> Optional[BillingProvider]:
    """Billing provider if billing is enabled, else None."""
    if not cfg.billing_enabled():
        return None
    return StripeProvider(cfg.STRIPE_SECRET_KEY, cfg.STRIPE_WEBHOOK_SECRET)


class BillingService:
    def __init__(
        self,
        provider: Optional[BillingProvider],
        catalog: PlanCatalog,
        subscriptions: SubscriptionStore,
    ):
        self.provider = provider
        self.catalog = catalog
        self.subscriptions = subscriptions

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Billing is not configured")
        return self.provider

    def start_checkout(self, user: CurrentUser, price_id: str, return_url: str) -> CheckoutSession:
        """
        Start a subscription checkout.

        Raises:
            BillingDisabledError: Billing not configured
            ValidationError: price_id is not a purchasable catalog price
            UpstreamProviderError: Provider call failed
        """
        provider = self._require_provider()

        # Validated before any provider call
        if not self.catalog.is_purchasable_price(price_id):
            raise ValidationError("Unknown price id")

        try:
            customer_id = provider.ensure_customer(user.user_id, user.email)
            session = provider.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                user_id=user.user_id,
                return_url=return_url,
            )
        except BillingProviderError as e:
            raise UpstreamProviderError(str(e)) from e

        logger.info(
            "[billing] checkout started",
            extra={"user_id": user.user_id, "tier": self.catalog.tier_for_price(price_id).value},
        )
        return session

    def start_portal(self, user: CurrentUser, return_url: str) -> str:
        """
        Raises:
            BillingDisabledError: Billing not configured
            NotFoundError: No stored customer (user never checked out)
            UpstreamProviderError: Provider call failed
        """
        provider = self._require_provider()

        subscription = self.subscriptions.get(user.user_id)
        if subscription is None or not subscription.stripe_customer_id:
            raise NotFoundError("No billing customer found. Complete checkout first.")

        try:
            return provider.create_portal_session(subscription.stripe_customer_id, return_url)
        except BillingProviderError as e:
            raise UpstreamProviderError(str(e)) from e

    def billing_status(self, user_id: str) -> Dict[str, Any]:
        subscription = self.subscriptions.get(user_id)
        limits = resolve_feature_limits(subscription, self.catalog)
        tier = effective_tier(subscription)
        return {
            "enabled": self.enabled,
            "tier": tier.value,
            "plan_name": self.catalog.get(tier).name,
            "status": subscription.status if subscription else None,
            "current_period_end": subscription.current_period_end if subscription else None,
            "cancel_at_period_end": subscription.cancel_at_period_end if subscription else False,
            "limits": limits,
        }
