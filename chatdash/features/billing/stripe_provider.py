"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe SDK.
Handles webhook signature verification, customer resolution and
hosted checkout/portal sessions.
"""
import json
import logging
from typing import Dict, Any, Optional
import stripe

from chatdash.core.timeutil import from_timestamp
from chatdash.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
    ProviderSubscription,
    subscription_from_object,
)


logger = logging.getLogger(__name__)

# Customer metadata key linking a Stripe customer to an internal user
USER_ID_METADATA_KEY = "user_id"
# Customers created before the rename carry the camelCase key
LEGACY_USER_ID_METADATA_KEY = "userId"


def _to_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject (any SDK version) to a plain dict."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            tolerance: Max age in seconds of a signed webhook timestamp
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        stripe.api_key = self.secret_key

    def verify_event(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        """Verify Stripe webhook signature over the raw body, then parse."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise BillingWebhookError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingWebhookError("Invalid payload encoding") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e.user_message or e}") from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Payload is not a Stripe event")

        return BillingEvent(
            id=event["id"],
            type=event["type"],
            created=from_timestamp(event.get("created")),
            data=(event.get("data") or {}).get("object") or {},
        )

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}") from e
        return subscription_from_object(_to_dict(subscription))

    def customer_user_id(self, customer_id: str) -> Optional[str]:
        try:
            customer = _to_dict(stripe.Customer.retrieve(customer_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}") from e
        if customer.get("deleted"):
            return None
        metadata = customer.get("metadata") or {}
        return metadata.get(USER_ID_METADATA_KEY) or metadata.get(LEGACY_USER_ID_METADATA_KEY)

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Resolve the customer for a user, in order:
        1. metadata search on user_id
        2. lookup by email (user_id is attached to the found customer)
        3. create
        """
        if not user_id:
            raise BillingProviderError("user_id is required")

        try:
            found = stripe.Customer.search(
                query=f"metadata['{USER_ID_METADATA_KEY}']:'{user_id}'",
                limit=1,
            )
            if found.data:
                return found.data[0].id

            if email:
                by_email = stripe.Customer.list(email=email, limit=1)
                if by_email.data:
                    customer = _to_dict(by_email.data[0])
                    metadata = dict(customer.get("metadata") or {})
                    if not metadata.get(USER_ID_METADATA_KEY):
                        metadata[USER_ID_METADATA_KEY] = user_id
                        stripe.Customer.modify(customer["id"], metadata=metadata)
                        logger.info(
                            "[billing] linked existing customer by email",
                            extra={"user_id": user_id, "customer_id": customer["id"]},
                        )
                    return customer["id"]

            customer_data: Dict[str, Any] = {
                "metadata": {USER_ID_METADATA_KEY: user_id},
            }
            if email:
                customer_data["email"] = email
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer resolution failed: {e}") from e

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        return_url: str,
    ) -> CheckoutSession:
        """Create Stripe subscription-mode checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=f"{return_url}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=return_url,
                subscription_data={
                    "metadata": {"customer_id": customer_id, USER_ID_METADATA_KEY: user_id},
                },
                billing_address_collection="required",
                allow_promotion_codes=True,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}") from e
        return CheckoutSession(id=session.id, url=getattr(session, "url", None))

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}") from e
