"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
Provider objects are normalized into plain dataclasses here so that the
synchronizer and service never touch SDK types.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from chatdash.core.timeutil import from_timestamp


@dataclass(frozen=True)
class BillingEvent:
    """A verified webhook event."""
    id: str
    type: str
    created: Optional[datetime]
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderSubscription:
    """Provider-side subscription state relevant to entitlements."""
    id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_from_object(obj: Dict[str, Any]) -> ProviderSubscription:
    """
    Normalize a subscription object (webhook payload or API response).

    Newer API versions moved current_period_end onto the subscription items,
    so the first item is consulted when the top-level field is absent.
    """
    item = _first_item(obj)
    price = item.get("price") or {}
    period_end = obj.get("current_period_end") or item.get("current_period_end")
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return ProviderSubscription(
        id=obj.get("id") or "",
        customer_id=customer,
        status=obj.get("status") or "incomplete",
        price_id=price.get("id") if isinstance(price, dict) else price,
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        metadata=dict(obj.get("metadata") or {}),
    )


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification
    - Subscription and customer lookups
    - Customer creation
    - Checkout and portal session creation
    """

    def verify_event(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        """
        Verify the webhook signature over the raw body and parse the event.

        Raises:
            BillingWebhookError: If the signature is missing or invalid, or
                the payload is not a well-formed event
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def customer_user_id(self, customer_id: str) -> Optional[str]:
        """
        Internal user id stored in the customer's metadata, if any.

        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Find or create the provider customer for a user.

        Returns:
            Provider customer ID

        Raises:
            BillingProviderError: If lookup or creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        return_url: str,
    ) -> CheckoutSession:
        """
        Create a hosted subscription checkout.

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification errors."""
    pass
