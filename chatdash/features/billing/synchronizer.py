"""
Billing event synchronizer.

Turns verified provider webhooks into subscription-store mutations:

1. Verify signature (nothing is read or written before this succeeds)
2. Short-circuit events already processed
3. Record the event in the ledger
4. Apply the state change for the event type
5. Mark processed, or record the failure and re-raise

Handled event types:
- checkout.session.completed     -> upsert (created_at preserved)
- customer.subscription.updated  -> update keyed by user id
- customer.subscription.deleted  -> update keyed by user id, tier forced to free (no row: acknowledged)
Anything else is acknowledged without changes.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from chatdash.core.errors import (
    SignatureInvalidError,
    SubscriptionNotFoundError,
    UpstreamProviderError,
)
from chatdash.core.logging import log_event
from chatdash.core.timeutil import as_utc, utc_now
from chatdash.features.billing.ledger import BillingEventLedger, payload_hash
from chatdash.features.billing.provider import (
    BillingEvent,
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    ProviderSubscription,
    subscription_from_object,
)
from chatdash.features.plans.catalog import PlanCatalog
from chatdash.features.subscriptions.store import SubscriptionStore
from chatdash.models.plan import Tier
from chatdash.models.subscription import Subscription


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class SyncResult:
    event_id: str
    event_type: str
    action: str  # applied | ignored | duplicate | stale
    user_id: Optional[str] = None


class BillingEventSynchronizer:
    def __init__(
        self,
        provider: BillingProvider,
        catalog: PlanCatalog,
        subscriptions: SubscriptionStore,
        ledger: Optional[BillingEventLedger] = None,
        reject_stale_events: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.provider = provider
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.ledger = ledger or BillingEventLedger()
        self.reject_stale_events = reject_stale_events
        self.clock = clock

    def handle(self, payload: bytes, signature: Optional[str]) -> SyncResult:
        try:
            event = self.provider.verify_event(payload, signature)
        except BillingWebhookError as e:
            log_event("warning", "[billing] webhook rejected", error_code="signature_invalid", extra={"reason": str(e)})
            raise SignatureInvalidError("Invalid webhook signature") from e

        if self.ledger.is_processed(event.id):
            logger.info("[billing] duplicate event skipped", extra={"event_id": event.id, "event_type": event.type})
            return SyncResult(event.id, event.type, "duplicate")

        self.ledger.record_received(event.id, event.type, payload_hash(payload), self.clock())

        try:
            result = self._apply(event)
        except Exception as e:
            self.ledger.mark_failed(event.id, f"{type(e).__name__}: {e}")
            log_event(
                "error",
                "[billing] webhook processing failed",
                event_type=event.type,
                error_code=getattr(e, "code", "internal_error"),
                extra={"event_id": event.id},
            )
            raise

        self.ledger.mark_processed(event.id, self.clock())
        log_event(
            "info",
            "[billing] webhook processed",
            user_id=result.user_id,
            event_type=event.type,
            extra={"event_id": event.id, "action": result.action},
        )
        return result

    def _apply(self, event: BillingEvent) -> SyncResult:
        if event.type == CHECKOUT_COMPLETED:
            return self._on_checkout_completed(event)
        if event.type == SUBSCRIPTION_UPDATED:
            sub = subscription_from_object(event.data)
            return self._on_subscription_changed(event, sub, self.catalog.tier_for_price(sub.price_id))
        if event.type == SUBSCRIPTION_DELETED:
            sub = subscription_from_object(event.data)
            return self._on_subscription_changed(event, sub, Tier.FREE)
        return SyncResult(event.id, event.type, "ignored")

    def _on_checkout_completed(self, event: BillingEvent) -> SyncResult:
        subscription_ref = event.data.get("subscription")
        if isinstance(subscription_ref, dict):
            subscription_ref = subscription_ref.get("id")
        if not subscription_ref:
            # One-time purchase; nothing to mirror
            return SyncResult(event.id, event.type, "ignored")

        try:
            sub = self.provider.retrieve_subscription(subscription_ref)
        except BillingProviderError as e:
            raise UpstreamProviderError(str(e)) from e

        customer_id = event.data.get("customer") or sub.customer_id
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        user_id = self._resolve_user_id(customer_id)

        existing = self.subscriptions.get(user_id)
        if self._is_stale(event, existing):
            return SyncResult(event.id, event.type, "stale", user_id)

        now = self.clock()
        self.subscriptions.upsert(Subscription(
            user_id=user_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=sub.id,
            status=sub.status,
            tier=self.catalog.tier_for_price(sub.price_id),
            current_period_end=sub.current_period_end,
            cancel_at_period_end=sub.cancel_at_period_end,
            last_event_at=event.created or now,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        ))
        return SyncResult(event.id, event.type, "applied", user_id)

    def _on_subscription_changed(self, event: BillingEvent, sub: ProviderSubscription, tier: Tier) -> SyncResult:
        user_id = self._resolve_user_id(sub.customer_id)

        if self.reject_stale_events and self._is_stale(event, self.subscriptions.get(user_id)):
            return SyncResult(event.id, event.type, "stale", user_id)

        now = self.clock()
        updated = self.subscriptions.update(
            user_id,
            status=sub.status,
            tier=tier,
            current_period_end=sub.current_period_end,
            cancel_at_period_end=sub.cancel_at_period_end,
            last_event_at=event.created or now,
            updated_at=now,
        )
        if not updated:
            if event.type == SUBSCRIPTION_DELETED:
                # Nothing mirrored to cancel; acknowledge so the provider stops retrying
                logger.warning(
                    "[billing] delete for unknown subscription row",
                    extra={"event_id": event.id, "user_id": user_id},
                )
                return SyncResult(event.id, event.type, "ignored", user_id)
            raise SubscriptionNotFoundError(f"No subscription row for user {user_id}")
        return SyncResult(event.id, event.type, "applied", user_id)

    def _resolve_user_id(self, customer_id: Optional[str]) -> str:
        if not customer_id:
            raise UpstreamProviderError("Event has no customer id")
        try:
            user_id = self.provider.customer_user_id(customer_id)
        except BillingProviderError as e:
            raise UpstreamProviderError(str(e)) from e
        if not user_id:
            raise UpstreamProviderError(f"No user id in metadata of customer {customer_id}")
        return user_id

    def _is_stale(self, event: BillingEvent, existing: Optional[Subscription]) -> bool:
        """True when the guard is on and a newer event already wrote this row."""
        if not self.reject_stale_events or existing is None:
            return False
        if event.created is None or existing.last_event_at is None:
            return False
        stale = as_utc(event.created) < as_utc(existing.last_event_at)
        if stale:
            logger.info(
                "[billing] stale event skipped",
                extra={"event_id": event.id, "user_id": existing.user_id},
            )
        return stale
