# chatdash/conftest.py
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient

from chatdash.core.config import Settings
from chatdash.core.database import init_engine, create_all_tables, drop_all_tables
from chatdash.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
    ProviderSubscription,
)
from chatdash.features.plans.catalog import build_catalog
from chatdash.features.subscriptions.store import SubscriptionStore
from chatdash.models.subscription import Subscription


PRO_PRICE = "price_pro_test"
ENTERPRISE_PRICE = "price_enterprise_test"
WEBHOOK_SECRET = "whsec_test_secret"
FIXED_NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def sqlite_db(tmp_path):
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so that concurrent connections share the data.
    """
    url = f"sqlite:///{tmp_path / 'chatdash_test.db'}"
    init_engine(url)
    create_all_tables()
    yield url
    drop_all_tables()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        SUPABASE_JWT_SECRET="jwt-test-secret-with-enough-length-000",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRO_PRICE_ID=PRO_PRICE,
        STRIPE_ENTERPRISE_PRICE_ID=ENTERPRISE_PRICE,
        APP_URL="http://localhost:3000",
        CORS_ORIGINS="http://localhost:3000",
    )


@pytest.fixture
def catalog(test_settings):
    return build_catalog(test_settings)


@pytest.fixture
def subscription_store():
    return SubscriptionStore()


def make_subscription(user_id: str = "user_alice", **overrides) -> Subscription:
    values: Dict[str, Any] = {
        "user_id": user_id,
        "stripe_customer_id": "cus_alice",
        "stripe_subscription_id": "sub_alice",
        "status": "active",
        "tier": "pro",
        "current_period_end": datetime(2025, 4, 1, tzinfo=timezone.utc),
        "cancel_at_period_end": False,
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Subscription(**values)


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header: t=<ts>,v1=HMAC_SHA256(secret, "<ts>.<payload>")."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event_payload(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1", created: int = 1741000000) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }).encode("utf-8")


def subscription_object(
    price_id: str = PRO_PRICE,
    status: str = "active",
    customer: str = "cus_alice",
    sub_id: str = "sub_alice",
    period_end: int = 1743465600,
    cancel_at_period_end: bool = False,
) -> Dict[str, Any]:
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [{"price": {"id": price_id}}]},
        "metadata": {},
    }


class FakeBillingProvider:
    """
    In-memory BillingProvider.

    Signature checking is a shared-secret equality check on the payload
    digest so tests can produce valid and invalid signatures cheaply.
    """

    def __init__(self):
        self.customers: Dict[str, Optional[str]] = {"cus_alice": "user_alice"}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.checkout_calls = []
        self.portal_calls = []
        self.ensure_calls = []
        self.fail_with: Optional[Exception] = None

    @staticmethod
    def sign(payload: bytes) -> str:
        return "fake=" + hashlib.sha256(WEBHOOK_SECRET.encode() + payload).hexdigest()

    def verify_event(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        if not signature or signature != self.sign(payload):
            raise BillingWebhookError("bad signature")
        event = json.loads(payload)
        return BillingEvent(
            id=event["id"],
            type=event["type"],
            created=datetime.fromtimestamp(event["created"], timezone.utc) if event.get("created") else None,
            data=event["data"]["object"],
        )

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        from chatdash.features.billing.provider import subscription_from_object
        if self.fail_with:
            raise self.fail_with
        if subscription_id not in self.subscriptions:
            raise BillingProviderError(f"No such subscription: {subscription_id}")
        return subscription_from_object(self.subscriptions[subscription_id])

    def customer_user_id(self, customer_id: str) -> Optional[str]:
        if self.fail_with:
            raise self.fail_with
        return self.customers.get(customer_id)

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        self.ensure_calls.append((user_id, email))
        if self.fail_with:
            raise self.fail_with
        for cid, uid in self.customers.items():
            if uid == user_id:
                return cid
        cid = f"cus_{user_id}"
        self.customers[cid] = user_id
        return cid

    def create_checkout_session(self, customer_id: str, price_id: str, user_id: str, return_url: str) -> CheckoutSession:
        self.checkout_calls.append((customer_id, price_id, user_id, return_url))
        if self.fail_with:
            raise self.fail_with
        return CheckoutSession(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self.portal_calls.append((customer_id, return_url))
        if self.fail_with:
            raise self.fail_with
        return "https://billing.stripe.test/session"


@pytest.fixture
def fake_provider():
    return FakeBillingProvider()


@pytest.fixture
def make_client(test_settings, fake_provider):
    """Factory: TestClient over a fresh app; keyword overrides go to create_app."""
    from chatdash.main import create_app

    def _make(**kwargs):
        kwargs.setdefault("settings_obj", test_settings)
        kwargs.setdefault("provider", fake_provider)
        return TestClient(create_app(**kwargs), raise_server_exceptions=False)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def auth_headers():
    return {"X-User-Id": "user_alice", "X-User-Email": "alice@example.com"}
