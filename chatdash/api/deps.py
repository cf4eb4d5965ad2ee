"""Request-scoped accessors for the services built in create_app."""

from typing import Optional

from fastapi import Request

from chatdash.core.config import Settings
from chatdash.core.errors import BillingDisabledError, UpstreamProviderError
from chatdash.features.billing.service import BillingService
from chatdash.features.billing.synchronizer import BillingEventSynchronizer
from chatdash.features.chat.flowise import FlowiseClient
from chatdash.features.chat.store import ConversationStore
from chatdash.features.plans.catalog import PlanCatalog
from chatdash.features.usage.service import UsageGate


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.catalog


def get_usage_gate(request: Request) -> UsageGate:
    return request.app.state.usage_gate


def get_billing_service(request: Request) -> BillingService:
    return request.app.state.billing


def get_synchronizer(request: Request) -> BillingEventSynchronizer:
    synchronizer: Optional[BillingEventSynchronizer] = request.app.state.synchronizer
    if synchronizer is None:
        raise BillingDisabledError("Billing is not configured")
    return synchronizer


def get_conversations(request: Request) -> ConversationStore:
    return request.app.state.conversations


def get_flowise(request: Request) -> FlowiseClient:
    client: Optional[FlowiseClient] = request.app.state.flowise
    if client is None:
        raise UpstreamProviderError("Chat service is not configured")
    return client
