import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from chatdash.api import billing, chat, health, plans, usage
from chatdash.core.config import Settings, settings, validate_config
from chatdash.core.database import create_all_tables, get_database_url
from chatdash.core.errors import install_error_handlers
from chatdash.core.logging import configure_logging
from chatdash.core.middleware.request_id import RequestIdMiddleware
from chatdash.features.billing.ledger import BillingEventLedger
from chatdash.features.billing.provider import BillingProvider
from chatdash.features.billing.service import BillingService, build_provider
from chatdash.features.billing.synchronizer import BillingEventSynchronizer
from chatdash.features.chat.flowise import FlowiseClient
from chatdash.features.chat.store import ConversationStore
from chatdash.features.plans.catalog import build_catalog
from chatdash.features.subscriptions.store import SubscriptionStore
from chatdash.features.usage.service import UsageGate
from chatdash.features.usage.store import UsageStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("chatdash")
    logger.info("Starting chatdash backend...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("chatdash").info("Stopping chatdash backend...")


def create_app(
    settings_obj: Optional[Settings] = None,
    provider: Optional[BillingProvider] = None,
    flowise: Optional[FlowiseClient] = None,
) -> FastAPI:
    """
    Build the application.

    The plan catalog and services are constructed once here and shared
    through app.state; provider and flowise override the clients built
    from settings.
    """
    cfg = settings_obj or settings
    configure_logging(cfg.ENV)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    app = FastAPI(title="chatdash", lifespan=lifespan)

    catalog = build_catalog(cfg)
    subscriptions = SubscriptionStore()
    billing_provider = provider if provider is not None else build_provider(cfg)

    app.state.settings = cfg
    app.state.catalog = catalog
    app.state.usage_gate = UsageGate(catalog, subscriptions, UsageStore())
    app.state.billing = BillingService(billing_provider, catalog, subscriptions)
    app.state.synchronizer = (
        BillingEventSynchronizer(
            billing_provider,
            catalog,
            subscriptions,
            ledger=BillingEventLedger(),
            reject_stale_events=cfg.BILLING_REJECT_STALE_EVENTS,
        )
        if billing_provider is not None
        else None
    )
    app.state.conversations = ConversationStore()
    app.state.flowise = flowise if flowise is not None else FlowiseClient.from_settings(cfg)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)

    install_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-request-id", "x-messages-remaining"],
    )

    app.include_router(health.root_router, tags=["health"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(plans.router, prefix="/api", tags=["plans"])
    app.include_router(usage.router, prefix="/api", tags=["usage"])
    app.include_router(chat.router, prefix="/api", tags=["chat"])

    return app


app = create_app()
