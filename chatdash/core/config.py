import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Supabase Auth (JWT verification only; sessions are issued by Supabase)
    SUPABASE_JWT_SECRET: Optional[str] = None
    SUPABASE_JWT_AUDIENCE: str = "authenticated"
    AUTH_HEADER_FALLBACK: bool = True  # X-User-Id header, ignored in production

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRO_PRICE_ID: Optional[str] = None
    STRIPE_ENTERPRISE_PRICE_ID: Optional[str] = None
    BILLING_REJECT_STALE_EVENTS: bool = False

    # Flowise chat-completion service
    FLOWISE_API_URL: Optional[str] = None
    FLOWISE_API_KEY: Optional[str] = None
    FLOWISE_CHATFLOW_ID: Optional[str] = None
    FLOWISE_TIMEOUT_SECONDS: float = 60.0

    # App URLs
    APP_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def billing_enabled(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)

settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("chatdash")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "SUPABASE_JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "FLOWISE_API_URL",
        "FLOWISE_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if getattr(cfg, "STRIPE_SECRET_KEY", None):
        unpriced = [
            key for key in ("STRIPE_PRO_PRICE_ID", "STRIPE_ENTERPRISE_PRICE_ID")
            if not getattr(cfg, key, None)
        ]
        if unpriced:
            # Plans without a price id stay visible but cannot be purchased
            log.warning(f"Billing enabled without price ids: {', '.join(unpriced)}")

    return True
