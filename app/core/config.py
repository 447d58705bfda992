"""Application configuration."""

import logging
from os import getenv

from pydantic import BaseModel


class Settings(BaseModel):
    """Runtime settings for the application."""

    app_name: str = "Home Kitchen Marketplace API"
    app_env: str = getenv("APP_ENV", "dev")
    debug: bool = getenv("DEBUG", "0") == "1"
    log_level: str = getenv("LOG_LEVEL", "INFO")
    database_url: str = getenv("DATABASE_URL", "sqlite:///./marketplace.db")
    stripe_secret_key: str = getenv("STRIPE_SECRET_KEY", "sk_test_dummy_key_for_testing")
    stripe_webhook_secret: str = getenv("STRIPE_WEBHOOK_SECRET", "whsec_dev_only_change_me")
    payment_currency: str = getenv("PAYMENT_CURRENCY", "usd")
    tax_rate_bps: int = int(getenv("TAX_RATE_BPS", "800"))
    delivery_base_fee_cents: int = int(getenv("DELIVERY_BASE_FEE_CENTS", "200"))
    delivery_fee_per_km_cents: int = int(getenv("DELIVERY_FEE_PER_KM_CENTS", "50"))
    cart_ttl_hours: int = int(getenv("CART_TTL_HOURS", "24"))
    max_item_quantity: int = int(getenv("MAX_ITEM_QUANTITY", "100"))
    payment_retry_max_attempts: int = int(getenv("PAYMENT_RETRY_MAX_ATTEMPTS", "3"))
    payment_retry_base_seconds: float = float(getenv("PAYMENT_RETRY_BASE_SECONDS", "1.0"))
    host: str = getenv("HOST", "127.0.0.1")
    port: int = int(getenv("PORT", "8000"))


settings: Settings = Settings()


def configure_logging() -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
