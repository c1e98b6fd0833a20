"""
Application configuration using Pydantic Settings.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Credit ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CREDIT_",
        extra="ignore",
    )

    # Store
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_ledger"
    MONGO_USE_TRANSACTIONS: bool = False
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE: int = 300
    STRIPE_COUPON_BUNDLE_DISCOUNT: str = ""

    STRIPE_PRICE_KEYWORDS_MONTHLY: str = ""
    STRIPE_PRICE_KEYWORDS_YEARLY: str = ""
    STRIPE_PRICE_LABS_BASE_MONTHLY: str = ""
    STRIPE_PRICE_LABS_BASE_YEARLY: str = ""
    STRIPE_PRICE_LABS_AEO_MONTHLY: str = ""
    STRIPE_PRICE_LABS_AEO_YEARLY: str = ""

    # Ledger policy
    DEFAULT_SUBSCRIPTION_CAP: int = 900
    DEFAULT_MONTHLY_CREDITS: int = 300
    TRIAL_CREDITS: int = 100
    TRIAL_DAYS: int = 7
    DEFAULT_APP_KEY: str = "keywords"
    LOW_CREDIT_THRESHOLD: int = 10
    MAX_WRITE_RETRIES: int = 5
    COST_CACHE_TTL_SECONDS: int = 300


settings = Settings()
