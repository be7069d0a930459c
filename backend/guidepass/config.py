"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (BillingConfig, CatalogConfig, SupabaseTablesConfig,
WebhookConfig) are env-overridable via the double-underscore delimiter, e.g.:
    BILLING__FREE_TRIAL_CREDITS=3
    BILLING__MAX_WRITE_ATTEMPTS=8
    WEBHOOK__AUTH_TOKEN=secret
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from guidepass.models.billing import PackageDefinition


class BillingConfig(BaseModel):
    """Credit and entitlement parameters."""

    # Trial credits granted once per account at signup
    free_trial_credits: int = Field(default=2, ge=0)
    # Reported as total_limit/remaining for unlimited subscribers
    unlimited_usage_limit: int = Field(default=1_000_000, ge=1)
    # Optimistic read-modify-write attempts before LedgerConflict
    max_write_attempts: int = Field(default=5, ge=1)


def _default_packages() -> list[PackageDefinition]:
    return [
        PackageDefinition(
            package_id="basic_package",
            product_id="guidepass_basic_package",
            name="Basic Package",
            credits=5,
        ),
        PackageDefinition(
            package_id="standard_package",
            product_id="guidepass_standard_package",
            name="Standard Package",
            credits=20,
        ),
        PackageDefinition(
            package_id="premium_package",
            product_id="guidepass_premium_package",
            name="Premium Package",
            credits=50,
        ),
    ]


class CatalogConfig(BaseModel):
    """Store product identifiers.

    Legacy subscription products are no longer sold but must keep resolving
    for existing subscribers and restored purchases.
    """

    unlimited_product_ids: list[str] = ["guidepass_unlimited_monthly"]
    legacy_monthly_product_ids: list[str] = ["guidepass_premium_monthly"]
    legacy_yearly_product_ids: list[str] = ["guidepass_premium_yearly"]
    legacy_lifetime_product_ids: list[str] = ["guidepass_lifetime"]
    packages: list[PackageDefinition] = Field(default_factory=_default_packages)


class SupabaseTablesConfig(BaseModel):
    """Supabase table names for billing state."""

    ledgers: str = "credit_ledgers"
    usage: str = "credit_usage"
    subscriptions: str = "user_subscriptions"
    package_purchases: str = "user_package_purchases"
    processed_events: str = "processed_events"


class WebhookConfig(BaseModel):
    """Payment provider webhook settings."""

    # Expected Authorization header value; empty disables the check
    auth_token: str = ""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""
    supabase_secret_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8081"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    supabase_tables: SupabaseTablesConfig = Field(default_factory=SupabaseTablesConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
