from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    log_level: str = "INFO"
    api_bearer_token: str = "testtoken"
    api_basic_username: str = "admin"
    api_basic_password: str = "admin"

    # Stripe config
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    # Maximum age (seconds) of a signed webhook timestamp
    stripe_webhook_tolerance: int = 300
    ach_currency: str = "usd"
    log_provider_events: bool = False

    # Database (PostgreSQL, application "userdashboard" schema)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "public"
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_connect_timeout: int = 5

    # Webhook reconciliation
    event_ledger_retention_days: int = 30
    event_claim_timeout_seconds: int = 300
    event_ledger_purge_interval_seconds: int = 3600
    enforce_event_ordering: bool = True
    reconcile_cas_retries: int = 3

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
