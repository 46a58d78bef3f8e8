"""
Configuration management using Pydantic settings.
Loads environment variables for the payment platform API, the local store backend,
webhook/checkout URLs, store money formatting and the sync worker.
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Payment platform API Configuration
    payment_api_key: str = ""  # Optional for testing, required for any remote call
    payment_api_base_url: str = "https://api.withflex.com"
    payment_dashboard_url: str = "https://dashboard.withflex.com"
    http_timeout_seconds: float = 30.0

    # Gateway Configuration
    gateway_enabled: bool = False
    allow_http_webhooks: bool = False  # Permit non-HTTPS webhook URLs (local development only)
    public_base_url: str = "https://localhost:8000"
    checkout_url: str = "https://localhost:8000/checkout"
    order_received_url: str = "https://localhost:8000/checkout/order-received/{order_id}"
    home_url: str = "https://localhost:8000/"
    url_signing_secret: str = "change-me"
    debug_display_errors: bool = False

    # Store money formatting
    price_decimals: int = 2
    price_decimal_separator: str = "."
    price_thousand_separator: str = ","
    currency_symbol: str = "$"

    # Local store Configuration
    local_store_backend: str = "memory"  # memory, supabase
    supabase_url: str = ""
    supabase_service_key: str = ""

    # Application Configuration
    app_environment: str = "development"
    log_level: str = "INFO"

    # Worker Configuration
    sync_worker_interval_seconds: int = 5  # Poll interval for sync queue
    max_retry_attempts: int = 10
    retry_backoff_multiplier: float = 2.0
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 3600.0

    # Slack alerting
    slack_webhook_url: Optional[str] = None
    slack_alerts_enabled: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
