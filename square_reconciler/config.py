"""
Configuration management using Pydantic settings.
Loads environment variables for Square webhooks and API access, Supabase,
Redis and Slack alerting.
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Square webhook secrets (production secret doubles as shared fallback)
    square_webhook_secret: str = ""
    square_webhook_secret_sandbox: str = ""

    # Square API access
    square_access_token: str = ""
    square_sandbox_token: str = ""
    use_square_sandbox: bool = False
    square_api_version: str = "2024-10-17"

    # Supabase Configuration
    supabase_url: str
    supabase_service_key: str

    # Redis (webhook event dedup)
    redis_url: str = "redis://localhost:6379/0"
    webhook_dedup_ttl_seconds: int = 86400

    # Webhook request limits
    webhook_max_event_age_seconds: int = 300
    webhook_max_body_bytes: int = 1024 * 1024

    # Slack alerting
    slack_webhook_url: Optional[str] = None
    slack_alerts_enabled: str = "false"

    # Payment sync
    payment_sync_lookback_minutes: int = 60
    payment_sync_max_pages: int = 10
    payment_sync_batch_delay_seconds: float = 0.1

    # Catalog sync
    catalog_sync_batch_size: int = 10
    catalog_sync_batch_delay_seconds: float = 0.1
    image_check_timeout_seconds: float = 5.0

    # Retry behaviour for Square API calls
    max_retry_attempts: int = 3
    retry_backoff_multiplier: float = 2.0
    retry_initial_delay_seconds: float = 1.0

    # Application Configuration
    app_environment: str = "development"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
