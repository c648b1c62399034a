from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Campaign Research"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = False

    # Research webhooks (defaults, overridden per user by user_integrations)
    company_research_webhook_url: str | None = None
    people_research_webhook_url: str | None = None
    clay_webhook_url: str | None = None
    webhook_timeout_seconds: float = 1200.0
    webhook_connect_timeout_seconds: float = 10.0
    auto_trigger_wait_seconds: float = 10.0
    clay_timeout_seconds: float = 30.0

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "research"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    @property
    def default_webhooks(self) -> dict[str, str | None]:
        """Return the configured fallback webhook URLs keyed by research stage."""
        return {
            "company_research": self.company_research_webhook_url,
            "people_research": self.people_research_webhook_url,
            "clay": self.clay_webhook_url,
        }

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
