"""
Shared configuration management for the ledger gateway.
"""

from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)

    # External services
    horizon_url: str = "https://horizon-testnet.stellar.org"
    source_public_key: Optional[str] = None
    redis_url: str = "redis://127.0.0.1:6379/0"
    http_timeout: float = Field(default=10.0, gt=0)

    @field_validator("horizon_url")
    @classmethod
    def _check_horizon_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"horizon_url must be a valid http(s) URL, got '{value}'")
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        if value.lower() not in ("debug", "info", "warning", "error", "critical"):
            raise ValueError(f"log_level must be a standard level name, got '{value}'")
        return value.lower()


class GatewayConfig(BaseConfig):
    """Configuration for the ledger verification gateway."""

    # Rate limiting
    rate_limit_per_second: float = Field(default=10.0, gt=0)
    rate_limit_burst: Optional[int] = Field(default=None, ge=1)

    # Retry
    max_retries: int = Field(default=3, ge=1)
    retry_initial_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_success_threshold: int = Field(default=2, ge=1)
    circuit_timeout: float = Field(default=30.0, ge=0)

    # Webhooks
    webhook_urls: str = ""
    webhook_secret: Optional[str] = Field(default=None, repr=False)
    webhook_timeout: float = Field(default=5.0, gt=0)

    # Cache
    cache_verification_ttl: int = Field(default=3600, ge=1)
    cache_history_ttl: int = Field(default=300, ge=1)

    # Ledger paging and batching
    history_page_size: int = Field(default=200, ge=1, le=200)
    max_batch_size: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _default_burst(self) -> "GatewayConfig":
        if self.rate_limit_burst is None:
            self.rate_limit_burst = max(1, int(self.rate_limit_per_second))
        return self

    @property
    def webhook_url_list(self) -> List[str]:
        """Webhook targets parsed from the comma-separated setting."""
        return [url.strip() for url in self.webhook_urls.split(",") if url.strip()]

    @property
    def webhooks_enabled(self) -> bool:
        return bool(self.webhook_secret) and bool(self.webhook_url_list)

    @property
    def uses_memory_cache(self) -> bool:
        return self.redis_url.startswith("memory://")


def get_config(**overrides) -> GatewayConfig:
    """Load gateway configuration from the environment."""
    return GatewayConfig(**overrides)
