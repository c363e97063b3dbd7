from functools import lru_cache
from typing import Literal, Optional

import structlog
from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@lru_cache
def get_settings() -> "Settings":
    """Returns a cached instance of the application settings."""
    return Settings()


class Settings(BaseSettings):
    """
    Main configuration for CostLens.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    APP_NAME: str = "CostLens"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: Literal["debug", "info", "warning", "error"] = "info"

    # Cache: unset means caching is disabled (no-op manager)
    CACHE_TYPE: Optional[Literal["memory", "redis"]] = None
    CACHE_TTL_SECONDS: int = 3600
    CACHE_KEY_PREFIX: str = "costlens"
    UPSTASH_REDIS_URL: Optional[str] = None
    UPSTASH_REDIS_TOKEN: Optional[SecretStr] = None

    # AWS Cost Explorer
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[SecretStr] = None
    AWS_REGION: str = "us-east-1"

    # GCP BigQuery billing export
    GCP_PROJECT_ID: Optional[str] = None
    GCP_SERVICE_ACCOUNT_JSON: Optional[SecretStr] = None
    GCP_BILLING_PROJECT_ID: Optional[str] = None
    GCP_BILLING_DATASET: Optional[str] = None
    GCP_BILLING_TABLE: Optional[str] = None

    # LLM vendors (organization admin keys)
    OPENAI_ADMIN_API_KEY: Optional[SecretStr] = None
    ANTHROPIC_ADMIN_API_KEY: Optional[SecretStr] = None

    # Resilience
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    RETRY_BACKOFF_FACTOR: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    HTTP_TIMEOUT_SECONDS: float = 30.0

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Groups validation by concern."""
        self._validate_cache_config()
        self._validate_resilience_config()
        return self

    def _validate_cache_config(self) -> None:
        if self.CACHE_TTL_SECONDS <= 0:
            raise ValueError("CACHE_TTL_SECONDS must be > 0.")
        if self.CACHE_TYPE == "redis" and (
            not self.UPSTASH_REDIS_URL or not self.UPSTASH_REDIS_TOKEN
        ):
            raise ValueError(
                "CACHE_TYPE=redis requires UPSTASH_REDIS_URL and UPSTASH_REDIS_TOKEN."
            )

    def _validate_resilience_config(self) -> None:
        if self.RETRY_MAX_ATTEMPTS < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.RETRY_INITIAL_DELAY_SECONDS < 0 or self.RETRY_MAX_DELAY_SECONDS < 0:
            raise ValueError("Retry delays must be >= 0.")
        if self.RETRY_BACKOFF_FACTOR < 1:
            raise ValueError("RETRY_BACKOFF_FACTOR must be >= 1.")
        if self.HTTP_TIMEOUT_SECONDS <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS must be > 0.")

    def enabled_providers(self) -> list[str]:
        """Providers whose credentials are present, in a stable order."""
        enabled: list[str] = []
        if self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY:
            enabled.append("aws")
        if self.GCP_PROJECT_ID:
            enabled.append("gcp")
        if self.OPENAI_ADMIN_API_KEY:
            enabled.append("openai")
        if self.ANTHROPIC_ADMIN_API_KEY:
            enabled.append("anthropic")
        structlog.get_logger().debug("providers_enabled", providers=enabled)
        return enabled
