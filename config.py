"""
Configuration management for the admission-control layer.
Centralized configuration with environment variables.
"""
import json
from functools import lru_cache
from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TRUSTED_PROXIES = [
    "127.0.0.1",
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    # Cloudflare ranges (subset)
    "103.21.244.0/22",
    "103.22.200.0/22",
    "103.31.4.0/22",
    "104.16.0.0/12",
    "108.162.192.0/18",
    "131.0.72.0/22",
]


def _parse_list(value: Union[str, List[str], None]) -> List[str]:
    """Parse a list from a JSON array or comma-separated string."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]

    value = value.strip()
    if not value:
        return []
    if value.startswith("["):
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except json.JSONDecodeError:
            pass
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    app_name: str = Field(default="board-gatekeeper", validation_alias="APP_NAME")

    # Logging
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(default=False, validation_alias="LOG_JSON")

    # Redis configuration (optional, falls back to the in-process store)
    redis_url: Optional[str] = Field(default=None, validation_alias="REDIS_URL")
    redis_timeout_seconds: float = Field(default=0.2, validation_alias="REDIS_TIMEOUT_SECONDS")
    redis_max_connections: int = Field(default=20, validation_alias="REDIS_MAX_CONNECTIONS")
    cache_key_prefix: str = Field(default="gatekeeper:", validation_alias="CACHE_KEY_PREFIX")

    # Access list
    enable_access_list: bool = Field(default=True, validation_alias="ENABLE_ACCESS_LIST")
    access_rule_cache_ttl: int = Field(default=3600, validation_alias="ACCESS_RULE_CACHE_TTL")  # 1 hour

    # Client identity
    trusted_proxies: Union[List[str], str] = Field(
        default_factory=lambda: list(DEFAULT_TRUSTED_PROXIES),
        validation_alias="TRUSTED_PROXIES",
    )

    # Rate limiting
    enable_rate_limit: bool = Field(default=True, validation_alias="ENABLE_RATE_LIMIT")
    rate_limit_exempt_paths: Union[List[str], str] = Field(
        default_factory=lambda: ["/health", "/metrics"],
        validation_alias="RATE_LIMIT_EXEMPT_PATHS",
    )

    # Alerting
    alert_webhook_url: Optional[str] = Field(default=None, validation_alias="ALERT_WEBHOOK_URL")
    alert_webhook_timeout: float = Field(default=5.0, validation_alias="ALERT_WEBHOOK_TIMEOUT")

    @field_validator("trusted_proxies", "rate_limit_exempt_paths", mode="before")
    @classmethod
    def _split_lists(cls, value):
        return _parse_list(value)

    def get_safe_config(self) -> dict:
        """Get configuration safe for logging (no secrets)."""
        return {
            "app": self.app_name,
            "environment": self.environment,
            "redis_enabled": bool(self.redis_url),
            "access_list": self.enable_access_list,
            "rate_limiting": self.enable_rate_limit,
            "trusted_proxies": len(self.trusted_proxies),
            "alert_webhook": bool(self.alert_webhook_url),
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
