"""
Shared configuration management for the stateless session layer.
"""

from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Shortest passphrase accepted for the secure token codec.
MIN_PASSPHRASE_LENGTH = 32


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="INVQ_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage mechanism
    storage_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0")
    storage_ttl_seconds: int = Field(default=1800, ge=1)
    memory_storage_max_entries: Optional[int] = Field(default=10000, ge=1)

    # Event log token
    block_capacity: int = Field(default=256, ge=1)
    queue_cookie_name: str = Field(default="invalidationqueue")
    encrypt_queue_token: bool = Field(default=False)

    # Session cookies
    session_cookie_name: str = Field(default="session-id")
    secure_cookie_name: str = Field(default="key-session-values")
    session_passphrase: Optional[str] = Field(default=None)
    key_cache_size: int = Field(default=10, ge=1)

    # Refresh sources
    refresh_timeout_seconds: Optional[float] = Field(default=5.0, gt=0)

    @field_validator("storage_backend")
    @classmethod
    def _check_storage_backend(cls, value: str) -> str:
        if value not in ("memory", "redis"):
            raise ValueError("storage_backend must be 'memory' or 'redis'")
        return value

    @field_validator("session_passphrase")
    @classmethod
    def _check_passphrase(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(f"session_passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters")
        return value

    @model_validator(mode="after")
    def _check_queue_encryption(self) -> "BaseConfig":
        if self.encrypt_queue_token and not self.session_passphrase:
            raise ValueError("encrypt_queue_token requires session_passphrase")
        return self


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
