"""
Shared configuration management for the rule resolution service.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RULES_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Rule document store
    postgres_dsn: str = Field(default="postgres://localhost:5432/rules")
    store_timeout_seconds: float = Field(default=2.0, gt=0)
    store_retry_attempts: int = Field(default=2, ge=1)
    store_failure_threshold: int = Field(default=5, ge=1)
    store_recovery_timeout_seconds: float = Field(default=30.0, gt=0)

    # Rule cache
    rule_cache_ttl_seconds: float = Field(default=300.0, gt=0)

    # Audit / observability
    audit_enabled: bool = Field(default=True)
    metrics_enabled: bool = Field(default=True)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "rules"

    def __init__(self, service_name: str = "rules", **kwargs):
        super().__init__(service_name=service_name, **kwargs)


def get_config(service_name: str = "rules", **overrides) -> ServiceConfig:
    """Get configuration for the rule service."""
    return ServiceConfig(service_name=service_name, **overrides)
