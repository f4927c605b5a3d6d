"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Faucet settings loaded from FAUCET_* environment variables."""

    # Storage backend selection
    storage_backend: Literal["memory", "postgres", "mongodb"] = "memory"

    # Relational backend - NO DEFAULT URL for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations: bool = False

    # Document backend
    mongodb_url: str = ""
    mongodb_database: str = "faucet"
    mongodb_timeout_ms: int = 5000

    # Limits - per-request ceiling and daily cap per role (None = uncapped)
    default_amount: int = 100
    default_daily_cap: int | None = 1000
    privileged_amount: int = 1000
    privileged_daily_cap: int | None = None
    admin_amount: int = 1000
    admin_daily_cap: int | None = None

    # Identity - comma-separated domains promoted to the privileged role
    privileged_domains: str = ""

    @property
    def privileged_domain_set(self) -> frozenset[str]:
        """Get privileged domains, lower-cased for comparison."""
        domains = set()
        for domain in self.privileged_domains.split(","):
            domain = domain.strip().lower()
            if domain:
                domains.add(domain)
        return frozenset(domains)

    # Decoupled queue
    queue_depth: int = 100
    queue_workers: int = 1
    queue_visibility_timeout_seconds: int = 300
    queue_poll_interval_seconds: float = 5.0
    queue_max_attempts: int = 3
    queue_retry_backoff_seconds: float = 1.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    service_name: str = "faucet"
    service_version: str = "0.1.0"
    metrics_enabled: bool = True
    metrics_port: int = 9090
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    model_config = SettingsConfigDict(
        env_prefix="FAUCET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The process MUST NOT start with a backend it cannot reach or with
        limits that would reject every mint.
        """
        errors: list[str] = []

        if self.storage_backend == "postgres":
            if not self.database_url:
                errors.append("FAUCET_DATABASE_URL is required for the postgres backend")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"FAUCET_DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if self.storage_backend == "mongodb":
            if not self.mongodb_url:
                errors.append("FAUCET_MONGODB_URL is required for the mongodb backend")
            if not self.mongodb_database:
                errors.append("FAUCET_MONGODB_DATABASE cannot be empty")

        for name in ("default_amount", "privileged_amount", "admin_amount"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive, got {getattr(self, name)}")

        for name in ("default_daily_cap", "privileged_daily_cap", "admin_daily_cap"):
            cap = getattr(self, name)
            if cap is not None and cap <= 0:
                errors.append(f"{name} must be positive when set, got {cap}")

        if self.queue_depth <= 0:
            errors.append(f"queue_depth must be positive, got {self.queue_depth}")
        if self.queue_workers <= 0:
            errors.append(f"queue_workers must be positive, got {self.queue_workers}")
        if self.queue_visibility_timeout_seconds <= 0:
            errors.append("queue_visibility_timeout_seconds must be positive")
        if self.queue_max_attempts <= 0:
            errors.append("queue_max_attempts must be positive")
        if self.queue_retry_backoff_seconds < 0:
            errors.append("queue_retry_backoff_seconds must not be negative")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - FAUCET CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
