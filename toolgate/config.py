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
    """Application settings loaded from environment variables."""

    # State storage - "database" for PostgreSQL, "memory" for single-process dev
    store_backend: Literal["database", "memory"] = "database"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Toolgate API"
    api_version: str = "0.1.0"
    api_description: str = "OAuth-protected, pay-per-call tool invocation gateway"

    # Public URL this service is reachable at (issuer + discovery documents)
    base_url: str = "http://localhost:8000"

    # Token signing - NO DEFAULT (generate with: openssl rand -hex 32)
    token_signing_secret: str = ""
    resource_audience: str = "mcp"
    session_audience: str = "console"
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_days: int = 30
    refresh_token_rotation: bool = False

    # Authorization flow
    authorization_code_ttl_seconds: int = 600
    pending_authorization_ttl_seconds: int = 600
    default_scopes: str = "mcp:tools mcp:resources"
    supported_scopes: str = "mcp:tools mcp:resources"
    tools_scope: str = "mcp:tools"

    # Ledger collaborator
    ledger_backend: Literal["http", "memory"] = "http"
    ledger_url: str = ""
    ledger_api_key: str = ""
    ledger_timeout_seconds: float = 10.0
    balance_cache_ttl_seconds: int = 30

    # Outbound tool calls
    default_tool_timeout_seconds: float = 30.0
    max_tool_timeout_seconds: float = 120.0

    # Background cleanup of expired codes, pending authorizations, snapshots
    cleanup_interval_seconds: int = 60

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "toolgate-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        A gateway that signs tokens with an empty secret or settles
        payments against an unreachable ledger must not come up.
        """
        errors: list[str] = []

        if not self.token_signing_secret:
            errors.append("TOKEN_SIGNING_SECRET is required but empty or missing")
        elif len(self.token_signing_secret) < 32:
            errors.append("TOKEN_SIGNING_SECRET must be at least 32 characters")

        if self.store_backend == "database":
            if not self.database_url:
                errors.append("DATABASE_URL is required when STORE_BACKEND=database")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if self.ledger_backend == "http" and not self.ledger_url:
            errors.append("LEDGER_URL is required when LEDGER_BACKEND=http")

        if self.tools_scope not in self.supported_scope_list:
            errors.append(f"TOOLS_SCOPE {self.tools_scope!r} is not in SUPPORTED_SCOPES")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def issuer(self) -> str:
        """Issuer identifier (the public base URL without trailing slash)."""
        return self.base_url.rstrip("/")

    @property
    def resource_url(self) -> str:
        """Protected resource identifier advertised in discovery metadata."""
        return f"{self.issuer}/mcp"

    @property
    def resource_metadata_url(self) -> str:
        """Location of the protected resource metadata document."""
        return f"{self.issuer}/.well-known/oauth-protected-resource"

    @property
    def supported_scope_list(self) -> list[str]:
        return self.supported_scopes.split()

    @property
    def default_scope_list(self) -> list[str]:
        return self.default_scopes.split()


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
