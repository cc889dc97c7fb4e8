"""Configuration loading for the crashbucket ingestion engine.

This module provides centralized configuration management:
- Load settings from environment variables and .env files
- Validate configuration using pydantic
- Provide typed access to all settings
"""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

GROUP_STATUSES = ("open", "resolved", "ignored")


class Settings(BaseSettings):
    """Application configuration loaded from environment.

    Uses pydantic-settings for environment variable handling with
    .env file support via python-dotenv.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Crash store configuration
    store_backend: Literal["sqlite", "postgresql"] = Field(
        default="sqlite",
        description="Crash store backend type",
    )
    store_sqlite_path: str = Field(
        default="./data/crashes.db",
        description="SQLite database file path",
    )
    database_url: str = Field(
        default="",
        description="PostgreSQL connection URL",
    )

    # App registry configuration
    registry_backend: Literal["static", "http"] = Field(
        default="static",
        description="App registry backend type",
    )
    registry_file: str = Field(
        default="./registry.json",
        description="JSON file describing apps, API keys and versions",
    )
    registry_api_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the dashboard registry API",
    )
    registry_api_token: str = Field(
        default="",
        description="Bearer token for the dashboard registry API",
    )

    # Decoding and grouping
    decode_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound on one symbol-map decode",
    )
    grouping_trace_source: Literal["raw", "decoded"] = Field(
        default="raw",
        description="Which trace text is fingerprinted",
    )
    resolver_max_attempts: int = Field(
        default=5,
        description="Find-or-create attempts before giving up on a fingerprint",
    )

    # Reconciliation merge policy
    merge_target_rule: Literal["earliest_first_seen", "current_fingerprint"] = Field(
        default="earliest_first_seen",
        description="Which group survives a merge",
    )
    merge_status_priority: str = Field(
        default="open,resolved,ignored",
        description="Comma-separated statuses, most dominant first",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log format",
    )

    # Run mode
    run_mode: Literal["server", "cli"] = Field(
        default="server",
        description="Run mode",
    )

    # HTTP server configuration
    server_host: str = Field(
        default="0.0.0.0",
        description="Host to listen on for the ingestion server",
    )
    server_port: int = Field(
        default=8080,
        description="Port to listen on for the ingestion server",
    )
    admin_api_key: str = Field(
        default="",
        description="Bearer key for operator endpoints",
    )
    require_admin_auth: bool = Field(
        default=False,
        description="Require the admin key on operator endpoints",
    )

    # Development
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging",
    )

    @field_validator("decode_timeout_seconds")
    @classmethod
    def validate_decode_timeout(cls, v: float) -> float:
        """Ensure decode timeout is positive."""
        if v <= 0:
            raise ValueError("decode_timeout_seconds must be positive")
        return v

    @field_validator("resolver_max_attempts")
    @classmethod
    def validate_resolver_attempts(cls, v: int) -> int:
        """Ensure at least one resolution attempt."""
        if v < 1:
            raise ValueError("resolver_max_attempts must be at least 1")
        return v

    @field_validator("merge_status_priority")
    @classmethod
    def validate_status_priority(cls, v: str) -> str:
        """Ensure every group status is listed exactly once."""
        statuses = [s.strip().lower() for s in v.split(",") if s.strip()]
        if sorted(statuses) != sorted(GROUP_STATUSES):
            raise ValueError(
                f"merge_status_priority must list each of {', '.join(GROUP_STATUSES)} "
                f"exactly once, got {v!r}"
            )
        return ",".join(statuses)

    @field_validator("server_port")
    @classmethod
    def validate_server_port(cls, v: int) -> int:
        """Ensure server port is in valid range."""
        if v <= 0 or v > 65535:
            raise ValueError("server_port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_backends(self) -> "Settings":
        """Ensure the selected backends have what they need."""
        if self.store_backend == "postgresql" and not self.database_url:
            raise ValueError("database_url is required when store_backend is postgresql")
        if self.require_admin_auth and not self.admin_api_key:
            raise ValueError("admin_api_key is required when require_admin_auth is set")
        return self

    @property
    def status_priority(self) -> tuple[str, ...]:
        return tuple(self.merge_status_priority.split(","))


def load_settings(env_file: str | None = None) -> Settings:
    """Load application settings from environment.

    Args:
        env_file: Optional path to .env file. If not provided,
                 uses the default .env in the current directory.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If settings validation fails.
    """
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


__all__ = ["Settings", "load_settings"]
