"""
Keel Settings - Configuration management using Pydantic Settings.

Loads engine configuration from environment variables and .env files.
Stack-specific values (database name, credentials, ...) live in
keel.config.StackConfig instead.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KeelSettings(BaseSettings):
    """
    Keel engine settings.

    Settings are loaded from:
    1. Environment variables (highest priority)
    2. .env file in current directory
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="KEEL_",  # All Keel env vars must start with KEEL_
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR) (env: KEEL_LOG_LEVEL)",
    )

    # State Configuration
    state_dir: Path = Field(
        default=Path(".keel"),
        description="Directory for state snapshots and lock files (env: KEEL_STATE_DIR)",
    )

    stack_name: str = Field(
        default="dev",
        description="Name of the stack whose snapshot is read and written (env: KEEL_STACK_NAME)",
    )

    # Apply Configuration
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Maximum provider calls in flight during apply (env: KEEL_MAX_WORKERS)",
    )

    provider_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Timeout in seconds for a single provider call (env: KEEL_PROVIDER_TIMEOUT)",
    )

    # Provider Configuration
    region: str = Field(
        default="us-east-1",
        description="Region reported by the simulated provider (env: KEEL_REGION)",
    )


# Global settings instance
_settings: KeelSettings | None = None


def get_settings() -> KeelSettings:
    """
    Get the global settings instance.

    Creates the settings instance on first call, then returns cached instance.

    Returns:
        KeelSettings instance
    """
    global _settings
    if _settings is None:
        _settings = KeelSettings()
    return _settings


def reload_settings() -> KeelSettings:
    """
    Reload settings from environment/files.

    Useful for testing or when .env file changes.

    Returns:
        Fresh KeelSettings instance
    """
    global _settings
    _settings = KeelSettings()
    return _settings
