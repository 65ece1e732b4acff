"""Base configuration with pydantic-settings.

Services inherit `BaseSettings` and add the fields they need.

Usage in service:
    from shared.config import BaseSettings, redis_url_field

    class Settings(BaseSettings):
        redis_url: str = redis_url_field()

    settings = Settings()
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings as PydanticBaseSettings, SettingsConfigDict


class BaseSettings(PydanticBaseSettings):
    """Base application settings.

    All fields here are optional with sensible defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging configuration
    service_name: str = Field(
        default="unknown",
        description="Service name for structured logging",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


def redis_url_field(required: bool = True):
    """Redis URL field definition."""
    if required:
        return Field(
            default="redis://redis:6379/0",
            description="Redis connection URL",
            examples=["redis://redis:6379/0"],
        )
    return Field(
        default=None,
        description="Redis connection URL (optional)",
    )


def api_url_field():
    """Pool manager API URL field definition (used by the CLI)."""
    return Field(
        default="http://pool-manager:8000",
        alias="VPOOL_API_URL",
        description="Pool manager API base URL (without /api suffix)",
        examples=["http://localhost:8000"],
    )
