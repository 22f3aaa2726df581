"""Configuration management for Aria."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from aria.errors import MissingTokenError, ModelNotConfiguredError

# Discord refuses to create more than this many webhooks in one channel.
MAX_HANDLES_PER_DESTINATION = 15


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ARIA_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Discord
    discord_token: str | None = Field(None, description="Discord bot token")
    discord_command_prefix: str = Field(default="!", description="Prefix for text commands")
    admin_override_id: str | None = Field(None, description="User id allowed to use raw mode without admin rights")

    # Backend
    model: str | None = Field(None, description="Model name, e.g. 'gpt-4o-mini'")
    api_key: str | None = Field(None, description="API key for the OpenAI-compatible backend")
    api_base: str | None = Field(None, description="Optional API base URL")
    model_timeout_seconds: float | None = Field(default=120.0, description="Per-call backend timeout")
    token_limit: int = Field(default=32600, description="Token budget for one assembled prompt")
    safety_settings_field: str | None = Field(
        default="safety_settings",
        description="Request field carrying the safety profile on compatible servers; empty to disable",
    )
    fallback_model: str | None = Field(None, description="Model asked when the primary backend fails")
    fallback_api_key: str | None = Field(None, description="API key for the fallback backend")
    fallback_api_base: str | None = Field(None, description="API base URL for the fallback backend")

    # Orchestration
    inference_parallelism: int = Field(default=1, description="Concurrent backend calls")
    rate_limit: int = Field(default=10, description="Requests per window for regular callers")
    restricted_rate_limit: int | None = Field(None, description="Requests per window for restricted callers")
    restricted_ids: str = Field(default="", description="Comma separated restricted caller ids")
    rate_window_seconds: float = Field(default=60.0, description="Admission window length")
    safe_mode_default: bool = Field(default=False, description="Use the strict safety profile by default")

    # Presentation
    assistant_name: str = Field(default="Aria", description="Name used when no persona is active")
    personas_path: Path | None = Field(None, description="YAML file or directory with persona definitions")

    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("inference_parallelism", "rate_limit", "token_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("rate_window_seconds")
    @classmethod
    def _positive_window(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def restricted_identities(self) -> frozenset[str]:
        return frozenset(item.strip() for item in self.restricted_ids.split(",") if item.strip())

    @property
    def resolved_restricted_limit(self) -> int:
        if self.restricted_rate_limit is not None:
            return self.restricted_rate_limit
        return self.rate_limit // 2

    def require_discord_token(self) -> str:
        if not self.discord_token:
            raise MissingTokenError("Discord token not configured. Set ARIA_DISCORD_TOKEN.")
        return self.discord_token

    def require_model(self) -> str:
        if not self.model:
            raise ModelNotConfiguredError("Model not configured. Set ARIA_MODEL (e.g. 'gpt-4o-mini').")
        return self.model


def load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment, `.env` and explicit overrides."""
    updates = {key: value for key, value in overrides.items() if value is not None}
    return Settings(**updates)
