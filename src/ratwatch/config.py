"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

from ratwatch.core.schedule_times import is_valid_timezone


class Settings(BaseSettings):
    """Rat Watch application configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Discord
    discord_bot_token: str = ""
    discord_enabled: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///ratwatch.db"

    # Environment
    ratwatch_env: str = "development"

    # Scheduling
    ratwatch_auto_advance: bool = True
    ratwatch_check_interval_seconds: int = Field(default=30, ge=5, le=3600)
    ratwatch_max_concurrent_executions: int = Field(default=5, ge=1)
    ratwatch_execution_timeout_seconds: int = Field(default=30, ge=1)
    ratwatch_shutdown_grace_seconds: int = Field(default=60, ge=1)

    # Watch defaults (per-guild settings override these once a guild row exists)
    ratwatch_voting_duration_minutes: int = Field(default=5, ge=1)
    ratwatch_duplicate_window_minutes: int = Field(default=5, ge=0)
    ratwatch_max_advance_hours: int = Field(default=24, ge=1)
    ratwatch_default_timezone: str = "UTC"

    # Logging
    ratwatch_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _require_token_in_production(self) -> Settings:
        """A production deployment with Discord enabled needs a bot token."""
        if (
            self.ratwatch_env == "production"
            and self.discord_enabled
            and not self.discord_bot_token
        ):
            msg = "DISCORD_BOT_TOKEN must be set when DISCORD_ENABLED is true in production."
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _check_default_timezone(self) -> Settings:
        if not is_valid_timezone(self.ratwatch_default_timezone):
            msg = f"Unknown RATWATCH_DEFAULT_TIMEZONE: {self.ratwatch_default_timezone!r}"
            raise ValueError(msg)
        return self

    def guild_defaults(self) -> dict[str, object]:
        """Values a new guild settings row starts from."""
        return {
            "is_enabled": True,
            "timezone": self.ratwatch_default_timezone,
            "max_advance_hours": self.ratwatch_max_advance_hours,
            "voting_duration_minutes": self.ratwatch_voting_duration_minutes,
        }
