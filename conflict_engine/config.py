"""Runtime settings, read from the environment (``CONFLICT_ENGINE_*``) or ``.env``."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONFLICT_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # External generator
    openai_api_key: str | None = None
    generator_model: str = "gpt-4o-mini"
    generator_timeout_seconds: float = 8.0
    generator_temperature: float = 0.7

    # Alternatives
    alternative_buffer_minutes: int = 15
    max_alternatives: int = 3
    schedule_context_days: int = 7

    # Conflict finder
    conflict_window_hours: int = 24
    conflict_query_limit: int = 100

    # Schedule monitor
    default_timezone: str = "America/Toronto"
    unconfirmed_window_start_hours: int = 20
    unconfirmed_window_end_hours: int = 28
    monitor_lookahead_days: int = 14
    monitor_query_limit: int = 500
    post_session_window_hours: int = 2
    long_gap_days: int = 14

    transaction_max_attempts: int = 5
    log_level: str = "INFO"


settings = Settings()
