from pathlib import Path
from typing import List, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    cors_origins: str = "*"

    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    model_roster: str = "gemini-1.5-flash,gemini-1.5-pro"
    temperature: float = 0.7

    queue_min_gap_ms: int = 1000
    queue_concurrency: int = 1
    call_timeout_seconds: float | None = 60.0

    retry_max_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 16000

    dedup_ttl_ms: int = 6 * 60 * 60 * 1000  # 6 hours
    redis_url: str | None = None

    telegram_bot_token: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    telegram_mode: Literal["polling", "webhook", "off"] = "polling"
    telegram_poll_timeout_seconds: int = 30
    telegram_webhook_secret: str | None = None

    system_prompt: str = (
        "You are a friendly and helpful assistant chatting with people on "
        "Telegram.\n"
        "Answer in the language the user writes in.\n"
        "Keep replies short enough to read comfortably on a phone screen, "
        "and use plain text rather than heavy formatting."
    )
    busy_reply: str = (
        "I'm getting too many requests right now. Please try again in a minute."
    )
    error_reply: str = "Sorry, I ran into an error. Please try again later."

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="allow",
    )

    @field_validator("queue_concurrency", "retry_max_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("model_roster")
    @classmethod
    def _roster_not_empty(cls, value: str) -> str:
        if not [m for m in value.split(",") if m.strip()]:
            raise ValueError("model_roster must name at least one model")
        return value

    def roster_list(self) -> List[str]:
        """Return the ordered model roster parsed from MODEL_ROSTER."""
        return [m.strip() for m in self.model_roster.split(",") if m.strip()]


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
