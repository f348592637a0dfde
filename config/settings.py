"""
Centralized configuration for the conversation bot.

All settings are loaded from environment variables via .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

from conversation.engine import EngineConfig
from conversation.dispatcher import RetryPolicy

load_dotenv()


class Settings(BaseSettings):
    """Application settings."""

    # Branding (white-label per school)
    bot_name: str = Field(default="VidyaMitra", env="BOT_NAME")
    school_name: str = Field(default="Your School", env="SCHOOL_NAME")
    support_email: str = Field(default="contact@example.com", env="SUPPORT_EMAIL")
    support_phone: str = Field(default="", env="SUPPORT_PHONE")
    max_messages_per_day: int = Field(default=50, env="MAX_MESSAGES_PER_DAY")

    # Storage backend selection: local | sheet
    backend_kind: str = Field(default="local", env="BACKEND_KIND")

    # Local (SQL) backend
    database_url: str = Field(
        default="sqlite+aiosqlite:///./conversations.db", env="DATABASE_URL"
    )
    database_pool_size: int = Field(default=5, env="DATABASE_POOL_SIZE")

    # Google Sheets backend
    sheet_spreadsheet_id: Optional[str] = Field(default=None, env="SHEET_SPREADSHEET_ID")
    sheet_credentials_file: Optional[str] = Field(default=None, env="SHEET_CREDENTIALS_FILE")
    sheet_state_worksheet: str = Field(default="conversations", env="SHEET_STATE_WORKSHEET")
    sheet_log_worksheet: str = Field(default="event_log", env="SHEET_LOG_WORKSHEET")

    # Retry / timeouts
    retry_max_attempts: int = Field(default=5, env="RETRY_MAX_ATTEMPTS")
    retry_backoff_ms: int = Field(default=50, env="RETRY_BACKOFF_MS")
    unavailable_max_attempts: int = Field(default=2, env="UNAVAILABLE_MAX_ATTEMPTS")
    unavailable_backoff_ms: int = Field(default=20, env="UNAVAILABLE_BACKOFF_MS")
    request_timeout_ms: int = Field(default=5000, env="REQUEST_TIMEOUT_MS")
    reorder_window_ms: int = Field(default=50, env="REORDER_WINDOW_MS")

    # Outbound delivery
    delivery_callback_url: Optional[str] = Field(default=None, env="DELIVERY_CALLBACK_URL")
    delivery_api_key: Optional[str] = Field(default=None, env="DELIVERY_API_KEY")
    delivery_timeout_ms: int = Field(default=10000, env="DELIVERY_TIMEOUT_MS")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    api_title: str = Field(default="Conversation Bot API", env="API_TITLE")
    api_version: str = Field(default="1.0.0", env="API_VERSION")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    debug: bool = Field(default=False, env="DEBUG")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def reorder_window(self) -> float:
        return self.reorder_window_ms / 1000.0

    @property
    def delivery_timeout(self) -> float:
        return self.delivery_timeout_ms / 1000.0

    @property
    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            bot_name=self.bot_name,
            school_name=self.school_name,
            support_email=self.support_email,
            support_phone=self.support_phone,
            max_messages_per_day=self.max_messages_per_day,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            backoff_ms=self.retry_backoff_ms,
            unavailable_max_attempts=self.unavailable_max_attempts,
            unavailable_backoff_ms=self.unavailable_backoff_ms,
            request_timeout_ms=self.request_timeout_ms,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
