from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Directory holding one SQLite cache file per account
    DATA_DIR: str = "./data"

    # Twilio credentials - the account does not start without all three
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_NUMBER: Optional[str] = None

    # Polling cadence (seconds)
    POLL_INTERVAL_SECONDS: float = 8.0
    BACKOFF_INTERVAL_SECONDS: float = 60.0
    RESUME_THRESHOLD_SECONDS: float = 5.0

    # Added to the watermark before the next incremental fetch (milliseconds)
    WATERMARK_MARGIN_MS: int = 2000

    # Pagination
    DEFAULT_PAGE_LIMIT: int = 50
    MAX_PAGE_LIMIT: int = 100


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


# Global settings instance
settings = get_settings()
