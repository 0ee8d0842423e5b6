from functools import lru_cache
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

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chatcore.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Messaging limits
    MAX_GROUP_PARTICIPANTS: int = 50
    EDIT_WINDOW_MINUTES: int = 15
    MAX_TEXT_LENGTH: int = 1000
    DEFAULT_PAGE_SIZE: int = 50
    CONVERSATIONS_PAGE_SIZE: int = 20

    # Attachments are uploaded elsewhere; keys are resolved against this URL
    MEDIA_BASE_URL: str = "/uploads/messages"

    # Token bucket for message sends, per user
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 900


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
