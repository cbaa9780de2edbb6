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
    DATABASE_URL: str = "sqlite:///./missiv.db"

    # How long a SQLite writer waits for the write lock held by another
    # append on the same database before giving up
    DB_BUSY_TIMEOUT_SECONDS: float = 30.0

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Record NEW_MIV / REPLY / READ_RECEIPT events in the notifications table
    NOTIFICATIONS_ENABLED: bool = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
