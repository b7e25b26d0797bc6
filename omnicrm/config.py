from functools import lru_cache
from typing import Optional

from pydantic import field_validator
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

    # Database Configuration - required
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Webhook Security - HMAC verification is enabled only when set
    WEBHOOK_SECRET: Optional[str] = None

    # Completion endpoint (any OpenAI-compatible API); analysis is disabled without a key
    COMPLETION_API_KEY: Optional[str] = None
    COMPLETION_BASE_URL: str = "https://api.groq.com/openai/v1"
    COMPLETION_MODEL: str = "meta-llama/llama-4-maverick-17b-128e-instruct"
    COMPLETION_TIMEOUT_SECONDS: float = 60.0

    # Analysis scheduler
    ANALYSIS_CONCURRENCY: int = 1
    ANALYSIS_RECOVER_ON_STARTUP: bool = True

    @field_validator("ANALYSIS_CONCURRENCY")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
