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

    # Local storage backend (used when Supabase is not configured)
    DATABASE_URL: str = "sqlite:///./replydesk.db"

    # Remote storage backend - both must be set to be selected
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    # Bearer token guarding the send/history/analytics routes
    API_TOKEN: Optional[str] = None

    # Transport session
    TRANSPORT: str = "none"
    SESSIONS_DIR: str = "./sessions"
    SELF_ADDRESS: str = "server"
    RECONNECT_BASE_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 60.0

    # AI completion fallback - enabled by the presence of an API key
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_BASE_URL: Optional[str] = None
    AI_TIMEOUT_SECONDS: float = 15.0
    AI_MAX_TOKENS: int = 80
    AI_PERSONA: str = "You are a helpful sales assistant for a Caribbean small business."

    # Reply policy
    ORDER_KEYWORDS: list[str] = ["order"]
    HOURS_KEYWORDS: list[str] = ["hours", "open"]
    ORDER_REPLY: str = (
        "Thanks for your interest! Reply with the item name and your address to place an order."
    )
    HOURS_REPLY: str = "We are open Mon-Fri 9am-6pm. Weekend by appointment."
    GENERIC_REPLY: str = "Thanks for your message! How can we help?"
    APOLOGY_REPLY: str = "Thanks, we will be with you shortly!"

    # Pipeline / API
    INBOUND_QUEUE_SIZE: int = 100
    HISTORY_DEFAULT_LIMIT: int = 200
    ANALYTICS_DAYS: int = 14
    ANALYTICS_TOP_PEERS: int = 5

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)

    @property
    def ai_configured(self) -> bool:
        return bool(self.OPENAI_API_KEY)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
