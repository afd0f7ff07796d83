from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Only presence checks are applied to the provider credentials.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage
    DATABASE_URL: str = "sqlite:///./whatsapp_ingest.db"
    DB_TIMEOUT_SECONDS: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"

    # "production" disables the unsigned-webhook bypass
    ENVIRONMENT: str = "development"

    # Webhook security
    WHATSAPP_APP_SECRET: str = ""
    WHATSAPP_VERIFY_TOKEN: str = ""

    # Send API
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_VERSION: str = "v22.0"
    WHATSAPP_API_BASE_URL: str = "https://graph.facebook.com"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Operator send endpoint, disabled while empty
    SEND_API_TOKEN: str = ""

    STATUS_POLICY: Literal["last_applied", "monotonic"] = "last_applied"

    # Keyword replies; an empty string disables the reply
    OPT_IN_REPLY: str = "You are now subscribed to WhatsApp updates. Reply STOP to unsubscribe."
    OPT_OUT_REPLY: str = "You have been unsubscribed. Reply START to subscribe again."
    HELP_REPLY: str = "Reply START to subscribe, STOP to unsubscribe, or HELP to see this menu."

    SHUTDOWN_DRAIN_SECONDS: float = 5.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("prod", "production")

    @property
    def gateway_configured(self) -> bool:
        return bool(self.WHATSAPP_ACCESS_TOKEN and self.WHATSAPP_PHONE_NUMBER_ID)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
