from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: Literal["development", "staging", "production"] = Field(default="development")
    log_level: str = Field(default="INFO")

    mongodb_url: str = Field(default="mongodb://localhost:27017")
    mongodb_db: str = Field(default="coach_messaging")

    # client side
    api_base_url: str = Field(default="http://localhost:8000")
    request_timeout: float = Field(default=10.0)
    conversation_page_size: int = Field(default=8, ge=1, le=100)
    # seconds before a cached value is polled again
    messages_stale_after: float = Field(default=5.0, gt=0)
    unread_stale_after: float = Field(default=10.0, gt=0)
    notifications_stale_after: float = Field(default=10.0, gt=0)

    # push; left unset the service uses a no-op pusher
    fcm_service_account_file: Optional[str] = Field(default=None)
    fcm_project_id: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
