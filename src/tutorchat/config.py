"""Runtime configuration for the TutorChat proxy and client."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="tutorchat_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Backend base URL already includes the /api/v1 prefix
    backend_api_url: str = "http://localhost:8000/api/v1"
    backend_connect_timeout_seconds: float = 10.0
    backend_write_timeout_seconds: float = 30.0
    backend_pool_timeout_seconds: float = 30.0

    # Where clients reach the transport proxy
    proxy_url: str = "http://localhost:3000"
    chat_route: str = "/api/chat"

    # Conversation defaults
    default_model_id: str = "gpt-4.1-nano"
    default_prompt_id: str | None = None
    title_max_length: int = 50
    title_ellipsis: str = "..."
    conversation_page_size: int = 50

    # None keeps the stream open until the backend closes it
    stream_idle_timeout_seconds: float | None = None

    # File-backed client state (credential + active conversation)
    state_file: Path | None = None

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "HEAD", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def backend_base(self) -> str:
        return self.backend_api_url.rstrip("/")

    @property
    def chat_endpoint(self) -> str:
        return f"{self.proxy_url.rstrip('/')}/{self.chat_route.lstrip('/')}"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
