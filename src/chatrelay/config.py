from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATRELAY_", env_file=".env", extra="ignore")

    # Upstream Gemini API
    gemini_api_key: str = ""
    gemini_model: str = "gemini-pro"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_temperature: float = 0.7
    gemini_max_tokens: int = 2048
    upstream_timeout_s: float = 120.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_allow_origins: list[str] = ["*"]

    # Event stream
    sse_close_delay_s: float = 0.1
    sse_ping_interval_s: float = 15.0
    demo_char_delay_s: float = 0.05

    # Conversation storage
    conversation_store: Literal["memory", "sqlite"] = "memory"
    db_path: str = "chatrelay.db"

    # Logging
    log_level: str = "INFO"

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key.strip())

    def masked_api_key(self) -> str:
        """Key prefix safe to print in startup logs."""
        if not self.gemini_configured:
            return "<unset>"
        return f"{self.gemini_api_key[:8]}..."


@lru_cache
def get_settings() -> Settings:
    return Settings()
