"""Application configuration for the signaling relay and the session client."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    relay_url: str = Field(default="ws://localhost:8000/api/rtc/signaling")
    stun_servers: list[str] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    ])

    join_timeout_seconds: float = Field(default=10.0, gt=0)
    negotiation_timeout_seconds: float = Field(default=15.0, gt=0)
    negotiation_max_retries: int = Field(default=1, ge=0)

    translation_api_url: str = Field(default="https://api.mymemory.translated.net/get")
    translation_timeout_seconds: float = Field(default=5.0, gt=0)

    whisper_model: str = Field(default="small")
    whisper_device: str = Field(default="cpu")
    whisper_compute_type: str = Field(default="int8")

    tts_provider: str = Field(default="gtts")
    tts_voice: str = Field(default="en-US-AriaNeural")

    @field_validator("cors_allow_origins", "stun_servers", mode="before")
    @classmethod
    def _split_list(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
