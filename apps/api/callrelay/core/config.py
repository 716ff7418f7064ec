"""Application configuration for the call relay."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4000)
    signaling_url: str = Field(default="ws://localhost:4000/ws")

    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ])

    reconnect_attempts: int = Field(default=3, ge=0)
    reconnect_delay_seconds: float = Field(default=2.0, ge=0)
    health_interval_seconds: float = Field(default=5.0, gt=0)

    video_width: int = Field(default=1280)
    video_height: int = Field(default=720)
    video_frame_rate: int = Field(default=30)
    video_facing_mode: str = Field(default="user")
    audio_echo_cancellation: bool = Field(default=True)
    audio_noise_suppression: bool = Field(default=True)
    audio_auto_gain_control: bool = Field(default=True)

    @field_validator("ice_servers", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
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
