"""Application configuration for the relay and the participant CLI."""
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
    port: int = Field(default=8000, ge=1, le=65535)

    room_sweep_interval_seconds: float = Field(default=300.0, gt=0)
    room_max_age_seconds: float = Field(default=3600.0, gt=0)

    signaling_url: str = Field(default="ws://localhost:8000/ws")
    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ])
    reconnect_delay_seconds: float = Field(default=1.0, gt=0)
    reconnect_delay_max_seconds: float = Field(default=5.0, gt=0)
    reconnect_attempts: int = Field(default=10, ge=0)
    request_timeout_seconds: float = Field(default=20.0, gt=0)

    control_batch_interval_ms: int = Field(default=16, ge=1)
    control_max_batch_size: int = Field(default=50, ge=1)
    control_move_throttle_ms: int = Field(default=8, ge=0)

    stats_interval_seconds: float = Field(default=1.0, gt=0)

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
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
