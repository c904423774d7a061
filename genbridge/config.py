"""Application configuration using Pydantic BaseSettings."""

from __future__ import annotations

import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a ``.env`` file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ComfyUI inference server
    comfyui_url: str = Field(default="http://127.0.0.1:8000", alias="COMFYUI_URL")
    comfyui_ws_url: str | None = Field(default=None, alias="COMFYUI_WS_URL")
    comfyui_timeout_seconds: float = Field(default=30.0, alias="COMFYUI_TIMEOUT_SECONDS")

    # Generation store
    db_path: str = Field(default="./generations.db", alias="GENBRIDGE_DB_PATH")
    stale_after_seconds: int = Field(default=3600, alias="GENBRIDGE_STALE_AFTER_SECONDS")

    # Progress bridge
    poll_interval_seconds: float = Field(default=2.0, alias="GENBRIDGE_POLL_INTERVAL_SECONDS")
    # 0 disables the overall stream cap
    step_timeout_seconds: float = Field(default=60.0, alias="GENBRIDGE_STEP_TIMEOUT_SECONDS")
    min_stream_timeout_seconds: float = Field(
        default=600.0, alias="GENBRIDGE_MIN_STREAM_TIMEOUT_SECONDS"
    )

    # Workers and HTTP surface
    worker_count: int = Field(default=1, alias="GENBRIDGE_WORKER_COUNT")
    api_prefix: str = Field(default="/api", alias="GENBRIDGE_API_PREFIX")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("poll_interval_seconds")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("poll interval must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level: {v}")
        return level


def configure_logging(settings: Settings) -> None:
    """Apply the configured level to the genbridge loggers."""
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("genbridge").setLevel(settings.log_level)
