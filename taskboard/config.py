"""Runtime settings, read from the environment."""

import logging
import os

from pydantic import BaseModel, Field, field_validator

DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_DATABASE_URL = "sqlite:///./taskboard.db"
DEFAULT_CORS_ORIGINS = "http://localhost:3001,http://localhost:5173,http://localhost:8000"


class Settings(BaseModel):
    """Validated configuration for the client engine and the reference backend."""

    api_url: str = DEFAULT_API_URL
    http_timeout: float = Field(default=10.0, gt=0)
    due_soon_days: int = Field(default=2, ge=0)
    log_level: str = "INFO"
    database_url: str = DEFAULT_DATABASE_URL
    cors_origins: list[str] = Field(
        default_factory=lambda: DEFAULT_CORS_ORIGINS.split(",")
    )

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {v!r}")
        return level

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, v: object) -> object:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v


def load_settings() -> Settings:
    """Build settings from ``TASKBOARD_*`` and ``CORS_ORIGINS`` variables."""
    return Settings(
        api_url=os.getenv("TASKBOARD_API_URL", DEFAULT_API_URL),
        http_timeout=os.getenv("TASKBOARD_HTTP_TIMEOUT", "10"),
        due_soon_days=os.getenv("TASKBOARD_DUE_SOON_DAYS", "2"),
        log_level=os.getenv("TASKBOARD_LOG_LEVEL", "INFO"),
        database_url=os.getenv("TASKBOARD_DATABASE_URL", DEFAULT_DATABASE_URL),
        cors_origins=os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
    )
