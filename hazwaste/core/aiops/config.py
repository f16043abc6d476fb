"""AI operations configuration."""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS: dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

# Names uvicorn accepts where they differ from ours
UVICORN_LOG_LEVELS: dict[str, str] = {
    "warn": "warning",
    "fatal": "critical",
}


class AIOpsSettings(BaseSettings):
    """Control plane settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="AI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    # Model endpoint
    model_api_key: str = ""
    model_endpoint: str = "https://api.anthropic.com/v1"
    model_name: str = "claude-3-5-sonnet-20241022"
    model_timeout_seconds: float = 60.0

    # Serve canned responses instead of calling the endpoint
    mock_mode: bool = True

    log_level: Literal["trace", "debug", "info", "warn", "error", "fatal"] = "info"

    # Reliability
    max_retries: int = Field(default=3, ge=1)
    base_delay_seconds: float = 1.0
    cache_ttl_seconds: float = 3600.0
    single_flight: bool = False

    # Safety
    toxicity_threshold: float = 0.7

    # Metrics API
    api_title: str = "Waste Compliance AIOps API"
    api_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def uvicorn_log_level(self) -> str:
        return UVICORN_LOG_LEVELS.get(self.log_level, self.log_level)

    @property
    def has_api_key(self) -> bool:
        """Check if a model API key is configured."""
        return bool(self.model_api_key)


def configure_logging(level: str = "info") -> None:
    """Apply the configured level to the hazwaste logger hierarchy."""
    logging.basicConfig(level=logging.INFO)
    logging.getLogger("hazwaste").setLevel(LOG_LEVELS.get(level, logging.INFO))
