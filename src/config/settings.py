# src/config/settings.py - v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for deployment-specific settings: backend URL,
request timeout and read retries, per-family cache windows, the opinion
coalescing delay and logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ANNOREVIEW_",
        extra="ignore",
    )

    # === Backend ===
    api_base_url: str = "http://localhost:3000/api/v1"
    request_timeout_s: float = 10.0
    read_retry_attempts: int = 2
    read_retry_delay_s: float = 1.0

    # === Cache windows (seconds) ===
    principles_stale_after_s: float = 600.0
    principles_retention_s: float = 900.0
    samples_stale_after_s: float = 120.0
    samples_retention_s: float = 300.0

    # === Editing ===
    opinion_coalesce_delay_s: float = 0.5
    reviser_name: str = ""

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("request_timeout_s", "opinion_coalesce_delay_s")
    @classmethod
    def validate_positive(cls, v: float) -> float:  # noqa: N805
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("read_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:  # noqa: N805
        if v < 0:
            raise ValueError("read_retry_attempts must be >= 0")
        return v

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:  # noqa: N805
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Retention windows must outlive the matching staleness windows."""
        errors: list[str] = []

        if self.principles_retention_s < self.principles_stale_after_s:
            errors.append(
                "PRINCIPLES_RETENTION_S must be >= PRINCIPLES_STALE_AFTER_S"
            )
        if self.samples_retention_s < self.samples_stale_after_s:
            errors.append("SAMPLES_RETENTION_S must be >= SAMPLES_STALE_AFTER_S")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or scripting).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
