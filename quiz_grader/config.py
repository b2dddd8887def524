"""
Configuration management for the Quiz Grader system.

Uses Pydantic Settings for type-safe configuration loading from environment variables.
All configuration is validated at startup to fail fast on misconfiguration.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are validated at startup. Missing required fields
    will raise clear validation errors.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Grading Oracle Configuration
    # ==========================================================================
    openai_api_key: str = Field(
        ...,
        description="API key for the OpenAI-compatible grading endpoint",
        min_length=10,
    )

    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL for the OpenAI-compatible grading endpoint",
    )

    grading_model: str = Field(
        default="gpt-4o-mini",
        description="Model used to grade open-ended answers",
    )

    llm_temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Temperature for LLM generation (0.0 = deterministic)",
    )

    oracle_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single request to the grading endpoint",
    )

    oracle_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries on rate limits, connection errors and 5xx responses",
    )

    # ==========================================================================
    # Grading Policy Configuration
    # ==========================================================================
    fallback_fraction: Decimal = Field(
        default=Decimal("0.5"),
        ge=0,
        le=1,
        description="Share of the question weight awarded when automatic grading fails",
    )

    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum parallel oracle calls while grading one submission",
    )

    question_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Wall-clock limit for grading one open-ended question",
    )

    # ==========================================================================
    # Logging & Output Configuration
    # ==========================================================================
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum level written to the log sink",
    )

    output_directory: Path = Field(
        default=Path("./output"),
        description="Directory where grading records are written",
    )

    @field_validator("openai_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL doesn't have trailing slash."""
        return v.rstrip("/")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: object) -> object:
        """Accept lower-case level names from the environment."""
        return v.upper() if isinstance(v, str) else v


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    """
    return Settings()
