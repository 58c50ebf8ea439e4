"""Run configuration with validation.

Values come from ``SPECZERO_*`` environment variables or a ``.env`` file
in the working directory. ``load_settings()`` also pushes ``.env`` into the
process environment so litellm sees provider keys it reads on its own.
"""

from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class LogFormat(str, Enum):
    JSON = "json"
    TEXT = "text"


class Settings(BaseSettings):
    """SpecZero settings."""

    model_config = SettingsConfigDict(
        env_prefix="SPECZERO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Standard logging level name")
    log_format: LogFormat = Field(default=LogFormat.TEXT, description="json or text")

    # LLM endpoint (litellm model string, e.g. "openrouter/mistralai/devstral-2512")
    llm_model: str = Field(default="openai/gpt-4o-mini")
    llm_api_key: str = Field(default="", description="Empty = let litellm read provider env vars")
    llm_api_base: str = Field(default="")
    llm_timeout_seconds: int = Field(default=300, gt=0)
    llm_max_tokens: int = Field(default=4096, gt=0)
    llm_failure_threshold: int = Field(default=3, gt=0, description="Consecutive failures before the model circuit opens")
    llm_cooldown_seconds: float = Field(default=60, gt=0)

    # Execution
    # 0 disables the per-step timeout; a hung step then stalls its layer.
    step_timeout_seconds: float = Field(default=0, ge=0)
    # 0 = one thread per step in the layer
    max_parallel_steps: int = Field(default=0, ge=0)

    # Shared context budgets
    summary_max_chars: int = Field(default=500, gt=0)
    key_file_max_chars: int = Field(default=5000, gt=0)

    # Output
    specs_folder: str = Field(default="specs")
    plugin_version: str = Field(default="2.1.0")
    no_push: bool = Field(default=False)

    # Planner policy: when true, mandatory agents are also skipped if none of
    # their required feature flags were detected.
    require_features_for_mandatory: bool = Field(default=False)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator("specs_folder")
    @classmethod
    def validate_specs_folder(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not v or ".." in v.split("/"):
            raise ValueError("specs_folder must be a relative path inside the repository")
        return v


def load_settings(env_file: Optional[str] = ".env", **overrides) -> Settings:
    """Build a Settings instance, converting validation failures.

    Raises:
        ConfigurationError: if any value fails validation.
    """
    if env_file:
        load_dotenv(env_file)
    try:
        return Settings(_env_file=env_file or None, **overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
