"""
Configuration management for Cardsmith.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from cardsmith.core.domain.models import DEFAULT_MAX_ITERATIONS, ModelConfig, ProviderKind


class CardsmithSettings(BaseSettings):
    """Settings with environment variable support (``CARDSMITH_*``)."""

    # Model access for new sessions
    provider: ProviderKind = Field(default=ProviderKind.OPENAI, description="LLM provider")
    model_name: str = Field(default="gpt-4.1-mini", description="Model used for new sessions")
    api_key: str | None = Field(default=None, description="API key (falls back to OPENAI_API_KEY)")
    base_url: str | None = Field(default=None, description="Provider base URL")
    temperature: float = Field(default=0.7, description="Sampling temperature")
    max_tokens: int | None = Field(default=None, description="Max tokens per completion")
    llm_config_path: str | None = Field(
        default="configs/llm_config.yaml",
        description="YAML file with retry policy and model parameters",
    )

    # Engine
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, description="Loop iteration budget")
    tool_timeout_seconds: float | None = Field(
        default=300.0, description="Per-invocation capability timeout"
    )
    token_budget: int | None = Field(default=None, description="Token budget per session")
    required_outputs: list[str] = Field(
        default_factory=lambda: ["character", "worldbook"],
        description="Output fields a session must produce",
    )

    # Storage
    storage_dir: str = Field(default=".storage/sessions", description="Session storage path")
    session_cleanup_days: int = Field(default=30, ge=1, description="Days to keep session data")

    # Logging
    log_level: str = Field(default="WARNING", description="Logging level")

    model_config = {
        "env_file": ".env",
        "env_prefix": "CARDSMITH_",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @classmethod
    def load_from_file(cls, config_path: Path) -> CardsmithSettings:
        """Load settings from a YAML configuration file."""
        if not config_path.exists():
            return cls()

        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def save_to_file(self, config_path: Path) -> None:
        """Save settings to a YAML configuration file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)

        config_data = self.model_dump(mode="json")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config_data, f, default_flow_style=False, indent=2)

    @staticmethod
    def get_config_path() -> Path:
        return Path.home() / ".cardsmith" / "config.yaml"

    @classmethod
    def load(cls) -> CardsmithSettings:
        return cls.load_from_file(cls.get_config_path())

    def update_setting(self, key: str, value: Any, config_path: Path | None = None) -> None:
        """Update a single setting and save to file."""
        if key not in type(self).model_fields:
            raise ValueError(f"Unknown setting: {key}")
        # Round-trip through validation so strings from the CLI get coerced
        validated = type(self).model_validate({**self.model_dump(), key: value})
        setattr(self, key, getattr(validated, key))
        self.save_to_file(config_path or self.get_config_path())

    def to_model_config(self) -> ModelConfig:
        return ModelConfig(
            provider=ProviderKind(self.provider),
            model_name=self.model_name,
            api_key=self.api_key,
            base_url=self.base_url,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
