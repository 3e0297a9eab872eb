"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseModel):
    # Default for max_iterations() when no loop strategy is given
    max_iterations: int = Field(default=5, ge=1)


class StreamConfig(BaseModel):
    chunk_strategy: str = "immediate"
    batch_size: int = Field(default=5, ge=1)
    record: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHATLOOP_",
        env_nested_delimiter="__",
    )

    engine: EngineConfig = EngineConfig()
    stream: StreamConfig = StreamConfig()
    log_level: str = "INFO"

    @classmethod
    def load(cls, config_path: Path | None = None) -> Settings:
        """Load settings from a YAML file; env vars fill anything it leaves unset."""
        data: dict = {}
        if config_path and config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        return cls(**data)


def get_project_root() -> Path:
    """Walk up from CWD to find pyproject.toml, or fall back to CWD."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return current


def load_settings() -> Settings:
    """Load settings from the project root's config/settings.yaml."""
    root = get_project_root()
    return Settings.load(root / "config" / "settings.yaml")
