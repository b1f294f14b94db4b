"""Configuration management for Bosun MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(value, *, name: str) -> tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    raise TypeError(f"{name} must be a list or a comma-separated string")


class BosunSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    assistant_path: str | None = Field(default=None, validation_alias="BOSUN_ASSISTANT_PATH")
    assistant_args: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="BOSUN_ASSISTANT_ARGS"
    )
    allowed_models: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("sonnet", "opus"), validation_alias="BOSUN_ALLOWED_MODELS"
    )
    workspace_root: Path = Field(default=Path("./workspaces"), validation_alias="BOSUN_WORKSPACE_ROOT")
    database_path: Path = Field(default=Path("./bosun.db"), validation_alias="BOSUN_DATABASE_PATH")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    prompt_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("prompts"),), validation_alias="BOSUN_PROMPT_PATHS"
    )
    max_sessions_per_user: int = Field(default=5, validation_alias="BOSUN_MAX_SESSIONS_PER_USER")
    idle_timeout_seconds: float = Field(default=3600.0, validation_alias="BOSUN_IDLE_TIMEOUT")
    idle_sweep_interval_seconds: float = Field(
        default=300.0, validation_alias="BOSUN_IDLE_SWEEP_INTERVAL"
    )
    send_timeout_seconds: float = Field(default=30.0, validation_alias="BOSUN_SEND_TIMEOUT")
    stop_grace_seconds: float = Field(default=5.0, validation_alias="BOSUN_STOP_GRACE")
    shutdown_timeout_seconds: float = Field(default=30.0, validation_alias="BOSUN_SHUTDOWN_TIMEOUT")
    reserved_channels: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("general",), validation_alias="BOSUN_RESERVED_CHANNELS"
    )
    end_sessions_on_shutdown: bool = Field(
        default=True, validation_alias="BOSUN_END_SESSIONS_ON_SHUTDOWN"
    )
    git_author_name: str = Field(default="Bosun Bot", validation_alias="BOSUN_GIT_AUTHOR_NAME")
    git_author_email: str = Field(
        default="bosun-bot@example.com", validation_alias="BOSUN_GIT_AUTHOR_EMAIL"
    )
    log_level: str = Field(default="INFO", validation_alias="BOSUN_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "BOSUN_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("prompt_paths", mode="before")
    @classmethod
    def _parse_prompt_paths(cls, value):
        if value is None or value == "":
            return (Path("prompts"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("prompts"),)
        raise TypeError("BOSUN_PROMPT_PATHS must be a list of paths or a path-separated string")

    @field_validator("assistant_args", mode="before")
    @classmethod
    def _parse_assistant_args(cls, value):
        if isinstance(value, str):
            return tuple(value.split())
        return _split_csv(value, name="BOSUN_ASSISTANT_ARGS")

    @field_validator("allowed_models", mode="before")
    @classmethod
    def _parse_allowed_models(cls, value):
        models = _split_csv(value, name="BOSUN_ALLOWED_MODELS")
        if not models:
            raise ValueError("BOSUN_ALLOWED_MODELS must name at least one model")
        return models

    @field_validator("reserved_channels", mode="before")
    @classmethod
    def _parse_reserved_channels(cls, value):
        return tuple(name.lower() for name in _split_csv(value, name="BOSUN_RESERVED_CHANNELS"))

    @field_validator("max_sessions_per_user")
    @classmethod
    def _validate_max_sessions(cls, value: int) -> int:
        if value < 1:
            raise ValueError("BOSUN_MAX_SESSIONS_PER_USER must be >= 1")
        return value

    @field_validator(
        "idle_timeout_seconds",
        "send_timeout_seconds",
        "stop_grace_seconds",
        "shutdown_timeout_seconds",
        "idle_sweep_interval_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: float, info) -> float:  # type: ignore[override]
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> BosunSettings:
    """Return cached settings instance."""

    settings = BosunSettings()
    settings.workspace_root = settings.workspace_root.expanduser().resolve()
    settings.database_path = settings.database_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.prompt_paths = tuple(path.expanduser().resolve() for path in settings.prompt_paths)
    return settings


__all__ = ["BosunSettings", "get_settings"]
