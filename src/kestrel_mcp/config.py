"""Configuration management for Kestrel MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class KestrelSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    repo_root: Path = Field(default=Path("."), validation_alias="KESTREL_REPO_ROOT")
    worktree_base: Path | None = Field(default=None, validation_alias="KESTREL_WORKTREE_BASE")
    base_branch: str = Field(default="main", validation_alias="KESTREL_BASE_BRANCH")
    remote: str = Field(default="origin", validation_alias="KESTREL_REMOTE")
    branch_prefix: str = Field(default="kestrel/", validation_alias="KESTREL_BRANCH_PREFIX")

    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    claude_default_model: str | None = Field(default=None, validation_alias="CLAUDE_DEFAULT_MODEL")
    permission_mode: str = Field(default="acceptEdits", validation_alias="CLAUDE_PERMISSION_MODE")

    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    # path-separated string in the environment, not JSON
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="KESTREL_PROFILE_PATHS"
    )
    profile_id: str = Field(default="generalist", validation_alias="KESTREL_PROFILE_ID")
    agent_config_path: Path | None = Field(default=None, validation_alias="KESTREL_AGENT_CONFIG")

    telegram_bot_token: str | None = Field(default=None, validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str | None = Field(default=None, validation_alias="TELEGRAM_CHAT_ID")

    zombie_policy: Literal["finalize", "error"] = Field(
        default="finalize", validation_alias="KESTREL_ZOMBIE_POLICY"
    )
    log_level: str = Field(default="INFO", validation_alias="KESTREL_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "KESTREL_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("KESTREL_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("branch_prefix")
    @classmethod
    def _normalize_branch_prefix(cls, value: str) -> str:
        value = value.strip()
        if value and not value.endswith("/"):
            value += "/"
        return value

    @field_validator(
        "telegram_bot_token", "telegram_chat_id", "worktree_base", "agent_config_path", mode="before"
    )
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def resolved_worktree_base(self) -> Path:
        """Directory holding one worktree per session, a sibling of the repo by default."""

        if self.worktree_base is not None:
            return self.worktree_base
        repo = self.repo_root.expanduser().resolve()
        return repo.parent / f"{repo.name}-worktrees"


@lru_cache(maxsize=1)
def get_settings() -> KestrelSettings:
    """Return cached settings instance."""

    settings = KestrelSettings()
    settings.repo_root = settings.repo_root.expanduser().resolve()
    settings.worktree_base = settings.resolved_worktree_base().expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    if settings.agent_config_path is not None:
        settings.agent_config_path = settings.agent_config_path.expanduser().resolve()
    return settings


__all__ = ["KestrelSettings", "get_settings"]
