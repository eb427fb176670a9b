"""Limits and switches for autonomous plan-execute-review runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class AgentConfigError(RuntimeError):
    """Raised when the autonomous agent configuration file cannot be used."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PlanningConfig(_Section):
    auto_approve_minutes: float = Field(default=20, ge=0)
    max_planning_cost_usd: float = Field(default=5, gt=0)
    max_duration_minutes: float = Field(default=30, gt=0)


class ExecutionConfig(_Section):
    max_cost_usd: float = Field(default=20, gt=0)
    max_duration_minutes: float = Field(default=120, gt=0)
    max_retries: int = Field(default=3, ge=1)
    commit_strategy: Literal["incremental", "single"] = "incremental"


class ReviewConfig(_Section):
    max_rounds: int = Field(default=3, ge=1)
    max_duration_minutes: float = Field(default=15, gt=0)


class NotificationConfig(_Section):
    on_plan_ready: bool = True
    on_progress_milestones: bool = True
    on_complete: bool = True
    on_error: bool = True


class AgentConfig(_Section):
    """Per-phase cost and time ceilings. Omitted sections keep their defaults."""

    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)


def load_agent_config(path: Path | None) -> AgentConfig:
    """Read ``path`` (YAML) over the defaults; no path means defaults."""

    if path is None:
        return AgentConfig()
    try:
        document = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise AgentConfigError(f"{path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise AgentConfigError(f"{path}: invalid YAML ({exc})") from exc
    if document is None:
        return AgentConfig()
    try:
        config = AgentConfig.model_validate(document)
    except ValidationError as exc:
        raise AgentConfigError(f"{path}: {exc}") from exc
    logger.debug("Loaded agent config", extra={"path": str(path)})
    return config


__all__ = [
    "AgentConfig",
    "AgentConfigError",
    "ExecutionConfig",
    "NotificationConfig",
    "PlanningConfig",
    "ReviewConfig",
    "load_agent_config",
]
