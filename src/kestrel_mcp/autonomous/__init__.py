"""Autonomous plan, execute and review runs."""

from .config import (
    AgentConfig,
    AgentConfigError,
    ExecutionConfig,
    NotificationConfig,
    PlanningConfig,
    ReviewConfig,
    load_agent_config,
)
from .flow import AutonomousFlow, AutonomousRun, PhaseOutcome, parse_review

__all__ = [
    "AgentConfig",
    "AgentConfigError",
    "AutonomousFlow",
    "AutonomousRun",
    "ExecutionConfig",
    "NotificationConfig",
    "PhaseOutcome",
    "PlanningConfig",
    "ReviewConfig",
    "load_agent_config",
    "parse_review",
]
