"""Claude CLI session orchestration utilities."""

from .runner import (
    AgentSession,
    ClaudeExecutionResult,
    ClaudeNotFoundError,
    ClaudeRunner,
    ClaudeRunnerError,
    ClaudeSession,
    FakeClaudeRunner,
    FakeClaudeSession,
    SessionPhase,
)
from .stream import ProgressEvent, SessionEvent, SessionExited, SessionFailed, StreamParser, TurnResult

__all__ = [
    "AgentSession",
    "ClaudeExecutionResult",
    "ClaudeNotFoundError",
    "ClaudeRunner",
    "ClaudeRunnerError",
    "ClaudeSession",
    "FakeClaudeRunner",
    "FakeClaudeSession",
    "ProgressEvent",
    "SessionEvent",
    "SessionExited",
    "SessionFailed",
    "SessionPhase",
    "StreamParser",
    "TurnResult",
]
