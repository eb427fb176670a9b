"""Data models for durable session lifecycle records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RecordStatus = Literal["pending", "confirmed", "error", "dismissed"]
SessionState = Literal[
    "running",
    "waiting",
    "planning",
    "plan-ready",
    "executing",
    "reviewing",
    "fixing",
    "completed",
    "merged",
    "rejected",
    "stopped",
    "error",
]
SessionMode = Literal["pending", "running", "waiting", "completed", "error"]

AUTONOMOUS_STATES: frozenset[str] = frozenset({"planning", "plan-ready", "executing", "reviewing", "fixing"})
ACTIVE_STATES: frozenset[str] = frozenset({"running", "waiting"}) | AUTONOMOUS_STATES
FINAL_STATES: frozenset[str] = frozenset({"merged", "rejected", "stopped", "error"})


@dataclass(slots=True)
class LifecycleRecord:
    """A session's durable representation: outer status plus free-form payload."""

    id: str
    status: str
    data: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    updated_at: datetime | None = None

    @property
    def state(self) -> str | None:
        return self.data.get("state")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "data": self.data,
            "result": self.result,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class SessionPayload(BaseModel):
    """Typed view over a session record's payload and over action payloads.

    Field aliases match the stored camelCase JSON shape.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    session_id: str | None = Field(default=None, alias="sessionId")
    task: str | None = None
    context: str | None = None
    branch_name: str | None = Field(default=None, alias="branchName")
    worktree_path: str | None = Field(default=None, alias="worktreePath")
    state: SessionState | None = None
    message: str | None = None
    last_message: str | None = Field(default=None, alias="lastMessage")
    total_turns: int = Field(default=0, alias="totalTurns")
    total_cost_usd: float | None = Field(default=None, alias="totalCostUsd")
    result: dict[str, Any] | None = None
    autonomous: bool = False
    plan: str | None = None
    pr_url: str | None = Field(default=None, alias="prUrl")


def derive_mode(status: str, data: dict[str, Any]) -> SessionMode:
    """Collapse a record's status and state into the mode shown in list views."""

    if status in {"error", "dismissed"}:
        return "error"
    if status != "confirmed":
        return "pending"

    state = data.get("state")
    if state == "error":
        return "error"
    if state in {"waiting", "running"}:
        return state
    if state == "plan-ready":
        return "waiting"
    if state in AUTONOMOUS_STATES:
        return "running"
    if state in {"completed", "merged", "rejected", "stopped"}:
        return "completed"
    return "completed" if data.get("result") else "running"


__all__ = [
    "ACTIVE_STATES",
    "AUTONOMOUS_STATES",
    "FINAL_STATES",
    "LifecycleRecord",
    "RecordStatus",
    "SessionMode",
    "SessionPayload",
    "SessionState",
    "derive_mode",
]
