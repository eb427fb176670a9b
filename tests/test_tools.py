from __future__ import annotations

import asyncio
import json
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from kestrel_mcp.autonomous import AgentConfig, AutonomousFlow
from kestrel_mcp.background import BackgroundTasks
from kestrel_mcp.claude import FakeClaudeRunner, TurnResult
from kestrel_mcp.lifecycle import LifecycleRecorder
from kestrel_mcp.notifications import NotificationBridge
from kestrel_mcp.orchestrator import SessionOrchestrator
from kestrel_mcp.storage import MemoryRecordStore
from kestrel_mcp.tools import register_tools
from kestrel_mcp.worktree import DiffStats, WorktreeInfo


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubWorktrees:
    def __init__(self, base: Path) -> None:
        self.base = base
        self.merged: list[str] = []

    def path_for(self, session_id: str) -> Path:
        return self.base / session_id

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    async def create(self, branch_name: str, session_id: str) -> WorktreeInfo:
        path = self.path_for(session_id)
        path.mkdir(parents=True)
        return WorktreeInfo(path=path, branch_name=branch_name)

    async def cleanup(self, path, branch_name: str) -> None:
        shutil.rmtree(path, ignore_errors=True)

    async def merge(self, path, branch_name: str) -> None:
        self.merged.append(branch_name)
        await self.cleanup(path, branch_name)

    async def stats(self, path) -> DiffStats:
        return DiffStats(files_changed=1, insertions=1)

    async def changed_files(self, path) -> list[str]:
        return ["README.md"]

    async def log(self, path) -> str:
        return "abc1234 Update readme\n"


class SilentChannel:
    async def send(self, text, keyboard=None):
        return "msg-1"

    async def edit(self, message_id, text, keyboard=None):
        return message_id


@dataclass
class StubEvent:
    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


class StubJournal:
    def __init__(self) -> None:
        self.events: list[StubEvent] = []

    def record_event(self, *, session_id: str, event_type: str, body: Any, metadata=None) -> StubEvent:
        event = StubEvent(
            id=f"{session_id}:{len(self.events) + 1}",
            session_id=session_id,
            event_type=event_type,
            document=body if isinstance(body, str) else json.dumps(body),
            metadata={**(metadata or {}), "sequence": len(self.events) + 1},
            timestamp=datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
        )
        self.events.append(event)
        return event

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[StubEvent]:
        filtered = [event for event in self.events if event.session_id == session_id]
        return filtered[:limit] if limit else filtered


def _register(tmp_path: Path, *, journal: StubJournal | None = None):
    runner = FakeClaudeRunner()
    tasks = BackgroundTasks()
    orchestrator = SessionOrchestrator(
        runner=runner,
        worktrees=StubWorktrees(tmp_path / "worktrees"),  # type: ignore[arg-type]
        recorder=LifecycleRecorder(MemoryRecordStore(), journal=journal, tasks=tasks),  # type: ignore[arg-type]
        bridge=NotificationBridge(SilentChannel(), tasks=tasks),
    )
    flow = AutonomousFlow(orchestrator, config=AgentConfig())
    handles = register_tools(
        StubServer(),  # type: ignore[arg-type]
        orchestrator=orchestrator,
        journal=journal,  # type: ignore[arg-type]
        flow=flow,
    )
    return handles, orchestrator, runner


def test_register_tools_exposes_every_action(tmp_path: Path) -> None:
    handles, _, _ = _register(tmp_path)

    names = {getattr(handles, field).name for field in handles.__dataclass_fields__}

    assert names == {
        "prepare_session",
        "start_session",
        "respond_session",
        "finish_session",
        "approve_session",
        "reject_session",
        "stop_session",
        "resume_session",
        "press_button",
        "reply_to_message",
        "session_status",
        "list_sessions",
        "session_events",
        "start_autonomous",
        "approve_plan",
    }


def test_session_round_trip_through_tools(tmp_path: Path) -> None:
    journal = StubJournal()
    handles, orchestrator, runner = _register(tmp_path, journal=journal)

    async def scenario():
        prepared = await handles.prepare_session.fn("Update the readme", context_notes="Keep it short")
        session_id = prepared["sessionId"]
        started = await handles.start_session.fn(
            session_id=session_id,
            task="Update the readme",
            branch_name=prepared["branchName"],
            context_notes="Keep it short",
            record_id=prepared["recordId"],
        )
        runner.sessions[session_id].emit(TurnResult(turns=1, cost_usd=0.05, duration_ms=5, text="Done?"))
        await orchestrator.settle()
        status = await handles.session_status.fn(prepared["recordId"])
        listed = await handles.list_sessions.fn(status="confirmed")
        finished = await handles.finish_session.fn(session_id)
        runner.sessions[session_id].exit(0)
        await orchestrator.settle()
        button = await handles.press_button.fn(f"code:approve:{prepared['recordId']}")
        await orchestrator.settle()
        final = await handles.session_status.fn(prepared["recordId"])
        return prepared, started, status, listed, finished, button, final

    prepared, started, status, listed, finished, button, final = asyncio.run(scenario())

    assert prepared["status"] == "confirmed"
    assert started["status"] == "confirmed"
    assert started["worktreePath"].endswith(prepared["sessionId"])
    assert status["mode"] == "waiting"
    assert status["live_phase"] == "waiting_for_input"
    assert listed[0]["total_cost_usd"] == pytest.approx(0.05)
    assert listed[0]["live"] is True
    assert finished == {"status": "confirmed"}
    assert button == {"status": "confirmed"}
    assert final["data"]["state"] == "merged"
    assert final["live_phase"] is None

    timeline = handles.session_events.fn(prepared["sessionId"])
    assert timeline["event_count"] == len(timeline["timeline"])
    assert "session_start" in [entry["event_type"] for entry in timeline["timeline"]]


def test_tool_errors_are_returned_not_raised(tmp_path: Path) -> None:
    handles, _, _ = _register(tmp_path)

    async def scenario():
        return (
            await handles.respond_session.fn("missing", "hello"),
            await handles.stop_session.fn("missing"),
            await handles.resume_session.fn("missing", "task", str(tmp_path / "gone"), "kestrel/x"),
            await handles.reply_to_message.fn("unknown", "hello"),
        )

    respond, stop, resume, reply = asyncio.run(scenario())

    assert respond == {"status": "error", "error": "No active session found"}
    assert stop == {"status": "error", "error": "No active session found"}
    assert resume == {"status": "error", "error": "Worktree no longer exists on disk"}
    assert reply["status"] == "error"


def test_session_status_unknown_record(tmp_path: Path) -> None:
    handles, _, _ = _register(tmp_path)

    with pytest.raises(ValueError):
        asyncio.run(handles.session_status.fn("nope"))


def test_session_events_requires_journal(tmp_path: Path) -> None:
    handles, _, _ = _register(tmp_path)

    with pytest.raises(RuntimeError, match="journal is unavailable"):
        handles.session_events.fn("s1")


def test_autonomous_tools_report_errors(tmp_path: Path) -> None:
    handles, _, _ = _register(tmp_path)

    async def scenario():
        return (
            await handles.start_autonomous.fn("  "),
            await handles.approve_plan.fn("missing"),
        )

    started, approved = asyncio.run(scenario())

    assert started == {"status": "error", "error": "Missing task"}
    assert approved == {"status": "error", "error": "No active autonomous session found"}
