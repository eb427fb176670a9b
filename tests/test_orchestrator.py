from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any

import pytest

from kestrel_mcp.background import BackgroundTasks
from kestrel_mcp.claude import (
    ClaudeRunnerError,
    FakeClaudeRunner,
    FakeClaudeSession,
    ProgressEvent,
    SessionFailed,
    TurnResult,
)
from kestrel_mcp.lifecycle import LifecycleRecorder
from kestrel_mcp.notifications import NotificationBridge
from kestrel_mcp.orchestrator import SessionOrchestrator
from kestrel_mcp.storage import MemoryRecordStore
from kestrel_mcp.worktree import DiffStats, MergeConflictError, WorktreeError, WorktreeInfo


class FakeWorktrees:
    def __init__(self, base: Path, *, fail_cleanup: bool = False) -> None:
        self.base = base
        self.repo_root = base.parent / "repo"
        self.fail_cleanup = fail_cleanup
        self.merge_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.created: list[tuple[str, str]] = []
        self.cleaned: list[tuple[str, str]] = []
        self.merged: list[str] = []

    def path_for(self, session_id: str) -> Path:
        return self.base / session_id

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    async def create(self, branch_name: str, session_id: str) -> WorktreeInfo:
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        path = self.path_for(session_id)
        if path.exists():
            raise WorktreeError(f"Worktree already exists at {path}")
        path.mkdir(parents=True)
        self.created.append((branch_name, session_id))
        return WorktreeInfo(path=path, branch_name=branch_name)

    async def cleanup(self, path, branch_name: str) -> None:
        self.cleaned.append((str(path), branch_name))
        if self.fail_cleanup:
            raise RuntimeError("disk on fire")
        shutil.rmtree(path, ignore_errors=True)

    async def merge(self, path, branch_name: str) -> None:
        if self.merge_error is not None:
            raise self.merge_error
        self.merged.append(branch_name)
        await self.cleanup(path, branch_name)

    async def stats(self, path) -> DiffStats:
        return DiffStats(files_changed=2, insertions=10, deletions=1, summary="2 files changed")

    async def changed_files(self, path) -> list[str]:
        return ["src/app.py", "tests/test_app.py"]

    async def log(self, path) -> str:
        return "abc1234 Fix login redirect\n"


class RecordingChannel:
    def __init__(self) -> None:
        self.sent: list[tuple[str, Any]] = []
        self.edits: list[tuple[str, str, Any]] = []

    async def send(self, text, keyboard=None):
        self.sent.append((text, keyboard))
        return f"m{len(self.sent)}"

    async def edit(self, message_id, text, keyboard=None):
        self.edits.append((message_id, text, keyboard))
        return message_id

    @property
    def last_text(self) -> str:
        if self.edits:
            return self.edits[-1][1]
        return self.sent[-1][0]


class StubJournal:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def record_event(self, *, session_id, event_type, body, metadata=None):
        self.events.append((session_id, event_type))


class Harness:
    def __init__(self, tmp_path: Path, **kwargs: Any) -> None:
        self.runner = kwargs.pop("runner", None) or FakeClaudeRunner()
        self.worktrees = FakeWorktrees(tmp_path / "worktrees", fail_cleanup=kwargs.pop("fail_cleanup", False))
        self.store = MemoryRecordStore()
        self.channel = RecordingChannel()
        self.journal = StubJournal()
        tasks = BackgroundTasks()
        self.orchestrator = SessionOrchestrator(
            runner=self.runner,
            worktrees=self.worktrees,  # type: ignore[arg-type]
            recorder=LifecycleRecorder(self.store, journal=self.journal, tasks=tasks),  # type: ignore[arg-type]
            bridge=NotificationBridge(self.channel, tasks=tasks),
            **kwargs,
        )

    def record(self, record_id: str):
        return self.store.get_record(record_id)

    def journaled(self, session_id: str) -> list[str]:
        return [event_type for sid, event_type in self.journal.events if sid == session_id]


def _turn(turns: int, cost: float | None, text: str = "Done for now") -> TurnResult:
    return TurnResult(turns=turns, cost_usd=cost, duration_ms=10, text=text)


def test_start_creates_workspace_and_confirms(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        result = await harness.orchestrator.start("s1", "Fix login", "kestrel/fix-login", "Auth lives in src/auth")
        await harness.orchestrator.settle()
        return result

    result = asyncio.run(scenario())

    assert result.ok
    assert result.to_dict()["worktreePath"] == str(harness.worktrees.path_for("s1"))
    start = harness.runner.starts[0]
    assert start["task"] == "Fix login"
    assert "## Additional Context\nAuth lives in src/auth" in start["system_prompt"]
    record = harness.record("s1")
    assert record.status == "confirmed"
    assert record.state == "running"
    assert record.data["branchName"] == "kestrel/fix-login"
    assert harness.channel.sent[0][0].startswith("\U0001F7E1 Coding: Running")
    assert harness.journaled("s1") == ["session_start"]


def test_start_rejects_missing_fields(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    result = asyncio.run(harness.orchestrator.start("s1", "", "kestrel/x"))

    assert result.to_dict() == {
        "status": "error",
        "error": "Missing required fields: sessionId, task, or branchName",
    }
    assert harness.runner.starts == []


def test_concurrent_starts_admit_one_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        results = await asyncio.gather(
            harness.orchestrator.start("s1", "task", "kestrel/a"),
            harness.orchestrator.start("s1", "task", "kestrel/a"),
        )
        again = await harness.orchestrator.start("s1", "task", "kestrel/b")
        await harness.orchestrator.settle()
        return results, again

    results, again = asyncio.run(scenario())

    assert sorted(result.status for result in results) == ["confirmed", "error"]
    assert not again.ok
    assert "already active" in again.error
    assert len(harness.runner.starts) == 1
    assert len(harness.worktrees.created) == 1


def test_worktree_failure_releases_the_slot(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.worktrees.path_for("s1").mkdir(parents=True)

    async def scenario():
        first = await harness.orchestrator.start("s1", "task", "kestrel/a")
        return first, "s1" in harness.orchestrator.registry

    result, still_registered = asyncio.run(scenario())

    assert result.error.startswith("Failed to create worktree: Worktree already exists")
    assert not still_registered


def test_runner_failure_discards_workspace(tmp_path: Path) -> None:
    harness = Harness(tmp_path, runner=FakeClaudeRunner(failures=[ClaudeRunnerError("spawn failed")]))

    result = asyncio.run(harness.orchestrator.start("s1", "task", "kestrel/a"))

    assert result.error == "Failed to start session: spawn failed"
    assert harness.worktrees.cleaned == [(str(harness.worktrees.path_for("s1")), "kestrel/a")]
    assert "s1" not in harness.orchestrator.registry
    assert harness.record("s1") is None


def test_missing_runner_reports_unavailable(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.orchestrator._runner = None

    result = asyncio.run(harness.orchestrator.start("s1", "task", "kestrel/a"))

    assert result.error == "Failed to start session: Claude CLI is unavailable"


def test_cumulative_metrics_end_at_final_values(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    turns = [1, 3, 3, 7]
    costs = [0.1, 0.4, 0.4, 1.2]

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        session = harness.runner.sessions["s1"]
        for index, (turn, cost) in enumerate(zip(turns, costs)):
            session.emit(_turn(turn, cost, text=f"answer {index}"))
            await harness.orchestrator.settle()
            if index < len(turns) - 1:
                assert (await harness.orchestrator.respond("s1", f"reply {index}")).ok
                await harness.orchestrator.settle()
        return session

    session = asyncio.run(scenario())

    record = harness.record("s1")
    assert record.data["totalTurns"] == 7
    assert record.data["totalCostUsd"] == pytest.approx(1.2)
    assert record.state == "waiting"
    assert record.data["lastMessage"] == "answer 3"
    assert session.messages == ["task", "reply 0", "reply 1", "reply 2"]
    assert "Turns: 7 · Cost: $1.20" in harness.channel.last_text


def test_missing_cost_keeps_previous_value(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        session = harness.runner.sessions["s1"]
        session.emit(_turn(1, 0.25))
        await harness.orchestrator.settle()
        await harness.orchestrator.respond("s1", "more")
        session.emit(_turn(2, None))
        await harness.orchestrator.settle()

    asyncio.run(scenario())

    assert harness.record("s1").data["totalTurns"] == 2
    assert harness.record("s1").data["totalCostUsd"] == pytest.approx(0.25)


def test_respond_validation(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        missing = await harness.orchestrator.respond("s1", "")
        unknown = await harness.orchestrator.respond("nope", "hello")
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        busy = await harness.orchestrator.respond("s1", "hello")
        harness.runner.sessions["s1"].emit(_turn(1, 0.1))
        await harness.orchestrator.settle()
        harness.runner.sessions["s1"].close_input()
        closed = await harness.orchestrator.respond("s1", "hello")
        await harness.orchestrator.settle()
        return missing, unknown, busy, closed

    missing, unknown, busy, closed = asyncio.run(scenario())

    assert missing.error == "Missing sessionId or message"
    assert unknown.error == "No active session found"
    assert busy.error == "Session is running, not waiting for input"
    assert closed.error == "Session input is closed"


def test_dismissed_record_is_not_revived(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        await harness.orchestrator.settle()
        await harness.orchestrator.recorder.set("s1", {"status": "dismissed"})
        session = harness.runner.sessions["s1"]
        session.emit(_turn(4, 0.5))
        session.exit(0)
        await harness.orchestrator.settle()

    asyncio.run(scenario())

    record = harness.record("s1")
    assert record.status == "dismissed"
    assert record.state == "running"
    assert record.data["totalTurns"] == 0
    assert "result" not in record.data


def test_full_lifecycle_through_approve(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    orchestrator = harness.orchestrator

    async def scenario():
        prepared = await orchestrator.prepare("Fix the login redirect", "See issue 12")
        ids = prepared.data
        started = await orchestrator.start(
            ids["sessionId"], "Fix the login redirect", ids["branchName"], "See issue 12", record_id=ids["recordId"]
        )
        session = harness.runner.sessions[ids["sessionId"]]
        session.emit(ProgressEvent(kind="thinking", text="Reading the handler"))
        session.emit(ProgressEvent(kind="tool_call", tool="Read", input="src/auth.py"))
        session.emit(_turn(2, 0.3, text="Should I keep the old route?"))
        await orchestrator.settle()
        waiting = harness.record(ids["recordId"])

        replied = await orchestrator.respond(ids["sessionId"], "No, remove it")
        finished = await orchestrator.finish(ids["sessionId"])
        session.emit(_turn(5, 0.9, text="Removed the old route"))
        session.exit(0)
        await orchestrator.settle()
        completed = harness.record(ids["recordId"])

        approved = await orchestrator.approve(
            completed.data["worktreePath"], completed.data["branchName"], record_id=ids["recordId"]
        )
        await orchestrator.settle()
        return prepared, started, waiting, replied, finished, session, completed, approved

    prepared, started, waiting, replied, finished, session, completed, approved = asyncio.run(scenario())

    session_id = prepared.data["sessionId"]
    assert prepared.data["branchName"] == f"kestrel/fix-the-login-redirect-{session_id[:6]}"
    assert started.ok
    assert waiting.state == "waiting"
    assert waiting.data["lastMessage"] == "Should I keep the old route?"
    assert replied.ok and finished.ok
    assert session.input_closed
    assert completed.state == "completed"
    assert completed.data["totalTurns"] == 5
    assert completed.data["result"]["changedFiles"] == ["src/app.py", "tests/test_app.py"]
    assert completed.data["result"]["stats"]["files_changed"] == 2
    assert approved.ok
    assert harness.record(session_id).state == "merged"
    assert harness.worktrees.merged == [prepared.data["branchName"]]
    assert session_id not in orchestrator.registry

    assert len(harness.channel.sent) == 1
    completed_message = [edit for edit in harness.channel.edits if "Completed" in edit[1]][-1]
    assert completed_message[1].endswith("Files changed: 2")
    callbacks = [b["callback_data"] for row in completed_message[2]["inline_keyboard"] for b in row]
    assert f"code:approve:{session_id}" in callbacks
    assert sorted(harness.journaled(session_id)) == sorted([
        "session_start",
        "progress_thinking",
        "progress_tool_call",
        "turn_result",
        "user_message",
        "turn_result",
        "session_completed",
    ])


def test_approve_requires_completed_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        early = await harness.orchestrator.approve(str(harness.worktrees.path_for("s1")), "kestrel/a", record_id="s1")
        missing = await harness.orchestrator.approve("", "kestrel/a")
        await harness.orchestrator.shutdown()
        return early, missing

    early, missing = asyncio.run(scenario())

    assert early.error == "Session is running, not completed"
    assert missing.error == "Missing worktreePath or branchName"
    assert harness.worktrees.merged == []


def test_merge_conflict_is_reported(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.worktrees.merge_error = MergeConflictError("Fast-forward merge failed; rebase the branch first")

    result = asyncio.run(harness.orchestrator.approve("/tmp/w", "kestrel/a"))

    assert result.to_dict() == {"status": "error", "error": "Fast-forward merge failed; rebase the branch first"}


def test_start_phase_failure_discards_workspace(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        harness.runner.sessions["s1"].exit(2)
        await harness.orchestrator.settle()

    asyncio.run(scenario())

    record = harness.record("s1")
    assert record.status == "error"
    assert record.state == "error"
    assert record.data["result"] == {"error": "Claude CLI exited with code 2"}
    assert record.result is None
    assert not harness.worktrees.exists("s1")
    assert "s1" not in harness.orchestrator.registry
    assert harness.channel.last_text.endswith("Error: Claude CLI exited with code 2")


def test_start_failure_records_error_when_cleanup_fails(tmp_path: Path) -> None:
    harness = Harness(tmp_path, fail_cleanup=True)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        harness.runner.sessions["s1"].emit(SessionFailed("Claude CLI exited with code 2"))
        await harness.orchestrator.settle()

    asyncio.run(scenario())

    record = harness.record("s1")
    assert record.status == "error"
    assert record.state == "error"
    assert record.data["result"] == {"error": "Claude CLI exited with code 2"}
    assert harness.worktrees.cleaned == [(str(harness.worktrees.path_for("s1")), "kestrel/a")]
    assert "s1" not in harness.orchestrator.registry


def test_error_result_fails_once(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        session = harness.runner.sessions["s1"]
        session.emit(SessionFailed("Credit balance too low"))
        await harness.orchestrator.settle()
        return session

    session = asyncio.run(scenario())

    assert session.killed
    assert harness.record("s1").data["result"] == {"error": "Credit balance too low"}
    assert harness.worktrees.cleaned == [(str(harness.worktrees.path_for("s1")), "kestrel/a")]
    assert harness.journaled("s1").count("session_failed") == 1


def test_resume_requires_existing_workspace(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        missing = await harness.orchestrator.resume("s1", "task", "/gone", "kestrel/a")
        invalid = await harness.orchestrator.resume("", "task", "/gone", "kestrel/a")
        return missing, invalid

    missing, invalid = asyncio.run(scenario())

    assert missing.error == "Worktree no longer exists on disk"
    assert invalid.error == "Missing required fields for resume"
    assert harness.runner.starts == []


def test_resume_continues_counters_and_keeps_workspace_on_failure(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "Fix login", "kestrel/a")
        first = harness.runner.sessions["s1"]
        first.emit(_turn(4, 0.8))
        await harness.orchestrator.finish("s1")
        first.exit(0)
        await harness.orchestrator.settle()

        path = harness.record("s1").data["worktreePath"]
        resumed = await harness.orchestrator.resume("s1", "Fix login", path, "kestrel/a", "Also add tests")
        await harness.orchestrator.settle()
        running = harness.record("s1")

        second = harness.runner.sessions["s1"]
        second.exit(1)
        await harness.orchestrator.settle()
        return resumed, running

    resumed, running = asyncio.run(scenario())

    assert resumed.ok
    restart = harness.runner.starts[-1]
    assert restart["task"].startswith("Continue working on: Fix login")
    assert "RESUME: This session is being resumed" in restart["system_prompt"]
    assert "Also add tests" in restart["system_prompt"]
    assert running.state == "running"
    assert running.data["totalTurns"] == 4
    record = harness.record("s1")
    assert record.status == "confirmed"
    assert record.state == "error"
    assert record.data["result"] == {"error": "Claude CLI exited with code 1"}
    assert harness.worktrees.exists("s1")


def test_stop_is_idempotent(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        await harness.orchestrator.settle()
        first = await harness.orchestrator.stop("s1")
        await harness.orchestrator.settle()
        second = await harness.orchestrator.stop("s1")
        await harness.orchestrator.settle()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.ok
    assert second.error == "No active session found"
    assert harness.runner.sessions["s1"].killed
    assert len(harness.worktrees.cleaned) == 1
    record = harness.record("s1")
    assert record.status == "confirmed"
    assert record.state == "stopped"


def test_stop_survives_cleanup_failure(tmp_path: Path) -> None:
    harness = Harness(tmp_path, fail_cleanup=True)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        result = await harness.orchestrator.stop("s1")
        await harness.orchestrator.settle()
        rejected = await harness.orchestrator.reject("/tmp/other", "kestrel/b")
        return result, rejected

    result, rejected = asyncio.run(scenario())

    assert result.ok
    assert rejected.ok
    assert harness.record("s1").state == "stopped"


def test_stop_during_launch_wins(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.worktrees.gate = asyncio.Event()

    async def scenario():
        start = asyncio.create_task(harness.orchestrator.start("s1", "task", "kestrel/a"))
        await asyncio.sleep(0)
        stopped = await harness.orchestrator.stop("s1")
        harness.worktrees.gate.set()
        started = await start
        await harness.orchestrator.settle()
        return stopped, started

    stopped, started = asyncio.run(scenario())

    assert stopped.ok
    assert started.error == "Session was stopped before it started"
    assert harness.runner.sessions["s1"].killed
    assert not harness.worktrees.exists("s1")
    assert "s1" not in harness.orchestrator.registry


def test_stop_while_recording_activation_wins(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        start = asyncio.create_task(harness.orchestrator.start("s1", "task", "kestrel/a"))
        while not isinstance(harness.orchestrator.registry.get("s1"), FakeClaudeSession):
            await asyncio.sleep(0)
        stopped = await harness.orchestrator.stop("s1")
        started = await start
        await harness.orchestrator.settle()
        return stopped, started, await harness.orchestrator.reconcile_zombies()

    stopped, started, reconciled = asyncio.run(scenario())

    assert stopped.ok
    assert started.error == "Session was stopped before it started"
    assert harness.runner.sessions["s1"].killed
    assert not harness.worktrees.exists("s1")
    assert harness.record("s1").state == "stopped"
    assert reconciled == []
    assert "session_start" not in harness.journaled("s1")


def test_queued_result_after_stop_keeps_stopped(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        harness.runner.sessions["s1"].emit(_turn(1, 0.05, "Which file?"))
        stopped = await harness.orchestrator.stop("s1")
        await harness.orchestrator.settle()
        return stopped

    assert asyncio.run(scenario()).ok

    record = harness.record("s1")
    assert record.state == "stopped"
    assert record.data["totalTurns"] == 0
    assert record.data["lastMessage"] is None
    assert "turn_result" not in harness.journaled("s1")


def test_reject_marks_record(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        harness.runner.sessions["s1"].exit(0)
        await harness.orchestrator.settle()
        return await harness.orchestrator.handle_callback("code:reject:s1")

    result = asyncio.run(scenario())

    assert result.ok
    assert harness.record("s1").state == "rejected"
    assert not harness.worktrees.exists("s1")


def test_reject_after_merge_keeps_merged(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        harness.runner.sessions["s1"].exit(0)
        await harness.orchestrator.settle()
        path = harness.record("s1").data["worktreePath"]
        approved = await harness.orchestrator.approve(path, "kestrel/a", record_id="s1")
        rejected = await harness.orchestrator.reject(path, "kestrel/a", record_id="s1")
        await harness.orchestrator.settle()
        return approved, rejected

    approved, rejected = asyncio.run(scenario())

    assert approved.ok
    assert rejected.error == "Session is merged, not completed"
    assert harness.record("s1").state == "merged"
    assert harness.worktrees.merged == ["kestrel/a"]
    assert len(harness.worktrees.cleaned) == 1


def test_reject_records_rejection_when_cleanup_fails(tmp_path: Path) -> None:
    harness = Harness(tmp_path, fail_cleanup=True)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        harness.runner.sessions["s1"].exit(0)
        await harness.orchestrator.settle()
        path = harness.record("s1").data["worktreePath"]
        return await harness.orchestrator.reject(path, "kestrel/a", record_id="s1")

    result = asyncio.run(scenario())

    assert result.ok
    assert harness.worktrees.cleaned == [(str(harness.worktrees.path_for("s1")), "kestrel/a")]
    assert harness.record("s1").state == "rejected"


def test_dispatch_validation(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        return (
            await harness.orchestrator.dispatch("code:start", {}),
            await harness.orchestrator.dispatch("code:launch", {}),
            await harness.orchestrator.dispatch("code:respond", {"sessionId": "s1", "totalTurns": "many"}),
            await harness.orchestrator.handle_callback("code:stop:unknown"),
            await harness.orchestrator.handle_callback("garbage"),
            await harness.orchestrator.handle_reply("m404", "hello"),
        )

    start, unknown, invalid, no_record, garbage, stray_reply = asyncio.run(scenario())

    assert start.error == "Missing required fields: sessionId, task, or branchName"
    assert unknown.error == "Unknown handler 'code:launch'"
    assert invalid.error.startswith("Invalid payload")
    assert no_record.error == "Session record not found"
    assert garbage.error == "Unrecognised callback 'garbage'"
    assert stray_reply.error == "Message does not belong to a coding session"


def test_reply_to_status_message_reaches_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.dispatch(
            "code:start", {"sessionId": "s1", "task": "task", "branchName": "kestrel/a"}
        )
        harness.runner.sessions["s1"].emit(_turn(1, 0.1, text="Which port?"))
        await harness.orchestrator.settle()
        message_id = harness.orchestrator.bridge.message_id_for("s1")
        result = await harness.orchestrator.handle_reply(message_id, "8080")
        await harness.orchestrator.settle()
        return result

    result = asyncio.run(scenario())

    assert result.ok
    assert harness.runner.sessions["s1"].messages[-1] == "8080"
    assert harness.record("s1").state == "running"


def _claim_live_session(harness: Harness, session_id: str, state: str, **extra: Any) -> None:
    data = {
        "sessionId": session_id,
        "task": "Fix login",
        "branchName": "kestrel/a",
        "state": state,
        "worktreePath": str(harness.worktrees.path_for(session_id)),
        **extra,
    }
    harness.store.set_record(session_id, {"status": "confirmed", "data": data})


def test_reconcile_zombies(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.worktrees.path_for("alive").mkdir(parents=True)
    _claim_live_session(harness, "alive", "waiting", totalTurns=3, totalCostUsd=0.5)
    _claim_live_session(harness, "gone", "running", totalTurns=1)
    _claim_live_session(harness, "done", "completed")

    async def scenario():
        outcomes = await harness.orchestrator.reconcile_zombies()
        await harness.orchestrator.settle()
        return outcomes

    outcomes = asyncio.run(scenario())

    assert {item["record_id"]: item["outcome"] for item in outcomes} == {"alive": "completed", "gone": "error"}
    alive = harness.record("alive")
    assert alive.state == "completed"
    assert alive.data["result"]["turns"] == 3
    assert alive.data["result"]["costUsd"] == pytest.approx(0.5)
    gone = harness.record("gone")
    assert gone.status == "confirmed"
    assert gone.state == "error"
    assert gone.data["result"] == {"error": "Session interrupted: the agent process is no longer running"}
    assert harness.record("done").state == "completed"
    assert harness.journaled("alive") == ["zombie_reconciled"]
    assert "Files changed: 2" in "\n".join(text for text, _ in harness.channel.sent)


def test_error_zombie_policy(tmp_path: Path) -> None:
    harness = Harness(tmp_path, zombie_policy="error")
    harness.worktrees.path_for("alive").mkdir(parents=True)
    _claim_live_session(harness, "alive", "running")

    async def scenario():
        outcomes = await harness.orchestrator.reconcile_zombies()
        await harness.orchestrator.settle()
        return outcomes

    outcomes = asyncio.run(scenario())

    assert outcomes[0]["outcome"] == "error"
    assert harness.record("alive").state == "error"


def test_shutdown_kills_live_sessions(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        await harness.orchestrator.start("s1", "task", "kestrel/a")
        await harness.orchestrator.start("s2", "task", "kestrel/b")
        await harness.orchestrator.shutdown()

    asyncio.run(scenario())

    assert all(session.killed for session in harness.runner.sessions.values())
    assert len(harness.orchestrator.registry) == 0
    assert harness.record("s1").state == "running"
