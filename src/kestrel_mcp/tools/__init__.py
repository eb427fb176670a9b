"""Tool registration for Kestrel MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..autonomous import AutonomousFlow
from ..orchestrator import ActionResult, SessionOrchestrator
from ..storage import ChromaStore, derive_mode

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    prepare_session: Any
    start_session: Any
    respond_session: Any
    finish_session: Any
    approve_session: Any
    reject_session: Any
    stop_session: Any
    resume_session: Any
    press_button: Any
    reply_to_message: Any
    session_status: Any
    list_sessions: Any
    session_events: Any
    start_autonomous: Any
    approve_plan: Any


def register_tools(
    server: FastMCP,
    *,
    orchestrator: SessionOrchestrator,
    journal: ChromaStore | None = None,
    flow: AutonomousFlow | None = None,
) -> ToolHandles:
    """Register Kestrel's MCP tools on the server."""

    def _finish(action: str, result: ActionResult, context: Context | None, **extra: Any) -> dict[str, Any]:
        _emit_log(
            context,
            "info" if result.ok else "warning",
            f"{action} {result.status}",
            extra={"action": action, "error": result.error, **extra},
        )
        return result.to_dict()

    async def _prepare_session(
        task: str,
        context_notes: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a pending session record with a generated id and branch name."""

        result = await orchestrator.prepare(task, context_notes)
        return _finish("prepare", result, context)

    async def _start_session(
        session_id: str,
        task: str,
        branch_name: str,
        context_notes: str | None = None,
        record_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = await orchestrator.start(session_id, task, branch_name, context_notes, record_id=record_id)
        return _finish("start", result, context, session_id=session_id)

    async def _respond_session(
        session_id: str,
        message: str,
        record_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = await orchestrator.respond(session_id, message, record_id=record_id)
        return _finish("respond", result, context, session_id=session_id)

    async def _finish_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        result = await orchestrator.finish(session_id)
        return _finish("finish", result, context, session_id=session_id)

    async def _approve_session(
        worktree_path: str,
        branch_name: str,
        record_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = await orchestrator.approve(worktree_path, branch_name, record_id=record_id)
        return _finish("approve", result, context, branch=branch_name)

    async def _reject_session(
        worktree_path: str,
        branch_name: str,
        record_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = await orchestrator.reject(worktree_path, branch_name, record_id=record_id)
        return _finish("reject", result, context, branch=branch_name)

    async def _stop_session(
        session_id: str,
        worktree_path: str | None = None,
        branch_name: str | None = None,
        record_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = await orchestrator.stop(session_id, worktree_path, branch_name, record_id=record_id)
        return _finish("stop", result, context, session_id=session_id)

    async def _resume_session(
        session_id: str,
        task: str,
        worktree_path: str,
        branch_name: str,
        context_notes: str | None = None,
        record_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = await orchestrator.resume(
            session_id, task, worktree_path, branch_name, context_notes, record_id=record_id
        )
        return _finish("resume", result, context, session_id=session_id)

    async def _press_button(callback_data: str, context: Context | None = None) -> dict[str, Any]:
        result = await orchestrator.handle_callback(callback_data)
        return _finish("callback", result, context, callback_data=callback_data)

    async def _reply_to_message(message_id: str, text: str, context: Context | None = None) -> dict[str, Any]:
        result = await orchestrator.handle_reply(message_id, text)
        return _finish("reply", result, context, message_id=message_id)

    tool_prepare = server.tool(
        name="prepare_session",
        description=(
            "Create a pending coding-session record for a task. Returns the session id and "
            "the branch name to pass to start_session."
        ),
    )(_prepare_session)

    tool_start = server.tool(
        name="start_session",
        description=(
            "Create an isolated git worktree on a new branch and launch a Claude coding "
            "session in it. Fails if the session id is already active."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The agent edits files inside its own worktree only",
            }
        },
    )(_start_session)

    tool_respond = server.tool(
        name="respond_session",
        description="Send a follow-up message to a session that is waiting for input.",
    )(_respond_session)

    tool_finish = server.tool(
        name="finish_session",
        description="Close a session's input so it completes after the current turn.",
    )(_finish_session)

    tool_approve = server.tool(
        name="approve_session",
        description="Fast-forward merge a completed session's branch into the base branch and remove its worktree.",
    )(_approve_session)

    tool_reject = server.tool(
        name="reject_session",
        description="Discard a session's worktree and branch.",
    )(_reject_session)

    tool_stop = server.tool(
        name="stop_session",
        description="Kill a live session and discard its worktree.",
    )(_stop_session)

    tool_resume = server.tool(
        name="resume_session",
        description="Start a new Claude process in a session's surviving worktree to continue the task.",
    )(_resume_session)

    tool_press = server.tool(
        name="press_button",
        description="Run the action behind a status-message button (code:<action>:<record id>).",
    )(_press_button)

    tool_reply = server.tool(
        name="reply_to_message",
        description="Route a reply to a session status message into that session.",
    )(_reply_to_message)

    async def _session_status(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the stored record for a session plus its live phase."""

        record = await orchestrator.recorder.get(record_id)
        if record is None:
            raise ValueError(f"Session record '{record_id}' not found")
        session_id = record.data.get("sessionId") or record.id
        handle = orchestrator.registry.get(session_id)
        _emit_log(context, "debug", "Session status", extra={"record_id": record_id})
        return {
            **record.to_dict(),
            "mode": derive_mode(record.status, record.data),
            "live_phase": handle.phase if handle else None,
        }

    async def _list_sessions(status: str | None = None, context: Context | None = None) -> list[dict[str, Any]]:
        records = await orchestrator.recorder.list_records(status=status)
        catalog = [
            {
                "record_id": record.id,
                "session_id": record.data.get("sessionId"),
                "task": record.data.get("task"),
                "branch_name": record.data.get("branchName"),
                "status": record.status,
                "state": record.state,
                "mode": derive_mode(record.status, record.data),
                "total_turns": record.data.get("totalTurns", 0),
                "total_cost_usd": record.data.get("totalCostUsd"),
                "live": record.data.get("sessionId") in orchestrator.registry,
            }
            for record in records
        ]
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(catalog)})
        return catalog

    def _session_events(session_id: str, limit: int | None = None, context: Context | None = None) -> dict[str, Any]:
        if journal is None:
            raise RuntimeError("Event journal is unavailable; enable Chroma persistence to use this tool")
        events = journal.fetch_session_events(session_id, limit=limit)
        timeline = [
            {
                "sequence": event.metadata.get("sequence"),
                "event_type": event.event_type,
                "timestamp": event.timestamp.isoformat(),
                "excerpt": event.document[:200],
            }
            for event in events
        ]
        _emit_log(context, "debug", "Fetched session events", extra={"session_id": session_id, "count": len(timeline)})
        return {"session_id": session_id, "event_count": len(timeline), "timeline": timeline}

    tool_status = server.tool(
        name="session_status",
        description="Fetch the lifecycle record, derived mode and live phase of a session.",
    )(_session_status)

    tool_list = server.tool(
        name="list_sessions",
        description="List coding-session records, optionally filtered by record status.",
    )(_list_sessions)

    tool_events = server.tool(
        name="session_events",
        description="Show the journaled progress, turn and lifecycle events of a session.",
    )(_session_events)

    async def _start_autonomous(
        task: str,
        context_notes: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Plan, execute, open a PR and self-review without further input."""

        if flow is None:
            result = ActionResult.failed("Autonomous sessions are unavailable")
        else:
            result = await flow.start(task, context_notes)
        return _finish("autonomous", result, context, session_id=result.data.get("sessionId"))

    async def _approve_plan(session_id: str, context: Context | None = None) -> dict[str, Any]:
        if flow is None:
            result = ActionResult.failed("Autonomous sessions are unavailable")
        else:
            result = await flow.approve_plan(session_id)
        return _finish("approve-plan", result, context, session_id=session_id)

    tool_autonomous = server.tool(
        name="start_autonomous",
        description=(
            "Start an autonomous session: Claude plans in a new worktree, waits for plan approval "
            "(or the auto-approve timer), executes, opens a pull request and reviews it."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Runs with permission prompts disabled inside its own worktree and pushes a branch",
            }
        },
    )(_start_autonomous)

    tool_approve_plan = server.tool(
        name="approve_plan",
        description="Approve the plan of an autonomous session that is waiting in plan-ready.",
    )(_approve_plan)

    return ToolHandles(
        prepare_session=tool_prepare,
        start_session=tool_start,
        respond_session=tool_respond,
        finish_session=tool_finish,
        approve_session=tool_approve,
        reject_session=tool_reject,
        stop_session=tool_stop,
        resume_session=tool_resume,
        press_button=tool_press,
        reply_to_message=tool_reply,
        session_status=tool_status,
        list_sessions=tool_list,
        session_events=tool_events,
        start_autonomous=tool_autonomous,
        approve_plan=tool_approve_plan,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
