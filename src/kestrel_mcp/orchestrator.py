"""Coding-session orchestration.

A session moves through three representations that are updated
independently: the live handle in the :class:`SessionRegistry`, the durable
lifecycle record, and the status message kept by the
:class:`NotificationBridge`. The orchestrator owns every transition between
them. Process events arrive on each handle's event channel and are consumed
by one driver task per session; user actions arrive through the public
coroutine methods or :meth:`SessionOrchestrator.dispatch`.

Record writes triggered by process events go through
:meth:`LifecycleRecorder.update_if_active`, so a record that was dismissed or
reached a final state in the meantime is never brought back. Notification and journal
writes are fire-and-forget.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal
from uuid import uuid4

from pydantic import ValidationError

from .claude import (
    AgentSession,
    ClaudeRunner,
    ClaudeRunnerError,
    ProgressEvent,
    SessionExited,
    SessionFailed,
    TurnResult,
)
from .lifecycle import LifecycleRecorder
from .notifications import NotificationBridge, format_session_status, parse_callback_data, session_keyboard
from .notifications.format import NotifyState
from .profiles import (
    DEFAULT_PROFILE,
    CodingProfile,
    build_code_prompt,
    build_resume_context,
    build_resume_task,
    slugify_task,
)
from .registry import PendingSession, SessionAlreadyActiveError, SessionRegistry
from .storage import LifecycleRecord, SessionPayload
from .worktree import DiffStats, MergeConflictError, WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)

ZombiePolicy = Literal["finalize", "error"]


@dataclass(slots=True)
class ActionResult:
    """Outcome of a user action: ``confirmed`` or ``error`` with a message."""

    status: Literal["confirmed", "error"]
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "confirmed"

    @classmethod
    def confirmed(cls, **data: Any) -> "ActionResult":
        return cls(status="confirmed", data=data)

    @classmethod
    def failed(cls, error: str) -> "ActionResult":
        return cls(status="error", error=error)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.error is not None:
            payload["error"] = self.error
        if self.data:
            payload.update(self.data)
        return payload


Action = Callable[[SessionPayload, str | None], Awaitable[ActionResult]]


@dataclass(slots=True)
class _LiveSession:
    session_id: str
    record_id: str
    task: str
    branch_name: str
    workspace_path: Path
    handle: AgentSession
    keep_workspace_on_error: bool
    total_turns: int = 0
    total_cost_usd: float | None = None
    failed: bool = False


class SessionOrchestrator:
    """Start, supervise, resume and tear down coding sessions."""

    def __init__(
        self,
        *,
        runner: ClaudeRunner | None,
        worktrees: WorktreeManager,
        recorder: LifecycleRecorder,
        bridge: NotificationBridge,
        registry: SessionRegistry | None = None,
        profile: CodingProfile | None = None,
        base_branch: str = "main",
        branch_prefix: str = "kestrel/",
        zombie_policy: ZombiePolicy = "finalize",
    ) -> None:
        self._runner = runner
        self._worktrees = worktrees
        self._recorder = recorder
        self._bridge = bridge
        self._registry = registry or SessionRegistry()
        self._profile = profile or DEFAULT_PROFILE
        self._base_branch = base_branch
        self._branch_prefix = branch_prefix
        self._zombie_policy = zombie_policy
        self._live: dict[str, _LiveSession] = {}
        self._drivers: dict[str, asyncio.Task[None]] = {}
        self._extra_actions: dict[str, Action] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def recorder(self) -> LifecycleRecorder:
        return self._recorder

    @property
    def bridge(self) -> NotificationBridge:
        return self._bridge

    @property
    def runner(self) -> ClaudeRunner | None:
        return self._runner

    @property
    def worktrees(self) -> WorktreeManager:
        return self._worktrees

    @property
    def profile(self) -> CodingProfile:
        return self._profile

    def branch_name_for(self, task: str, session_id: str) -> str:
        slug = slugify_task(task) or "session"
        return f"{self._branch_prefix}{slug}-{session_id[:6]}"

    def add_handler(self, handler: str, action: Action) -> None:
        """Route ``handler`` through :meth:`dispatch` to ``action``."""

        self._extra_actions[handler] = action

    def live_summary(self) -> list[dict[str, Any]]:
        summary = []
        for session_id in self._registry.active_ids():
            handle = self._registry.get(session_id)
            live = self._live.get(session_id)
            summary.append(
                {
                    "session_id": session_id,
                    "phase": handle.phase if handle else None,
                    "pending": isinstance(handle, PendingSession),
                    "record_id": live.record_id if live else None,
                    "total_turns": live.total_turns if live else 0,
                    "total_cost_usd": live.total_cost_usd if live else None,
                }
            )
        return summary

    # ------------------------------------------------------------------
    # Notifications

    def _notify(
        self,
        session_id: str,
        record_id: str,
        state: NotifyState,
        task: str,
        total_turns: int,
        total_cost_usd: float | None,
        **extra: Any,
    ) -> None:
        self._bridge.notify(
            session_id,
            format_session_status(state, task, total_turns, total_cost_usd, **extra),
            session_keyboard(state, record_id),
        )

    async def discard_workspace(self, path: Path | str, branch_name: str) -> None:
        try:
            await self._worktrees.cleanup(path, branch_name)
        except Exception:
            logger.warning(
                "Workspace cleanup failed",
                extra={"path": str(path), "branch": branch_name},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Actions

    async def prepare(self, task: str, context: str | None = None) -> ActionResult:
        """Create a ``pending`` record with a fresh session id and branch name."""

        if not task or not task.strip():
            return ActionResult.failed("Missing task")

        session_id = uuid4().hex[:12]
        branch_name = self.branch_name_for(task, session_id)
        await self._recorder.set(
            session_id,
            {
                "status": "pending",
                "data": {
                    "sessionId": session_id,
                    "task": task,
                    "context": context,
                    "branchName": branch_name,
                },
            },
        )
        logger.info("Prepared session", extra={"session_id": session_id, "branch": branch_name})
        return ActionResult.confirmed(recordId=session_id, sessionId=session_id, branchName=branch_name)

    async def start(
        self,
        session_id: str,
        task: str,
        branch_name: str,
        context: str | None = None,
        *,
        record_id: str | None = None,
    ) -> ActionResult:
        if not session_id or not task or not branch_name:
            return ActionResult.failed("Missing required fields: sessionId, task, or branchName")

        try:
            placeholder = self._registry.reserve(session_id)
        except SessionAlreadyActiveError as exc:
            return ActionResult.failed(str(exc))

        try:
            info = await self._worktrees.create(branch_name, session_id)
        except WorktreeError as exc:
            self._registry.remove(session_id, placeholder)
            return ActionResult.failed(f"Failed to create worktree: {exc}")

        return await self._launch(
            placeholder,
            session_id=session_id,
            record_id=record_id or session_id,
            task=task,
            context=context,
            branch_name=info.branch_name,
            workspace_path=info.path,
            resume=False,
            total_turns=0,
            total_cost_usd=None,
        )

    async def resume(
        self,
        session_id: str,
        task: str,
        workspace_path: str | Path,
        branch_name: str,
        context: str | None = None,
        *,
        record_id: str | None = None,
    ) -> ActionResult:
        if not session_id or not task or not workspace_path:
            return ActionResult.failed("Missing required fields for resume")
        if not self._worktrees.exists(session_id):
            return ActionResult.failed("Worktree no longer exists on disk")

        try:
            placeholder = self._registry.reserve(session_id)
        except SessionAlreadyActiveError as exc:
            return ActionResult.failed(str(exc))

        record_id = record_id or session_id
        total_turns = 0
        total_cost_usd: float | None = None
        try:
            record = await self._recorder.get(record_id)
        except Exception as exc:
            self._registry.remove(session_id, placeholder)
            return ActionResult.failed(f"Failed to resume session: {exc}")
        if record is not None:
            payload = SessionPayload.model_validate(record.data)
            total_turns = payload.total_turns
            total_cost_usd = payload.total_cost_usd

        return await self._launch(
            placeholder,
            session_id=session_id,
            record_id=record_id,
            task=task,
            context=context,
            branch_name=branch_name,
            workspace_path=Path(workspace_path),
            resume=True,
            total_turns=total_turns,
            total_cost_usd=total_cost_usd,
        )

    async def _launch(
        self,
        placeholder: PendingSession,
        *,
        session_id: str,
        record_id: str,
        task: str,
        context: str | None,
        branch_name: str,
        workspace_path: Path,
        resume: bool,
        total_turns: int,
        total_cost_usd: float | None,
    ) -> ActionResult:
        verb = "resume" if resume else "start"

        async def abandon(message: str, handle: AgentSession | None = None) -> ActionResult:
            self._registry.remove(session_id, placeholder)
            if handle is not None:
                self._registry.remove(session_id, handle)
                handle.kill()
            # A stop during launch asks for the workspace to go as well.
            if not resume or placeholder.killed:
                await self.discard_workspace(workspace_path, branch_name)
            return ActionResult.failed(message)

        if self._runner is None:
            return await abandon(f"Failed to {verb} session: Claude CLI is unavailable")

        if resume:
            system_prompt = build_code_prompt(
                self._profile, task, build_resume_context(self._base_branch, context)
            )
            first_message = build_resume_task(task)
        else:
            system_prompt = build_code_prompt(self._profile, task, context)
            first_message = task

        try:
            handle = await self._runner.start(
                session_id=session_id,
                system_prompt=system_prompt,
                task=first_message,
                workspace_path=workspace_path,
                allowed_tools=self._profile.allowed_tools or None,
            )
        except (ClaudeRunnerError, OSError) as exc:
            return await abandon(f"Failed to {verb} session: {exc}")

        if not self._registry.commit(session_id, handle, placeholder):
            return await abandon("Session was stopped before it started", handle)

        live = _LiveSession(
            session_id=session_id,
            record_id=record_id,
            task=task,
            branch_name=branch_name,
            workspace_path=workspace_path,
            handle=handle,
            keep_workspace_on_error=resume,
            total_turns=total_turns,
            total_cost_usd=total_cost_usd,
        )
        # visible to stop() from here on, so it can discard the workspace
        self._live[session_id] = live

        try:
            record = await self._recorder.get(record_id)
            data = dict(record.data) if record else {}
            data.update(
                {
                    "sessionId": session_id,
                    "task": task,
                    "context": context,
                    "branchName": branch_name,
                    "worktreePath": str(workspace_path),
                    "state": "running",
                    "totalTurns": total_turns,
                    "totalCostUsd": total_cost_usd,
                    "lastMessage": None,
                }
            )
            await self._recorder.set(record_id, {"status": "confirmed", "data": data})
        except Exception as exc:
            logger.error(
                "Could not record session activation",
                extra={"session_id": session_id, "record_id": record_id},
                exc_info=True,
            )
            if self._live.get(session_id) is live:
                del self._live[session_id]
            return await abandon(f"Failed to {verb} session: {exc}", handle)

        if not self._registry.holds(session_id, handle):
            # stopped while the record was being written; stop() already
            # killed the process and discarded the workspace
            await self._recorder.update_if_active(record_id, {"state": "stopped"})
            return ActionResult.failed("Session was stopped before it started")

        self._drivers[session_id] = asyncio.create_task(self._drive(live))
        self._notify(session_id, record_id, "running", task, total_turns, total_cost_usd)
        self._recorder.journal(session_id, f"session_{verb}", {"task": task, "branch": branch_name})

        logger.info(
            "Session resumed" if resume else "Session started",
            extra={"session_id": session_id, "record_id": record_id, "path": str(workspace_path)},
        )
        return ActionResult.confirmed(
            sessionId=session_id,
            recordId=record_id,
            worktreePath=str(workspace_path),
            branchName=branch_name,
        )

    async def respond(self, session_id: str, message: str, *, record_id: str | None = None) -> ActionResult:
        if not session_id or not message:
            return ActionResult.failed("Missing sessionId or message")

        handle = self._registry.get(session_id)
        if handle is None:
            return ActionResult.failed("No active session found")
        if handle.phase != "waiting_for_input":
            return ActionResult.failed(f"Session is {handle.phase}, not waiting for input")

        if not await handle.send_message(message):
            return ActionResult.failed("Session input is closed")

        live = self._live.get(session_id)
        record_id = record_id or (live.record_id if live else session_id)
        try:
            await self._recorder.update_if_active(record_id, {"state": "running", "lastMessage": None})
        except Exception:
            logger.warning("Failed to record response", extra={"session_id": session_id}, exc_info=True)

        if live is not None:
            self._notify(session_id, record_id, "running", live.task, live.total_turns, live.total_cost_usd)
        self._recorder.journal(session_id, "user_message", {"message": message})
        return ActionResult.confirmed()

    async def finish(self, session_id: str) -> ActionResult:
        if not session_id:
            return ActionResult.failed("Missing sessionId")
        handle = self._registry.get(session_id)
        if handle is None:
            return ActionResult.failed("No active session found")
        handle.close_input()
        return ActionResult.confirmed()

    async def approve(
        self, workspace_path: str | Path, branch_name: str, *, record_id: str | None = None
    ) -> ActionResult:
        if not workspace_path or not branch_name:
            return ActionResult.failed("Missing worktreePath or branchName")

        if record_id:
            record = await self._recorder.get(record_id)
            if record is not None and record.state != "completed":
                return ActionResult.failed(f"Session is {record.state}, not completed")

        try:
            await self._worktrees.merge(workspace_path, branch_name)
        except MergeConflictError as exc:
            return ActionResult.failed(str(exc))
        except WorktreeError as exc:
            return ActionResult.failed(f"Merge failed: {exc}")

        if record_id:
            await self._recorder.update_if_active(record_id, {"state": "merged"}, from_states={"completed"})
        logger.info("Approved session branch", extra={"branch": branch_name, "record_id": record_id})
        return ActionResult.confirmed()

    async def reject(
        self, workspace_path: str | Path, branch_name: str, *, record_id: str | None = None
    ) -> ActionResult:
        if not workspace_path or not branch_name:
            return ActionResult.failed("Missing worktreePath or branchName")

        if record_id:
            record = await self._recorder.get(record_id)
            if record is not None and record.state != "completed":
                return ActionResult.failed(f"Session is {record.state}, not completed")

        await self.discard_workspace(workspace_path, branch_name)
        if record_id:
            try:
                await self._recorder.update_if_active(record_id, {"state": "rejected"}, from_states={"completed"})
            except Exception:
                logger.warning("Failed to record rejection", extra={"record_id": record_id}, exc_info=True)
        return ActionResult.confirmed()

    async def stop(
        self,
        session_id: str,
        workspace_path: str | Path | None = None,
        branch_name: str | None = None,
        *,
        record_id: str | None = None,
    ) -> ActionResult:
        if not session_id:
            return ActionResult.failed("Missing sessionId")

        handle = self._registry.remove(session_id)
        if handle is None:
            return ActionResult.failed("No active session found")
        handle.kill()

        live = self._live.pop(session_id, None)
        if live is not None:
            record_id = record_id or live.record_id
            workspace_path = workspace_path or live.workspace_path
            branch_name = branch_name or live.branch_name
        record_id = record_id or session_id

        if not (workspace_path and branch_name):
            try:
                record = await self._recorder.get(record_id)
            except Exception:
                logger.warning("Could not read record for stop", extra={"record_id": record_id}, exc_info=True)
                record = None
            if record is not None:
                workspace_path = workspace_path or record.data.get("worktreePath")
                branch_name = branch_name or record.data.get("branchName")

        if workspace_path and branch_name:
            await self.discard_workspace(workspace_path, branch_name)

        try:
            await self._recorder.update_if_active(record_id, {"state": "stopped"})
        except Exception:
            logger.warning("Failed to record stop", extra={"session_id": session_id}, exc_info=True)

        self._recorder.journal(session_id, "session_stopped", {"record_id": record_id})
        logger.info("Stopped session", extra={"session_id": session_id})
        return ActionResult.confirmed()

    # ------------------------------------------------------------------
    # Routing

    async def dispatch(self, handler: str, payload: dict[str, Any]) -> ActionResult:
        """Run ``handler`` (``code:start``, ``code:respond``, ...) with a raw payload."""

        actions: dict[str, Action] = {
            "code:start": lambda p, r: self.start(p.session_id or "", p.task or "", p.branch_name or "", p.context, record_id=r),
            "code:respond": lambda p, r: self.respond(p.session_id or "", p.message or "", record_id=r),
            "code:finish": lambda p, r: self.finish(p.session_id or ""),
            "code:approve": lambda p, r: self.approve(p.worktree_path or "", p.branch_name or "", record_id=r),
            "code:reject": lambda p, r: self.reject(p.worktree_path or "", p.branch_name or "", record_id=r),
            "code:stop": lambda p, r: self.stop(p.session_id or "", p.worktree_path, p.branch_name, record_id=r),
            "code:resume": lambda p, r: self.resume(
                p.session_id or "", p.task or "", p.worktree_path or "", p.branch_name or "", p.context, record_id=r
            ),
        }
        action = actions.get(handler) or self._extra_actions.get(handler)
        if action is None:
            return ActionResult.failed(f"Unknown handler '{handler}'")

        try:
            parsed = SessionPayload.model_validate(payload)
        except ValidationError as exc:
            return ActionResult.failed(f"Invalid payload: {exc.errors()[0].get('msg', exc)}")

        record_id = payload.get("recordId") or payload.get("_recordId")
        return await action(parsed, record_id)

    async def handle_callback(self, callback_data: str) -> ActionResult:
        """Route a ``code:<action>:<record id>`` button press."""

        parsed = parse_callback_data(callback_data)
        if parsed is None:
            return ActionResult.failed(f"Unrecognised callback '{callback_data}'")
        action, record_id = parsed

        record = await self._recorder.get(record_id)
        if record is None:
            return ActionResult.failed("Session record not found")
        return await self.dispatch(f"code:{action}", {**record.data, "recordId": record_id})

    async def handle_reply(self, message_id: str, text: str) -> ActionResult:
        """Route a reply to a status message into the session that owns it."""

        session_id = self._bridge.session_for_message(message_id)
        if session_id is None:
            return ActionResult.failed("Message does not belong to a coding session")
        return await self.respond(session_id, text)

    # ------------------------------------------------------------------
    # Event handling

    async def _drive(self, live: _LiveSession) -> None:
        try:
            async for event in live.handle.events():
                try:
                    if isinstance(event, ProgressEvent):
                        self._on_progress(live, event)
                    elif isinstance(event, TurnResult):
                        await self._on_result(live, event)
                    elif isinstance(event, SessionFailed):
                        await self._on_failure(live, event.message)
                    elif isinstance(event, SessionExited):
                        await self._on_exit(live, event)
                except Exception:
                    logger.error(
                        "Failed to handle session event",
                        extra={"session_id": live.session_id, "event_type": type(event).__name__},
                        exc_info=True,
                    )
        finally:
            if self._drivers.get(live.session_id) is asyncio.current_task():
                del self._drivers[live.session_id]

    def _on_progress(self, live: _LiveSession, event: ProgressEvent) -> None:
        logger.debug(
            "Session progress",
            extra={"session_id": live.session_id, "kind": event.kind, "tool": event.tool},
        )
        self._recorder.journal(
            live.session_id,
            f"progress_{event.kind}",
            {"text": (event.text or "")[:2000], "tool": event.tool, "input": event.input},
            {"kind": event.kind},
        )

    async def _on_result(self, live: _LiveSession, result: TurnResult) -> None:
        # a result queued before stop belongs to a session that is gone
        if live.failed or not self._registry.holds(live.session_id, live.handle):
            return

        if result.turns < live.total_turns or (
            result.cost_usd is not None
            and live.total_cost_usd is not None
            and result.cost_usd < live.total_cost_usd
        ):
            logger.warning(
                "Cumulative counters went backwards",
                extra={
                    "session_id": live.session_id,
                    "previous_turns": live.total_turns,
                    "turns": result.turns,
                    "previous_cost_usd": live.total_cost_usd,
                    "cost_usd": result.cost_usd,
                },
            )
        live.total_turns = result.turns
        if result.cost_usd is not None:
            live.total_cost_usd = result.cost_usd

        await self._recorder.update_if_active(
            live.record_id,
            {
                "worktreePath": str(live.workspace_path),
                "state": "waiting",
                "lastMessage": result.text,
                "totalTurns": live.total_turns,
                "totalCostUsd": live.total_cost_usd,
            },
        )
        self._notify(
            live.session_id,
            live.record_id,
            "waiting",
            live.task,
            live.total_turns,
            live.total_cost_usd,
            last_message=result.text,
        )
        self._recorder.journal(
            live.session_id,
            "turn_result",
            {"turns": result.turns, "cost_usd": result.cost_usd, "duration_ms": result.duration_ms, "text": result.text[:2000]},
        )

    async def _on_failure(self, live: _LiveSession, message: str) -> None:
        if live.failed:
            return
        live.failed = True

        removed = self._registry.remove(live.session_id, live.handle) is not None
        live.handle.kill()
        if self._live.get(live.session_id) is live:
            del self._live[live.session_id]
        if not removed:
            # stopped or superseded; that path owns the record
            return

        logger.error("Session failed: %s", message, extra={"session_id": live.session_id})
        if live.keep_workspace_on_error:
            await self._recorder.update_if_active(
                live.record_id, {"state": "error", "result": {"error": message}}
            )
        else:
            await self.discard_workspace(live.workspace_path, live.branch_name)
            await self._recorder.update_if_active(
                live.record_id, {"state": "error", "result": {"error": message}}, status="error"
            )

        self._notify(
            live.session_id,
            live.record_id,
            "error",
            live.task,
            live.total_turns,
            live.total_cost_usd,
            error=message,
        )
        self._recorder.journal(live.session_id, "session_failed", {"error": message})

    async def _on_exit(self, live: _LiveSession, event: SessionExited) -> None:
        if live.failed or event.killed or live.handle.phase != "completed":
            self._registry.remove(live.session_id, live.handle)
            if self._live.get(live.session_id) is live:
                del self._live[live.session_id]
            return
        if not self._registry.holds(live.session_id, live.handle):
            return
        await self._finalize(live)

    async def collect_artifacts(self, path: Path) -> tuple[DiffStats, list[str], str]:
        stats = DiffStats()
        changed: list[str] = []
        log = ""
        try:
            stats = await self._worktrees.stats(path)
            changed = await self._worktrees.changed_files(path)
            log = await self._worktrees.log(path)
        except WorktreeError:
            logger.warning("Could not gather workspace results", extra={"path": str(path)}, exc_info=True)
        return stats, changed, log

    async def _finalize(self, live: _LiveSession) -> None:
        self._registry.remove(live.session_id, live.handle)
        if self._live.get(live.session_id) is live:
            del self._live[live.session_id]

        stats, changed, log = await self.collect_artifacts(live.workspace_path)
        await self._write_completed(
            live.session_id,
            live.record_id,
            str(live.workspace_path),
            live.total_turns,
            live.total_cost_usd,
            stats,
            changed,
            log,
        )
        self._notify(
            live.session_id,
            live.record_id,
            "completed",
            live.task,
            live.total_turns,
            live.total_cost_usd,
            files_changed=len(changed),
        )
        self._recorder.journal(
            live.session_id,
            "session_completed",
            {"turns": live.total_turns, "cost_usd": live.total_cost_usd, "changed_files": changed},
        )
        logger.info(
            "Session completed",
            extra={"session_id": live.session_id, "files_changed": len(changed)},
        )

    async def _write_completed(
        self,
        session_id: str,
        record_id: str,
        workspace_path: str,
        total_turns: int,
        total_cost_usd: float | None,
        stats: DiffStats,
        changed: list[str],
        log: str,
    ) -> bool:
        return await self._recorder.update_if_active(
            record_id,
            {
                "state": "completed",
                "worktreePath": workspace_path,
                "totalTurns": total_turns,
                "totalCostUsd": total_cost_usd,
                "result": {
                    "sessionId": session_id,
                    "turns": total_turns,
                    "costUsd": total_cost_usd,
                    "stats": stats.to_dict(),
                    "changedFiles": changed,
                    "log": log,
                },
            },
        )

    # ------------------------------------------------------------------
    # Restart handling

    async def finalize_zombie(self, record: LifecycleRecord) -> str:
        """Resolve a record that claims a live session nobody holds."""

        payload = SessionPayload.model_validate(record.data)
        session_id = payload.session_id or record.id
        task = payload.task or "Unknown task"
        path = payload.worktree_path

        if self._zombie_policy == "finalize" and path and self._worktrees.exists(session_id):
            try:
                stats = await self._worktrees.stats(path)
                changed = await self._worktrees.changed_files(path)
                log = await self._worktrees.log(path)
            except WorktreeError:
                logger.warning("Zombie workspace unreadable", extra={"session_id": session_id}, exc_info=True)
            else:
                await self._write_completed(
                    session_id, record.id, path, payload.total_turns, payload.total_cost_usd, stats, changed, log
                )
                self._notify(
                    session_id,
                    record.id,
                    "completed",
                    task,
                    payload.total_turns,
                    payload.total_cost_usd,
                    files_changed=len(changed),
                )
                return "completed"

        message = "Session interrupted: the agent process is no longer running"
        await self._recorder.update_if_active(record.id, {"state": "error", "result": {"error": message}})
        self._notify(
            session_id, record.id, "error", task, payload.total_turns, payload.total_cost_usd, error=message
        )
        return "error"

    async def reconcile_zombies(self) -> list[dict[str, Any]]:
        """Resolve every active-looking record without a live handle."""

        outcomes: list[dict[str, Any]] = []
        for record in await self._recorder.list_active():
            session_id = record.data.get("sessionId") or record.id
            if self._registry.get(session_id) is not None:
                continue
            try:
                outcome = await self.finalize_zombie(record)
            except Exception as exc:
                logger.error("Zombie reconciliation failed", extra={"record_id": record.id}, exc_info=True)
                outcome = f"failed: {exc}"
            logger.info(
                "Reconciled zombie session",
                extra={"record_id": record.id, "session_id": session_id, "outcome": outcome},
            )
            self._recorder.journal(session_id, "zombie_reconciled", {"outcome": outcome})
            outcomes.append({"record_id": record.id, "session_id": session_id, "outcome": outcome})
        return outcomes

    # ------------------------------------------------------------------
    # Lifecycle

    async def settle(self) -> None:
        """Wait until queued session events and background side effects have been handled."""

        for handle in [live.handle for live in list(self._live.values())]:
            await handle.drained()
        finishing = [task for session_id, task in self._drivers.items() if session_id not in self._live]
        if finishing:
            await asyncio.wait(finishing)
        await self._recorder.drain()
        await self._bridge.drain()

    def kill_all(self) -> int:
        """Kill every live session. Records stay active and are reconciled on the next start."""

        killed = 0
        for session_id in self._registry.active_ids():
            handle = self._registry.remove(session_id)
            if handle is not None:
                logger.info("Killing session on shutdown", extra={"session_id": session_id})
                handle.kill()
                killed += 1
        self._live.clear()
        return killed

    async def shutdown(self, timeout: float = 5.0) -> None:
        self.kill_all()
        drivers = list(self._drivers.values())
        if drivers:
            await asyncio.wait(drivers, timeout=timeout)
        await self._recorder.drain()
        await self._bridge.drain()


__all__ = ["ActionResult", "SessionOrchestrator", "ZombiePolicy"]
