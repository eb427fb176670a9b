"""FastMCP server bootstrap for Kestrel."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .autonomous import AgentConfig, AgentConfigError, AutonomousFlow, load_agent_config
from .background import BackgroundTasks
from .claude import ClaudeNotFoundError, ClaudeRunner
from .config import KestrelSettings, get_settings
from .lifecycle import LifecycleRecorder, RecordStore
from .notifications import LogChannel, NotificationBridge, NotificationChannel, TelegramChannel
from .orchestrator import SessionOrchestrator
from .profiles import DEFAULT_PROFILE, ProfileLoadError, ProfileLoader
from .registry import SessionRegistry
from .storage import (
    ChromaRecordStore,
    ChromaStore,
    ChromaUnavailableError,
    MemoryRecordStore,
    persistent_client_factory,
)
from .tools import register_tools
from .worktree import WorktreeManager


def configure_logging(level: str) -> None:
    """Configure root logging for the Kestrel server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[KestrelSettings] = None,
    claude_runner: ClaudeRunner | None = None,
    *,
    record_store: RecordStore | None = None,
    journal: ChromaStore | None = None,
    channel: NotificationChannel | None = None,
    worktrees: WorktreeManager | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server and reconcile sessions left over from a previous run."""

    settings = settings or get_settings()
    log = logging.getLogger(__name__)

    profile_loader = ProfileLoader(settings.profile_paths)
    profile, profile_error = profile_loader.resolve(settings.profile_id, DEFAULT_PROFILE)

    agent_config_error: str | None = None
    try:
        agent_config = load_agent_config(settings.agent_config_path)
    except AgentConfigError as exc:
        log.warning("Falling back to default agent config", extra={"reason": str(exc)})
        agent_config_error = str(exc)
        agent_config = AgentConfig()

    claude_metadata: dict[str, Any] = {"available": False, "version": None, "error": None}
    if claude_runner is None:
        try:
            claude_runner = ClaudeRunner(
                Path(settings.claude_path) if settings.claude_path else None,
                permission_mode=settings.permission_mode,
                model=settings.claude_default_model,
            )
        except ClaudeNotFoundError as exc:
            claude_metadata["error"] = str(exc)
            claude_runner = None
    if claude_runner is not None:
        claude_metadata["available"] = True
        try:
            version_result = _run_sync(claude_runner.version())
            if version_result.ok:
                claude_metadata["version"] = version_result.stdout.strip()
            else:
                claude_metadata["error"] = (
                    version_result.stderr.strip() or "Claude version command failed with exit code"
                )
        except OSError as exc:
            claude_metadata["error"] = str(exc)

    chroma_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "error": None,
    }
    if record_store is None:
        factory = persistent_client_factory(settings.chroma_persist_path)
        try:
            chroma_records = ChromaRecordStore(settings.chroma_persist_path, client_factory=factory)
            chroma_records.ping()
            journal = journal or ChromaStore(settings.chroma_persist_path, client_factory=factory)
            journal.ping()
            record_store = chroma_records
            chroma_metadata["available"] = True
        except ChromaUnavailableError as exc:
            log.warning("Chroma unavailable; records will not survive a restart", extra={"reason": str(exc)})
            chroma_metadata["error"] = str(exc)
            record_store = MemoryRecordStore()
            journal = None
    else:
        chroma_metadata["available"] = isinstance(record_store, ChromaRecordStore)

    if channel is None:
        if settings.telegram_enabled:
            channel = TelegramChannel(settings.telegram_bot_token or "", settings.telegram_chat_id or "")
        else:
            channel = LogChannel()

    tasks = BackgroundTasks()
    worktrees = worktrees or WorktreeManager(
        settings.repo_root,
        settings.resolved_worktree_base(),
        base_branch=settings.base_branch,
        remote=settings.remote,
    )
    orchestrator = SessionOrchestrator(
        runner=claude_runner,
        worktrees=worktrees,
        recorder=LifecycleRecorder(record_store, journal=journal, tasks=tasks),
        bridge=NotificationBridge(channel, tasks=tasks),
        registry=SessionRegistry(),
        profile=profile,
        base_branch=settings.base_branch,
        branch_prefix=settings.branch_prefix,
        zombie_policy=settings.zombie_policy,
    )
    flow = AutonomousFlow(orchestrator, config=agent_config)

    async def _reconcile() -> list[dict[str, Any]]:
        outcomes = await orchestrator.reconcile_zombies()
        await orchestrator.settle()
        # release connections opened on this short-lived loop
        aclose = getattr(channel, "aclose", None)
        if aclose is not None:
            await aclose()
        return outcomes

    reconciled: list[dict[str, Any]] = []
    reconcile_error: str | None = None
    try:
        reconciled = _run_sync(_reconcile())
    except Exception as exc:  # pragma: no cover
        reconcile_error = str(exc)
        log.error("Startup reconciliation failed", exc_info=True)

    server = FastMCP(
        name="Kestrel MCP",
        version=__version__,
        instructions=(
            "Kestrel runs Claude coding sessions in isolated git worktrees. Prepare a session, "
            "start it, answer it while it waits for input, then approve (merge) or reject its branch. "
            "start_autonomous runs plan, execution and PR review on its own after plan approval."
        ),
    )

    handles = register_tools(server, orchestrator=orchestrator, journal=journal, flow=flow)

    @server.resource(
        "resource://kestrel/status",
        name="kestrel_status",
        title="Kestrel MCP Status",
        description="Provides the current runtime status for the Kestrel MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            profile_ids = sorted(profile_loader.load_all().keys())
            current_profile_error = profile_error
        except ProfileLoadError as exc:
            profile_ids = []
            current_profile_error = str(exc)

        storage_error = None
        state_counts: dict[str, int] = {}
        try:
            for record in record_store.list_records():
                state = record.state or record.status
                state_counts[state] = state_counts.get(state, 0) + 1
        except Exception as exc:
            storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "profile": {
                "active": profile.id,
                "available": profile_ids,
                "error": current_profile_error,
            },
            "claude": {
                "path": settings.claude_path,
                "default_model": settings.claude_default_model,
                **claude_metadata,
            },
            "storage": {
                "chroma": chroma_metadata,
                "record_counts": state_counts,
                "error": storage_error,
            },
            "sessions": {
                "live": orchestrator.live_summary(),
                "reconciled_at_startup": reconciled,
                "reconcile_error": reconcile_error,
            },
            "autonomous": {
                "config_path": str(settings.agent_config_path) if settings.agent_config_path else None,
                "config_error": agent_config_error,
                "runs": flow.summary(),
                "limits": agent_config.model_dump(),
            },
            "worktrees": {
                "repo_root": str(worktrees.repo_root),
                "base": str(worktrees.base),
                "base_branch": settings.base_branch,
            },
            "notifications": {"channel": type(channel).__name__},
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "autonomous", flow)
    setattr(server, "profile", profile)
    setattr(server, "claude_runner", claude_runner)
    setattr(server, "claude_metadata", claude_metadata)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "record_store", record_store)
    setattr(server, "journal", journal)
    setattr(server, "reconciled_sessions", reconciled)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Kestrel MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Kestrel MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "claude_available": getattr(server, "claude_metadata", {}).get("available"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
            "reconciled": len(getattr(server, "reconciled_sessions", [])),
        },
    )
    try:
        server.run()
    finally:
        getattr(server, "orchestrator").kill_all()


if __name__ == "__main__":
    main()
