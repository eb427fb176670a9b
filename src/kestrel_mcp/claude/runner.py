"""Async runner for the Claude CLI in bidirectional stream-json mode."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Literal, Sequence

from .stream import (
    ProgressEvent,
    SessionEvent,
    SessionExited,
    SessionFailed,
    StreamParser,
    TurnResult,
    build_user_message,
)
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

SessionPhase = Literal["running", "waiting_for_input", "completed", "error"]

DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = (
    "Read",
    "Edit",
    "Write",
    "Glob",
    "Grep",
    "Bash(git:*)",
    "Bash(python:*)",
    "Bash(pytest:*)",
    "Bash(ls:*)",
    "Bash(cat:*)",
    "Bash(head:*)",
    "Bash(tail:*)",
    "Bash(wc:*)",
)

# stream-json lines carry whole tool results
_STREAM_LIMIT = 16 * 1024 * 1024


class ClaudeRunnerError(RuntimeError):
    """Base class for Claude runner errors."""


class ClaudeNotFoundError(ClaudeRunnerError):
    """Raised when the Claude CLI executable cannot be located."""


@dataclass(slots=True)
class ClaudeExecutionResult:
    """Holds the outcome of a one-shot Claude CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class AgentSession:
    """Handle to one live agent process.

    The handle owns a single-consumer event channel. Producers call
    :meth:`_publish`; the orchestrator drains :meth:`events` until it sees
    :class:`SessionExited`.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.phase: SessionPhase = "running"
        self.killed = False
        self.returncode: int | None = None
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()

    @property
    def pid(self) -> int | None:
        return None

    def _publish(self, event: SessionEvent) -> None:
        if isinstance(event, TurnResult):
            self.phase = "waiting_for_input"
        elif isinstance(event, SessionFailed):
            self.phase = "error"
        self._queue.put_nowait(event)

    def _finish(self, returncode: int | None) -> None:
        self.returncode = returncode
        if self.phase != "error":
            if returncode not in (0, None) and not self.killed:
                if returncode < 0:
                    reason = f"killed by signal {-returncode}"
                else:
                    reason = f"exited with code {returncode}"
                self._publish(SessionFailed(f"Claude CLI {reason}"))
            else:
                self.phase = "completed"
        self._queue.put_nowait(SessionExited(returncode=returncode, killed=self.killed))

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield events in process order, ending after :class:`SessionExited`."""

        while True:
            event = await self._queue.get()
            try:
                yield event
            finally:
                self._queue.task_done()
            if isinstance(event, SessionExited):
                return

    async def drained(self) -> None:
        """Wait until every published event has been fully handled by the consumer."""

        await self._queue.join()

    async def send_message(self, text: str) -> bool:
        raise NotImplementedError

    def close_input(self) -> None:
        raise NotImplementedError

    def kill(self) -> None:
        raise NotImplementedError


class ClaudeSession(AgentSession):
    """A running ``claude`` subprocess."""

    def __init__(self, session_id: str, process: asyncio.subprocess.Process) -> None:
        super().__init__(session_id)
        self._process = process
        self._parser = StreamParser()
        self._watcher = asyncio.create_task(self._watch())

    @property
    def pid(self) -> int | None:
        return self._process.pid

    async def _pump_stdout(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            for event in self._parser.feed(line.decode("utf-8", errors="replace")):
                if isinstance(event, ProgressEvent) and event.kind == "tool_call":
                    logger.debug(
                        "Tool call",
                        extra={"session_id": self.session_id, "tool": event.tool, "input": event.input},
                    )
                self._publish(event)

    async def _pump_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            logger.warning(
                "claude stderr: %s",
                line.decode("utf-8", errors="replace").rstrip(),
                extra={"session_id": self.session_id},
            )

    async def _watch(self) -> None:
        try:
            await asyncio.gather(self._pump_stdout(), self._pump_stderr())
        finally:
            returncode = await self._process.wait()
            logger.info(
                "Claude process exited",
                extra={"session_id": self.session_id, "returncode": returncode, "killed": self.killed},
            )
            self._finish(returncode)

    async def send_message(self, text: str) -> bool:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            logger.error("Cannot send message, stdin is closed", extra={"session_id": self.session_id})
            return False
        self.phase = "running"
        stdin.write(build_user_message(text).encode("utf-8"))
        await stdin.drain()
        return True

    def close_input(self) -> None:
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            logger.info(
                "Closing stdin, session ends after the current turn",
                extra={"session_id": self.session_id},
            )
            stdin.close()

    def kill(self) -> None:
        if self._process.returncode is not None or self.killed:
            return
        self.killed = True
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    async def wait(self) -> int | None:
        await self._watcher
        return self.returncode


class ClaudeRunner:
    """Spawn Claude CLI sessions asynchronously."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        permission_mode: str = "acceptEdits",
        allowed_tools: Sequence[str] | None = None,
        model: str | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._permission_mode = permission_mode
        self._allowed_tools = tuple(allowed_tools or DEFAULT_ALLOWED_TOOLS)
        self._model = model

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ClaudeNotFoundError(f"Claude executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise ClaudeNotFoundError("Claude CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> ClaudeExecutionResult:
        return await self._invoke("--version")

    def build_args(self, system_prompt: str, allowed_tools: Sequence[str] | None = None) -> list[str]:
        args = [
            "-p",
            "",
            "--append-system-prompt",
            system_prompt,
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            self._permission_mode,
        ]
        if self._model:
            args.extend(["--model", self._model])
        for tool in allowed_tools or self._allowed_tools:
            args.extend(["--allowedTools", tool])
        return args

    def build_headless_args(self, system_prompt: str, task: str) -> list[str]:
        args = [
            "-p",
            task,
            "--append-system-prompt",
            system_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if self._model:
            args.extend(["--model", self._model])
        return args

    async def _spawn(
        self, args: Sequence[str], *, session_id: str, workspace_path: Path | str, stdin: int
    ) -> asyncio.subprocess.Process:
        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(workspace_path),
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ClaudeRunnerError(f"Failed to spawn claude CLI: {exc}") from exc

        logger.info(
            "Spawned claude CLI",
            extra={"session_id": session_id, "pid": process.pid, "workspace": str(workspace_path)},
        )
        return process

    async def start(
        self,
        *,
        session_id: str,
        system_prompt: str,
        task: str,
        workspace_path: Path | str,
        allowed_tools: Sequence[str] | None = None,
    ) -> AgentSession:
        """Spawn the CLI in ``workspace_path`` and send ``task`` as the first message."""

        process = await self._spawn(
            self.build_args(system_prompt, allowed_tools),
            session_id=session_id,
            workspace_path=workspace_path,
            stdin=asyncio.subprocess.PIPE,
        )
        session = ClaudeSession(session_id, process)
        await session.send_message(task)
        return session

    async def start_headless(
        self,
        *,
        session_id: str,
        system_prompt: str,
        task: str,
        workspace_path: Path | str,
    ) -> AgentSession:
        """Run ``task`` to completion without input, skipping permission prompts.

        The worktree is the only sandbox, so callers enforce cost and time
        ceilings themselves.
        """

        process = await self._spawn(
            self.build_headless_args(system_prompt, task),
            session_id=session_id,
            workspace_path=workspace_path,
            stdin=asyncio.subprocess.DEVNULL,
        )
        return ClaudeSession(session_id, process)

    async def _invoke(self, *args: str) -> ClaudeExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return ClaudeExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeClaudeSession(AgentSession):
    """Test double driven by explicit :meth:`emit` and :meth:`exit` calls."""

    def __init__(self, session_id: str, *, system_prompt: str = "", task: str = "", workspace_path: str = "") -> None:
        super().__init__(session_id)
        self.system_prompt = system_prompt
        self.workspace_path = workspace_path
        self.messages: list[str] = [task]
        self.input_closed = False
        self.exited = False

    def emit(self, event: SessionEvent) -> None:
        self._publish(event)

    def exit(self, returncode: int = 0) -> None:
        if self.exited:
            return
        self.exited = True
        self._finish(returncode)

    async def send_message(self, text: str) -> bool:
        if self.input_closed:
            return False
        self.phase = "running"
        self.messages.append(text)
        return True

    def close_input(self) -> None:
        self.input_closed = True

    def kill(self) -> None:
        if self.exited or self.killed:
            return
        self.killed = True
        self.exit(-15)


class FakeClaudeRunner(ClaudeRunner):
    """Test double that hands out :class:`FakeClaudeSession` objects.

    ``script``, when given, is called with every new session so a test can
    queue the events a headless run would produce.
    """

    def __init__(  # type: ignore[override]
        self,
        failures: Iterable[Exception] | None = None,
        *,
        script: Callable[[FakeClaudeSession], None] | None = None,
    ) -> None:
        self._failures = list(failures or [])
        self._executable_path = Path("/tmp/fake-claude")
        self._permission_mode = "acceptEdits"
        self._allowed_tools = DEFAULT_ALLOWED_TOOLS
        self._model = None
        self.script = script
        self.sessions: dict[str, FakeClaudeSession] = {}
        self.starts: list[dict[str, str]] = []

    async def version(self) -> ClaudeExecutionResult:  # type: ignore[override]
        return ClaudeExecutionResult(args=("claude", "--version"), returncode=0, stdout="fake-claude 0.0.0", stderr="")

    def _open(
        self, session_id: str, system_prompt: str, task: str, workspace_path: Path | str, mode: str
    ) -> FakeClaudeSession:
        self.starts.append(
            {
                "session_id": session_id,
                "system_prompt": system_prompt,
                "task": task,
                "workspace_path": str(workspace_path),
                "mode": mode,
            }
        )
        if self._failures:
            raise self._failures.pop(0)
        session = FakeClaudeSession(
            session_id,
            system_prompt=system_prompt,
            task=task,
            workspace_path=str(workspace_path),
        )
        session.input_closed = mode == "headless"
        self.sessions[session_id] = session
        if self.script is not None:
            self.script(session)
        return session

    async def start(  # type: ignore[override]
        self,
        *,
        session_id: str,
        system_prompt: str,
        task: str,
        workspace_path: Path | str,
        allowed_tools: Sequence[str] | None = None,
    ) -> AgentSession:
        return self._open(session_id, system_prompt, task, workspace_path, "interactive")

    async def start_headless(  # type: ignore[override]
        self,
        *,
        session_id: str,
        system_prompt: str,
        task: str,
        workspace_path: Path | str,
    ) -> AgentSession:
        return self._open(session_id, system_prompt, task, workspace_path, "headless")


__all__ = [
    "AgentSession",
    "ClaudeExecutionResult",
    "ClaudeNotFoundError",
    "ClaudeRunner",
    "ClaudeRunnerError",
    "ClaudeSession",
    "DEFAULT_ALLOWED_TOOLS",
    "FakeClaudeRunner",
    "FakeClaudeSession",
    "SessionPhase",
]
