"""Typed events and the stream-json protocol spoken by the Claude CLI."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

ProgressKind = Literal["thinking", "tool_call", "result"]


@dataclass(slots=True)
class ProgressEvent:
    """Observability-only event; never drives session state."""

    kind: ProgressKind
    text: str | None = None
    tool: str | None = None
    input: str | None = None


@dataclass(slots=True)
class TurnResult:
    """End of one agent turn. ``turns`` and ``cost_usd`` are cumulative for the process."""

    turns: int
    cost_usd: float | None
    duration_ms: int
    text: str
    agent_session_id: str | None = None


@dataclass(slots=True)
class SessionFailed:
    message: str


@dataclass(slots=True)
class SessionExited:
    returncode: int | None
    killed: bool = False


SessionEvent = ProgressEvent | TurnResult | SessionFailed | SessionExited

_SUMMARY_LIMIT = 120


def summarize_tool_input(tool: str, tool_input: Any) -> str:
    """Short human-readable summary of a tool call's input."""

    if not isinstance(tool_input, dict):
        return ""

    if tool in {"Read", "Edit", "Write"}:
        value = tool_input.get("file_path")
    elif tool in {"Glob", "Grep"}:
        value = tool_input.get("pattern")
    elif tool == "Bash":
        command = tool_input.get("command")
        if not isinstance(command, str):
            return ""
        if len(command) > _SUMMARY_LIMIT:
            return command[: _SUMMARY_LIMIT - 3] + "..."
        return command
    else:
        return ""
    return value if isinstance(value, str) else ""


def build_user_message(text: str) -> str:
    """Encode a user message as one NDJSON line for the CLI's stdin."""

    message = {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": text}]},
    }
    return json.dumps(message) + "\n"


class StreamParser:
    """Turn stream-json stdout lines into ordered session events.

    Only ``assistant`` and ``result`` lines matter. Text blocks become
    ``thinking`` progress and are remembered as the turn's final message;
    ``tool_use`` blocks become ``tool_call`` progress. A ``result`` line closes
    the turn, either as a :class:`TurnResult` or, when flagged as an error, as
    a :class:`SessionFailed`. Malformed counters are ignored: the turn count
    keeps its last good value and a missing cost leaves the total unchanged.
    """

    def __init__(self) -> None:
        self._last_text = ""
        self._turns = 0

    def feed(self, line: str) -> list[SessionEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON output line", extra={"line": line[:200]})
            return []
        if not isinstance(payload, dict):
            return []

        event_type = payload.get("type")
        if event_type == "assistant":
            return self._assistant(payload)
        if event_type == "result":
            return self._result(payload)
        return []

    def _assistant(self, payload: dict[str, Any]) -> list[SessionEvent]:
        message = payload.get("message")
        blocks = message.get("content") if isinstance(message, dict) else payload.get("content")
        if not isinstance(blocks, list):
            return []

        events: list[SessionEvent] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                self._last_text = block["text"]
                events.append(ProgressEvent(kind="thinking", text=block["text"]))
            elif block.get("type") == "tool_use":
                tool = block.get("name") or "unknown"
                events.append(
                    ProgressEvent(
                        kind="tool_call",
                        tool=tool,
                        input=summarize_tool_input(tool, block.get("input")),
                    )
                )
        return events

    @staticmethod
    def _number(payload: dict[str, Any], key: str, cast: Callable[[Any], Any]) -> Any:
        value = payload.get(key)
        if value is None:
            return None
        try:
            return cast(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed result field", extra={"field": key, "value": repr(value)[:100]})
            return None

    def _result(self, payload: dict[str, Any]) -> list[SessionEvent]:
        is_error = payload.get("is_error") is True or payload.get("subtype") == "error"
        result_text = payload.get("result") if isinstance(payload.get("result"), str) else ""
        last_text, self._last_text = self._last_text, ""

        if is_error:
            return [SessionFailed(result_text or "Claude CLI returned an error result")]

        turns = self._number(payload, "num_turns", int)
        if turns is not None:
            self._turns = turns
        return [
            ProgressEvent(kind="result", text=last_text),
            TurnResult(
                turns=self._turns,
                cost_usd=self._number(payload, "total_cost_usd", float),
                duration_ms=self._number(payload, "duration_ms", int) or 0,
                text=last_text or result_text,
                agent_session_id=payload.get("session_id"),
            ),
        ]


__all__ = [
    "ProgressEvent",
    "ProgressKind",
    "SessionEvent",
    "SessionExited",
    "SessionFailed",
    "StreamParser",
    "TurnResult",
    "build_user_message",
    "summarize_tool_input",
]
