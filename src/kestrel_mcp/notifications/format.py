"""Status message text and inline keyboards for session notifications."""

from __future__ import annotations

from typing import Any, Literal

NotifyState = Literal["running", "waiting", "completed", "error"]
Keyboard = dict[str, Any]

CALLBACK_PREFIX = "code"
CALLBACK_ACTIONS = frozenset({"stop", "resume", "approve", "reject", "approve-plan"})

_EMOJI = {"running": "\U0001F7E1", "waiting": "\U0001F535", "completed": "\U0001F7E2", "error": "\U0001F534"}
_LABEL = {"running": "Running", "waiting": "Needs Response", "completed": "Completed", "error": "Failed"}


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _cost(total_cost_usd: float | None) -> str:
    return f"${total_cost_usd:.2f}" if total_cost_usd is not None else "..."


def format_session_status(
    state: NotifyState,
    task: str,
    total_turns: int,
    total_cost_usd: float | None,
    *,
    last_message: str | None = None,
    error: str | None = None,
    files_changed: int | None = None,
) -> str:
    lines = [
        f"{_EMOJI[state]} Coding: {_LABEL[state]}",
        "",
        f"Task: {_truncate(task, 50)}",
        f"Turns: {total_turns} · Cost: {_cost(total_cost_usd)}",
    ]

    if state == "waiting" and last_message:
        lines.extend(
            [
                "",
                f"Claude says:\n{_truncate(last_message, 1000)}",
                "",
                "\U0001F4AC Reply to this message to respond.",
            ]
        )
    elif state == "error" and error:
        lines.extend(["", f"Error: {error}"])
    elif state == "completed" and files_changed is not None:
        lines.append(f"Files changed: {files_changed}")

    return "\n".join(lines)


def format_progress_milestone(task: str, label: str, total_turns: int, total_cost_usd: float | None) -> str:
    return "\n".join(
        [
            f"{_EMOJI['running']} Coding: {label}",
            "",
            f"Task: {_truncate(task, 50)}",
            f"Turns: {total_turns} · Cost: {_cost(total_cost_usd)}",
        ]
    )


def format_plan_ready(task: str, plan: str, auto_approve_minutes: float, total_cost_usd: float | None = None) -> str:
    lines = [
        f"{_EMOJI['waiting']} Coding: Plan Ready",
        "",
        f"Task: {_truncate(task, 50)}",
    ]
    if total_cost_usd is not None:
        lines.append(f"Planning cost: {_cost(total_cost_usd)}")
    lines.extend(
        [
            "",
            _truncate(plan.strip(), 3000),
            "",
            f"⏱ Auto-approves in {auto_approve_minutes:g} min unless stopped.",
        ]
    )
    return "\n".join(lines)


def format_review_started(task: str, review_round: int, max_rounds: int, total_cost_usd: float | None) -> str:
    return "\n".join(
        [
            f"{_EMOJI['running']} Coding: Reviewing PR (round {review_round}/{max_rounds})",
            "",
            f"Task: {_truncate(task, 50)}",
            f"Cost so far: {_cost(total_cost_usd)}",
        ]
    )


def format_review_result(task: str, approved: bool, issues: str | None, review_round: int) -> str:
    if approved:
        return "\n".join(
            [f"{_EMOJI['completed']} Coding: Review Passed (round {review_round})", "", f"Task: {_truncate(task, 50)}"]
        )
    lines = [f"{_EMOJI['running']} Coding: Fixing Review Issues (round {review_round})", "", f"Task: {_truncate(task, 50)}"]
    if issues:
        lines.extend(["", _truncate(issues.strip(), 1000)])
    return "\n".join(lines)


def format_pr_ready(
    task: str,
    pr_url: str,
    total_turns: int,
    total_cost_usd: float | None,
    stats: dict[str, Any] | None = None,
    *,
    warning: str | None = None,
) -> str:
    lines = [
        f"{_EMOJI['completed']} Coding: PR Ready",
        "",
        f"Task: {_truncate(task, 50)}",
        f"Turns: {total_turns} · Cost: {_cost(total_cost_usd)}",
    ]
    if stats:
        lines.append(
            f"Files changed: {stats.get('files_changed', 0)} "
            f"(+{stats.get('insertions', 0)} -{stats.get('deletions', 0)})"
        )
    lines.extend(["", pr_url])
    if warning:
        lines.extend(["", f"⚠️ {warning}"])
    return "\n".join(lines)


def _button(text: str, action: str, record_id: str) -> dict[str, str]:
    return {"text": text, "callback_data": f"{CALLBACK_PREFIX}:{action}:{record_id}"}


def session_keyboard(state: NotifyState, record_id: str | None) -> Keyboard | None:
    """Inline buttons offered for ``state``; ``None`` when no action applies."""

    if not record_id:
        return None
    if state in {"running", "waiting"}:
        return {"inline_keyboard": [[_button("\U0001F6D1 Stop", "stop", record_id)]]}
    if state == "completed":
        return {
            "inline_keyboard": [
                [_button("▶️ Resume", "resume", record_id)],
                [
                    _button("✅ Approve & Merge", "approve", record_id),
                    _button("❌ Reject", "reject", record_id),
                ],
            ]
        }
    return None


def plan_keyboard(record_id: str) -> Keyboard:
    return {
        "inline_keyboard": [
            [_button("✅ Approve Plan", "approve-plan", record_id)],
            [_button("\U0001F6D1 Stop", "stop", record_id)],
        ]
    }


def parse_callback_data(data: str) -> tuple[str, str] | None:
    """Split ``code:<action>:<record id>``; ``None`` for anything else."""

    parts = data.split(":", 2)
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX:
        return None
    action, record_id = parts[1], parts[2]
    if action not in CALLBACK_ACTIONS or not record_id:
        return None
    return action, record_id


__all__ = [
    "CALLBACK_ACTIONS",
    "Keyboard",
    "NotifyState",
    "format_plan_ready",
    "format_pr_ready",
    "format_progress_milestone",
    "format_review_result",
    "format_review_started",
    "format_session_status",
    "parse_callback_data",
    "plan_keyboard",
    "session_keyboard",
]
