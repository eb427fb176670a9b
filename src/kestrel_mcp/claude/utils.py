"""Utility helpers for the Claude runner."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

# Server-side secrets the agent must never see. Everything else passes through
# so the CLI keeps access to the user's own credential store.
_BLOCKED_SECRETS = {
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "DATABASE_URL",
    "NEON_DATABASE_URL",
    "DIRECT_URL",
    "GMAIL_CLIENT_ID",
    "GMAIL_CLIENT_SECRET",
    "GMAIL_REFRESH_TOKEN",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_WEBHOOK_SECRET",
    "SLACK_BOT_TOKEN",
    "SLACK_SIGNING_SECRET",
    "CLERK_SECRET_KEY",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for spawning the agent CLI."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS | _BLOCKED_SECRETS:
        env.pop(key, None)
    env["CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC"] = "1"
    if additional:
        env.update(additional)
    return env


__all__ = ["sanitize_environment"]
