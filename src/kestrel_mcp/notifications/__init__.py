"""Best-effort session status notifications."""

from .bridge import NotificationBridge
from .channels import LogChannel, NotificationChannel, NotificationError, TelegramChannel
from .format import (
    format_plan_ready,
    format_pr_ready,
    format_progress_milestone,
    format_review_result,
    format_review_started,
    format_session_status,
    parse_callback_data,
    plan_keyboard,
    session_keyboard,
)

__all__ = [
    "LogChannel",
    "NotificationBridge",
    "NotificationChannel",
    "NotificationError",
    "TelegramChannel",
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
