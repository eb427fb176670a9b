"""Isolated git worktrees for coding sessions."""

from .manager import DiffStats, MergeConflictError, WorktreeError, WorktreeInfo, WorktreeManager, parse_diff_stat
from .pulls import PullRequestError, extract_pr_url, fetch_pr_diff, pr_number

__all__ = [
    "DiffStats",
    "MergeConflictError",
    "PullRequestError",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "extract_pr_url",
    "fetch_pr_diff",
    "parse_diff_stat",
    "pr_number",
]
