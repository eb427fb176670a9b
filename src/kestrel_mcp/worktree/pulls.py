"""Pull request lookups through the GitHub CLI."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from .manager import WorktreeError

logger = logging.getLogger(__name__)

_PR_URL_RE = re.compile(r"https://github\.com/[^\s)]+/pull/\d+")
_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


class PullRequestError(WorktreeError):
    """Raised when ``gh`` cannot produce a pull request diff."""


def extract_pr_url(text: str | None) -> str | None:
    """First GitHub pull request URL mentioned in ``text``."""

    if not text:
        return None
    match = _PR_URL_RE.search(text)
    return match.group(0) if match else None


def pr_number(url: str) -> str | None:
    match = _PR_NUMBER_RE.search(url)
    return match.group(1) if match else None


async def fetch_pr_diff(number: str, cwd: Path | str, *, gh: str = "gh", timeout: float = 30.0) -> str:
    try:
        process = await asyncio.create_subprocess_exec(
            gh,
            "pr",
            "diff",
            number,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise PullRequestError(f"gh could not be started: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise PullRequestError(f"gh pr diff {number} timed out after {timeout:g}s") from exc

    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise PullRequestError(message or f"gh pr diff {number} exited with code {process.returncode}")
    return stdout.decode("utf-8", errors="replace")


__all__ = ["PullRequestError", "extract_pr_url", "fetch_pr_diff", "pr_number"]
