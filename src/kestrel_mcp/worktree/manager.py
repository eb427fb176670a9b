"""Git worktree lifecycle for isolated session workspaces."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_FILES_RE = re.compile(r"(\d+) files? changed")
_INSERTIONS_RE = re.compile(r"(\d+) insertions?\(\+\)")
_DELETIONS_RE = re.compile(r"(\d+) deletions?\(-\)")


class WorktreeError(RuntimeError):
    """Raised when a git worktree operation fails."""


class MergeConflictError(WorktreeError):
    """Raised when a session branch cannot be fast-forwarded into the base branch."""


@dataclass(slots=True)
class WorktreeInfo:
    path: Path
    branch_name: str


@dataclass(slots=True)
class DiffStats:
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class _GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def parse_diff_stat(raw: str) -> DiffStats:
    """Parse the summary line of ``git diff --stat``."""

    lines = raw.strip().splitlines()
    summary = lines[-1].strip() if lines else ""
    stats = DiffStats(summary=summary)
    if match := _FILES_RE.search(summary):
        stats.files_changed = int(match.group(1))
    if match := _INSERTIONS_RE.search(summary):
        stats.insertions = int(match.group(1))
    if match := _DELETIONS_RE.search(summary):
        stats.deletions = int(match.group(1))
    return stats


class WorktreeManager:
    """Create, inspect, merge and discard one worktree per session.

    Worktrees live at ``<base>/<session_id>`` and branch from the remote copy
    of the base branch when it exists, else from the local one.
    """

    def __init__(
        self,
        repo_root: Path,
        worktree_base: Path,
        *,
        base_branch: str = "main",
        remote: str | None = "origin",
        git: str = "git",
    ) -> None:
        self._repo_root = Path(repo_root)
        self._base = Path(worktree_base)
        self._base_branch = base_branch
        self._remote = remote
        self._git = git

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    @property
    def base(self) -> Path:
        return self._base

    def path_for(self, session_id: str) -> Path:
        return self._base / session_id

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    async def _run(self, *args: str, cwd: Path | None = None) -> _GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self._git,
                *args,
                cwd=str(cwd or self._repo_root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise WorktreeError(f"git {args[0]} could not be started: {exc}") from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        return _GitResult(
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def _git_checked(self, *args: str, cwd: Path | None = None) -> str:
        result = await self._run(*args, cwd=cwd)
        if not result.ok:
            stderr = result.stderr.strip() or "Unknown git error"
            raise WorktreeError(f"git {args[0]} failed: {stderr}")
        return result.stdout

    async def create(self, branch_name: str, session_id: str) -> WorktreeInfo:
        """Check out a new branch into a fresh worktree for ``session_id``."""

        path = self.path_for(session_id)
        if path.exists():
            raise WorktreeError(f"Worktree already exists at {path}")
        if (await self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}")).ok:
            raise WorktreeError(f"Branch {branch_name} already exists")

        self._base.mkdir(parents=True, exist_ok=True)

        base_ref = self._base_branch
        if self._remote:
            fetch = await self._run("fetch", self._remote, self._base_branch)
            if not fetch.ok:
                logger.debug(
                    "Fetch failed, branching from local state",
                    extra={"remote": self._remote, "stderr": fetch.stderr.strip()},
                )
            remote_ref = f"{self._remote}/{self._base_branch}"
            if (await self._run("rev-parse", "--verify", "--quiet", remote_ref)).ok:
                base_ref = remote_ref

        try:
            await self._git_checked("worktree", "add", "-b", branch_name, str(path), base_ref)
        except WorktreeError:
            await self.cleanup(path, branch_name)
            raise

        logger.info(
            "Created worktree",
            extra={"session_id": session_id, "branch": branch_name, "path": str(path), "base_ref": base_ref},
        )
        return WorktreeInfo(path=path, branch_name=branch_name)

    async def cleanup(self, path: Path | str, branch_name: str) -> None:
        """Remove the worktree and its branch. Never raises."""

        path = Path(path)
        try:
            removed = await self._run("worktree", "remove", "--force", str(path))
            if not removed.ok and path.exists():
                shutil.rmtree(path, ignore_errors=True)
                await self._run("worktree", "prune")
            await self._run("branch", "-D", branch_name)
        except Exception:
            logger.warning(
                "Worktree cleanup failed",
                extra={"path": str(path), "branch": branch_name},
                exc_info=True,
            )

    async def merge(self, path: Path | str, branch_name: str) -> None:
        """Fast-forward the base checkout to ``branch_name``, then discard the worktree."""

        result = await self._run("merge", "--ff-only", branch_name)
        if not result.ok:
            stderr = result.stderr.strip() or "Unknown git error"
            raise MergeConflictError(
                f"Fast-forward merge of {branch_name} into {self._base_branch} failed. "
                f"The base branch has probably advanced since the branch was created; "
                f"rebase the branch first.\n\nOriginal error: git merge failed: {stderr}"
            )
        logger.info("Merged worktree branch", extra={"branch": branch_name})
        await self.cleanup(path, branch_name)

    async def stats(self, path: Path | str) -> DiffStats:
        raw = await self._git_checked("diff", "--stat", f"{self._base_branch}...HEAD", cwd=Path(path))
        return parse_diff_stat(raw)

    async def changed_files(self, path: Path | str) -> list[str]:
        raw = await self._git_checked("diff", "--name-only", f"{self._base_branch}...HEAD", cwd=Path(path))
        return [line for line in raw.strip().splitlines() if line]

    async def log(self, path: Path | str) -> str:
        return await self._git_checked("log", "--oneline", f"{self._base_branch}..HEAD", cwd=Path(path))


__all__ = [
    "DiffStats",
    "MergeConflictError",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "parse_diff_stat",
]
