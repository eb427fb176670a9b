"""Autonomous coding runs: plan, wait for approval, execute, then self-review the PR.

Each phase is a separate headless Claude invocation in the same worktree.
The registry holds one :class:`AutonomousRun` for the whole run, so
``stop``, shutdown and zombie reconciliation treat it like any other
session. Record writes go through the guarded update; once the record is
dismissed or reaches a final state the run ends without touching it again.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable
from uuid import uuid4

from ..claude import AgentSession, ClaudeRunnerError, ProgressEvent, SessionFailed, TurnResult
from ..notifications import (
    format_plan_ready,
    format_pr_ready,
    format_progress_milestone,
    format_review_result,
    format_review_started,
    format_session_status,
    plan_keyboard,
    session_keyboard,
)
from ..orchestrator import ActionResult, SessionOrchestrator
from ..profiles import build_execution_prompt, build_fix_prompt, build_planning_prompt, build_review_prompt
from ..registry import SessionAlreadyActiveError
from ..worktree import PullRequestError, WorktreeError, extract_pr_url, fetch_pr_diff, pr_number
from .config import AgentConfig

logger = logging.getLogger(__name__)

DiffFetcher = Callable[[str, Path], Awaitable[str]]

_ISSUES_RE = re.compile(r"ISSUES FOUND:(.*)", re.DOTALL)


def parse_review(text: str) -> tuple[bool, str | None]:
    """Read a reviewer's final message as ``(approved, issues)``."""

    approved = "APPROVED" in text and "ISSUES FOUND" not in text
    match = _ISSUES_RE.search(text)
    issues = match.group(1).strip() if match else ""
    return approved, issues or None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _RecordReleased(Exception):
    """The run's record no longer accepts writes."""


@dataclass(slots=True)
class PhaseOutcome:
    text: str = ""
    turns: int = 0
    cost_usd: float | None = None
    error: str | None = None


class AutonomousRun(AgentSession):
    """Registry handle for a whole autonomous run.

    Killing it kills the phase process that is currently running and cancels
    the task driving the run. It takes no user input.
    """

    def __init__(
        self,
        session_id: str,
        *,
        task: str,
        context: str | None,
        branch_name: str,
        workspace_path: Path,
    ) -> None:
        super().__init__(session_id)
        self.task = task
        self.context = context
        self.branch_name = branch_name
        self.workspace_path = workspace_path
        self.state = "planning"
        self.plan: str | None = None
        self.total_turns = 0
        self.total_cost_usd: float | None = None
        self.approved = asyncio.Event()
        self.approved_by: str | None = None
        self.current: AgentSession | None = None
        self.runner_task: asyncio.Task[None] | None = None

    def add(self, outcome: PhaseOutcome) -> None:
        self.total_turns += outcome.turns
        if outcome.cost_usd is not None:
            self.total_cost_usd = (self.total_cost_usd or 0.0) + outcome.cost_usd

    async def send_message(self, text: str) -> bool:
        return False

    def close_input(self) -> None:
        return None

    def kill(self) -> None:
        if self.killed:
            return
        self.killed = True
        if self.current is not None:
            self.current.kill()
        if self.runner_task is not None and not self.runner_task.done():
            self.runner_task.cancel()


class AutonomousFlow:
    """Runs plan, approval, execution and review phases for autonomous sessions."""

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        *,
        config: AgentConfig | None = None,
        diff_fetcher: DiffFetcher | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._config = config or AgentConfig()
        self._fetch_diff = diff_fetcher or fetch_pr_diff
        self._runs: dict[str, AutonomousRun] = {}
        orchestrator.add_handler("code:autonomous", lambda p, r: self.start(p.task or "", p.context))
        orchestrator.add_handler("code:approve-plan", lambda p, r: self.approve_plan(p.session_id or r or ""))

    @property
    def config(self) -> AgentConfig:
        return self._config

    def get_run(self, session_id: str) -> AutonomousRun | None:
        return self._runs.get(session_id)

    def summary(self) -> list[dict[str, Any]]:
        return [
            {
                "session_id": run.session_id,
                "state": run.state,
                "total_turns": run.total_turns,
                "total_cost_usd": run.total_cost_usd,
                "plan_approved_by": run.approved_by,
            }
            for run in self._runs.values()
        ]

    async def join(self, session_id: str) -> None:
        """Wait for a run's task to finish."""

        run = self._runs.get(session_id)
        if run is not None and run.runner_task is not None:
            await asyncio.gather(run.runner_task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Actions

    async def start(self, task: str, context: str | None = None) -> ActionResult:
        """Create the worktree and record, then plan in the background."""

        if not task or not task.strip():
            return ActionResult.failed("Missing task")
        orchestrator = self._orchestrator
        if orchestrator.runner is None:
            return ActionResult.failed("Failed to start autonomous session: Claude CLI is unavailable")

        session_id = uuid4().hex[:12]
        try:
            placeholder = orchestrator.registry.reserve(session_id)
        except SessionAlreadyActiveError as exc:
            return ActionResult.failed(str(exc))

        try:
            info = await orchestrator.worktrees.create(orchestrator.branch_name_for(task, session_id), session_id)
        except WorktreeError as exc:
            orchestrator.registry.remove(session_id, placeholder)
            return ActionResult.failed(f"Failed to create worktree: {exc}")

        run = AutonomousRun(
            session_id, task=task, context=context, branch_name=info.branch_name, workspace_path=info.path
        )
        try:
            await orchestrator.recorder.set(
                session_id,
                {
                    "status": "confirmed",
                    "data": {
                        "sessionId": session_id,
                        "task": task,
                        "context": context,
                        "branchName": info.branch_name,
                        "worktreePath": str(info.path),
                        "autonomous": True,
                        "state": "planning",
                        "totalTurns": 0,
                        "totalCostUsd": None,
                    },
                },
            )
        except Exception as exc:
            logger.error("Could not record autonomous session", extra={"session_id": session_id}, exc_info=True)
            orchestrator.registry.remove(session_id, placeholder)
            await orchestrator.discard_workspace(info.path, info.branch_name)
            return ActionResult.failed(f"Failed to start autonomous session: {exc}")

        if not orchestrator.registry.commit(session_id, run, placeholder):
            await orchestrator.discard_workspace(info.path, info.branch_name)
            await orchestrator.recorder.update_if_active(session_id, {"state": "stopped"})
            return ActionResult.failed("Session was stopped before it started")

        self._runs[session_id] = run
        run.runner_task = asyncio.create_task(self._run(run))
        self._milestone(run, "Planning...")
        orchestrator.recorder.journal(session_id, "autonomous_start", {"task": task, "branch": info.branch_name})
        logger.info("Autonomous session started", extra={"session_id": session_id, "path": str(info.path)})
        return ActionResult.confirmed(
            sessionId=session_id,
            recordId=session_id,
            worktreePath=str(info.path),
            branchName=info.branch_name,
        )

    async def approve_plan(self, session_id: str) -> ActionResult:
        if not session_id:
            return ActionResult.failed("Missing sessionId")
        run = self._runs.get(session_id)
        if run is None:
            return ActionResult.failed("No active autonomous session found")
        if run.state != "plan-ready" or run.approved.is_set():
            return ActionResult.failed(f"Plan is not awaiting approval (state: {run.state})")

        run.approved_by = "user"
        run.approved.set()
        self._orchestrator.recorder.journal(session_id, "plan_approved", {"by": "user"})
        logger.info("Plan approved", extra={"session_id": session_id})
        return ActionResult.confirmed(sessionId=session_id)

    # ------------------------------------------------------------------
    # Run

    async def _run(self, run: AutonomousRun) -> None:
        try:
            if not await self._plan(run):
                return
            await self._await_approval(run)
            ok, pr_url = await self._execute(run)
            if not ok:
                return
            warning = None
            if pr_url is None:
                logger.warning("No PR URL in execution output, skipping review", extra={"session_id": run.session_id})
            else:
                warning = await self._review(run, pr_url)
            await self._finalize(run, pr_url, warning)
        except asyncio.CancelledError:
            logger.info("Autonomous run cancelled", extra={"session_id": run.session_id, "state": run.state})
            raise
        except _RecordReleased:
            logger.info("Record released, ending autonomous run", extra={"session_id": run.session_id})
        except Exception as exc:
            logger.error("Autonomous run failed", extra={"session_id": run.session_id}, exc_info=True)
            await self._fail(run, f"Autonomous run failed: {exc}", discard=False)
        finally:
            if run.current is not None:
                run.current.kill()
            self._orchestrator.registry.remove(run.session_id, run)
            if self._runs.get(run.session_id) is run:
                del self._runs[run.session_id]

    async def _record(self, run: AutonomousRun, data: dict[str, Any]) -> None:
        applied = await self._orchestrator.recorder.update_if_active(
            run.session_id,
            {**data, "totalTurns": run.total_turns, "totalCostUsd": run.total_cost_usd},
        )
        if not applied:
            raise _RecordReleased(run.session_id)

    async def _plan(self, run: AutonomousRun) -> bool:
        planning = self._config.planning
        outcome = await self._phase(
            run,
            "plan",
            build_planning_prompt(self._orchestrator.profile, run.task, run.context),
            f"Read the codebase and create a plan for: {run.task}",
            max_cost_usd=planning.max_planning_cost_usd,
            max_duration_minutes=planning.max_duration_minutes,
        )
        run.add(outcome)
        plan = outcome.text.strip()
        if outcome.error or not plan:
            reason = outcome.error or "planning phase produced no output"
            await self._fail(run, f"Planning failed: {reason}", discard=True)
            return False

        run.plan = plan
        run.state = "plan-ready"
        auto_approve_at = datetime.now(timezone.utc) + timedelta(minutes=planning.auto_approve_minutes)
        await self._record(run, {"state": "plan-ready", "plan": plan, "autoApproveAt": auto_approve_at.isoformat()})
        if self._config.notifications.on_plan_ready:
            self._orchestrator.bridge.notify(
                run.session_id,
                format_plan_ready(run.task, plan, planning.auto_approve_minutes, run.total_cost_usd),
                plan_keyboard(run.session_id),
            )
        self._orchestrator.recorder.journal(run.session_id, "plan_ready", {"plan": plan[:2000]})
        return True

    async def _await_approval(self, run: AutonomousRun) -> None:
        minutes = self._config.planning.auto_approve_minutes
        try:
            await asyncio.wait_for(run.approved.wait(), timeout=minutes * 60)
        except asyncio.TimeoutError:
            run.approved_by = "timer"
            self._orchestrator.recorder.journal(run.session_id, "plan_approved", {"by": "timer"})
            logger.info("Plan auto-approved", extra={"session_id": run.session_id, "minutes": minutes})

    async def _execute(self, run: AutonomousRun) -> tuple[bool, str | None]:
        execution = self._config.execution
        run.state = "executing"
        await self._record(
            run, {"state": "executing", "planApprovedAt": _now(), "planApprovedBy": run.approved_by}
        )
        if self._config.notifications.on_progress_milestones:
            self._milestone(run, "Executing plan...")

        outcome = await self._phase(
            run,
            "exec",
            build_execution_prompt(
                self._orchestrator.profile,
                run.task,
                run.plan or "",
                commit_strategy=execution.commit_strategy,
                max_retries=execution.max_retries,
            ),
            f"Execute the approved plan for: {run.task}\n\nPlan:\n{run.plan}",
            max_cost_usd=execution.max_cost_usd,
            max_duration_minutes=execution.max_duration_minutes,
        )
        run.add(outcome)
        if outcome.error:
            # the branch may hold useful commits, keep the workspace
            await self._fail(run, outcome.error, discard=False)
            return False, None

        pr_url = extract_pr_url(outcome.text)
        await self._record(run, {"lastMessage": outcome.text[:500], "prUrl": pr_url})
        return True, pr_url

    async def _review(self, run: AutonomousRun, pr_url: str) -> str | None:
        """Review and fix until approved; returns a warning for the final message."""

        review, execution = self._config.review, self._config.execution
        milestones = self._config.notifications.on_progress_milestones
        number = pr_number(pr_url)
        if number is None:
            logger.error("Could not read PR number", extra={"session_id": run.session_id, "pr_url": pr_url})
            return None

        review_round = 1
        while True:
            run.state = "reviewing"
            await self._record(run, {"state": "reviewing", "prUrl": pr_url, "reviewRound": review_round})
            if milestones:
                self._orchestrator.bridge.notify(
                    run.session_id,
                    format_review_started(run.task, review_round, review.max_rounds, run.total_cost_usd),
                    session_keyboard("running", run.session_id),
                )

            try:
                diff = await self._fetch_diff(number, run.workspace_path)
            except PullRequestError as exc:
                logger.error("Could not fetch PR diff", extra={"session_id": run.session_id, "reason": str(exc)})
                return None

            outcome = await self._phase(
                run,
                f"review-{review_round}",
                build_review_prompt(self._orchestrator.profile, run.task, run.plan or "", diff),
                "Review this PR diff for correctness, plan adherence, and potential issues.",
                max_cost_usd=self._config.planning.max_planning_cost_usd,
                max_duration_minutes=review.max_duration_minutes,
            )
            run.add(outcome)
            if outcome.error:
                logger.warning(
                    "Review phase failed, finishing without review",
                    extra={"session_id": run.session_id, "reason": outcome.error},
                )
                return None

            approved, issues = parse_review(outcome.text)
            self._orchestrator.recorder.journal(
                run.session_id, "review_result", {"round": review_round, "approved": approved, "issues": issues}
            )
            if milestones and (approved or issues):
                self._orchestrator.bridge.notify(
                    run.session_id,
                    format_review_result(run.task, approved, issues, review_round),
                    session_keyboard("running", run.session_id),
                )
            if approved:
                return None
            if review_round >= review.max_rounds:
                return f"Review had unresolved issues after {review.max_rounds} rounds"
            if issues is None:
                return None

            run.state = "fixing"
            await self._record(run, {"state": "fixing", "reviewRound": review_round, "reviewIssues": issues})
            fix = await self._phase(
                run,
                f"fix-{review_round}",
                build_fix_prompt(self._orchestrator.profile, run.task, issues, max_retries=execution.max_retries),
                f"Fix these review issues:\n\n{issues}",
                max_cost_usd=execution.max_cost_usd,
                max_duration_minutes=execution.max_duration_minutes,
            )
            run.add(fix)
            if fix.error:
                logger.warning("Fix phase failed", extra={"session_id": run.session_id, "reason": fix.error})
                return "Fix session failed"
            review_round += 1

    async def _finalize(self, run: AutonomousRun, pr_url: str | None, warning: str | None) -> None:
        orchestrator = self._orchestrator
        stats, changed, log = await orchestrator.collect_artifacts(run.workspace_path)
        run.state = "completed"
        await self._record(
            run,
            {
                "state": "completed",
                "prUrl": pr_url,
                "reviewWarning": warning,
                "result": {
                    "sessionId": run.session_id,
                    "turns": run.total_turns,
                    "costUsd": run.total_cost_usd,
                    "stats": stats.to_dict(),
                    "changedFiles": changed,
                    "log": log,
                    "prUrl": pr_url,
                },
            },
        )

        if self._config.notifications.on_complete:
            if pr_url:
                text = format_pr_ready(
                    run.task, pr_url, run.total_turns, run.total_cost_usd, stats.to_dict(), warning=warning
                )
            else:
                text = format_session_status(
                    "completed", run.task, run.total_turns, run.total_cost_usd, files_changed=len(changed)
                )
            orchestrator.bridge.notify(run.session_id, text, session_keyboard("completed", run.session_id))
        orchestrator.recorder.journal(
            run.session_id,
            "session_completed",
            {"turns": run.total_turns, "cost_usd": run.total_cost_usd, "pr_url": pr_url, "warning": warning},
        )
        logger.info(
            "Autonomous session completed",
            extra={"session_id": run.session_id, "pr_url": pr_url, "files_changed": len(changed)},
        )

    async def _fail(self, run: AutonomousRun, message: str, *, discard: bool) -> None:
        orchestrator = self._orchestrator
        logger.error("Autonomous session failed: %s", message, extra={"session_id": run.session_id})
        run.state = "error"
        data = {
            "state": "error",
            "result": {"error": message},
            "totalTurns": run.total_turns,
            "totalCostUsd": run.total_cost_usd,
        }
        if discard:
            await orchestrator.discard_workspace(run.workspace_path, run.branch_name)
            await orchestrator.recorder.update_if_active(run.session_id, data, status="error")
        else:
            await orchestrator.recorder.update_if_active(run.session_id, data)

        if self._config.notifications.on_error:
            orchestrator.bridge.notify(
                run.session_id,
                format_session_status("error", run.task, run.total_turns, run.total_cost_usd, error=message),
                None,
            )
        orchestrator.recorder.journal(run.session_id, "session_failed", {"error": message})

    # ------------------------------------------------------------------
    # Phases

    async def _phase(
        self,
        run: AutonomousRun,
        phase: str,
        system_prompt: str,
        task: str,
        *,
        max_cost_usd: float,
        max_duration_minutes: float,
    ) -> PhaseOutcome:
        """Run one headless invocation under a cost and a time ceiling."""

        runner = self._orchestrator.runner
        if runner is None:
            return PhaseOutcome(error="Claude CLI is unavailable")
        try:
            handle = await runner.start_headless(
                session_id=f"{run.session_id}-{phase}",
                system_prompt=system_prompt,
                task=task,
                workspace_path=run.workspace_path,
            )
        except (ClaudeRunnerError, OSError) as exc:
            return PhaseOutcome(error=f"Failed to start {phase} phase: {exc}")

        run.current = handle
        outcome = PhaseOutcome()
        logger.info(
            "Phase started",
            extra={
                "session_id": run.session_id,
                "phase": phase,
                "max_cost_usd": max_cost_usd,
                "max_duration_minutes": max_duration_minutes,
            },
        )
        try:
            await asyncio.wait_for(
                self._consume(run, phase, handle, outcome, max_cost_usd), timeout=max_duration_minutes * 60
            )
        except asyncio.TimeoutError:
            outcome.error = f"Session killed: exceeded {max_duration_minutes:g} minute time limit"
            logger.error(outcome.error, extra={"session_id": run.session_id, "phase": phase})
        finally:
            handle.kill()
            run.current = None

        self._orchestrator.recorder.journal(
            run.session_id,
            "phase_finished",
            {"phase": phase, "turns": outcome.turns, "cost_usd": outcome.cost_usd, "error": outcome.error},
        )
        return outcome

    async def _consume(
        self,
        run: AutonomousRun,
        phase: str,
        handle: AgentSession,
        outcome: PhaseOutcome,
        max_cost_usd: float,
    ) -> None:
        async for event in handle.events():
            if isinstance(event, ProgressEvent):
                if event.kind == "thinking" and event.text:
                    outcome.text = event.text
                self._orchestrator.recorder.journal(
                    run.session_id,
                    f"progress_{event.kind}",
                    {"phase": phase, "text": (event.text or "")[:2000], "tool": event.tool, "input": event.input},
                    {"kind": event.kind, "phase": phase},
                )
            elif isinstance(event, TurnResult):
                spent_before = (run.total_cost_usd or 0.0) + (outcome.cost_usd or 0.0)
                outcome.turns = event.turns
                if event.cost_usd is not None:
                    outcome.cost_usd = event.cost_usd
                if event.text:
                    outcome.text = event.text
                self._cost_milestone(run, outcome, spent_before)
                if outcome.error is None and outcome.cost_usd is not None and outcome.cost_usd >= max_cost_usd:
                    outcome.error = f"Session killed: cost ${outcome.cost_usd:.2f} exceeded ${max_cost_usd:g} limit"
                    logger.error(outcome.error, extra={"session_id": run.session_id, "phase": phase})
                    handle.kill()
            elif isinstance(event, SessionFailed):
                outcome.error = outcome.error or event.message

    def _cost_milestone(self, run: AutonomousRun, outcome: PhaseOutcome, spent_before: float) -> None:
        spent = (run.total_cost_usd or 0.0) + (outcome.cost_usd or 0.0)
        if self._config.notifications.on_progress_milestones and math.floor(spent) > math.floor(spent_before):
            self._milestone(run, "Working...", turns=run.total_turns + outcome.turns, cost_usd=spent)

    def _milestone(
        self, run: AutonomousRun, label: str, *, turns: int | None = None, cost_usd: float | None = None
    ) -> None:
        self._orchestrator.bridge.notify(
            run.session_id,
            format_progress_milestone(
                run.task,
                label,
                run.total_turns if turns is None else turns,
                run.total_cost_usd if cost_usd is None else cost_usd,
            ),
            session_keyboard("running", run.session_id),
        )


__all__ = ["AutonomousFlow", "AutonomousRun", "DiffFetcher", "PhaseOutcome", "parse_review"]
