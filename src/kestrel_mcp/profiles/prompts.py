"""Prompt builders and branch naming for coding sessions."""

from __future__ import annotations

import re

from .models import CodingProfile

DEFAULT_PROFILE = CodingProfile(
    id="default",
    title="Default",
    system_prompt="You are working in a git worktree created for this task.",
    rules=[
        "Make focused changes; do not refactor unrelated code",
        "Run the project's tests if you changed code near existing tests",
        "Commit your work with clear messages describing what changed and why",
    ],
)


def build_code_prompt(profile: CodingProfile, task: str, context: str | None = None) -> str:
    """Render the system prompt for a session working on ``task``."""

    sections = [profile.system_prompt.strip(), "## Your Task\n" + task.strip()]
    if context:
        sections.append("## Additional Context\n" + context.strip())
    if profile.rules:
        sections.append("## Rules\n" + "\n".join(f"- {rule}" for rule in profile.rules))
    if profile.key_paths:
        sections.append("## Key Paths\n" + "\n".join(f"- {path}" for path in profile.key_paths))
    return "\n\n".join(sections)


def build_resume_context(base_branch: str, context: str | None = None) -> str:
    lines = [
        "RESUME: This session is being resumed from a previous run.",
        "The worktree already has work in progress.",
        f"Check `git log --oneline {base_branch}..HEAD` and `git status` to see what was done.",
        "Continue from where you left off.",
    ]
    if context:
        lines.append(context)
    return "\n".join(lines)


def build_resume_task(task: str) -> str:
    return (
        f"Continue working on: {task}\n\n"
        "This is a resumed session. Check git log and git status to see what was already done, "
        "then continue."
    )


def _key_paths(profile: CodingProfile) -> list[str]:
    if not profile.key_paths:
        return []
    return ["## Key Paths\n" + "\n".join(f"- {path}" for path in profile.key_paths)]


def build_planning_prompt(profile: CodingProfile, task: str, context: str | None = None) -> str:
    """System prompt for a read-only run that only produces a plan."""

    sections = [profile.system_prompt.strip(), "## Your Task\n" + task.strip()]
    if context:
        sections.append("## Additional Context\n" + context.strip())
    sections.append(
        "## Instructions\n"
        "You are in PLANNING MODE. Do NOT make any edits. Your job is to:\n\n"
        "1. Read and understand the relevant code\n"
        "2. Identify which files need to change and why\n"
        "3. Consider edge cases and risks\n"
        "4. Produce a structured plan"
    )
    sections.append(
        "## Output Format\n"
        "Output your plan in this exact format:\n\n"
        "## Plan\n\n"
        "### Summary\nOne paragraph describing the approach.\n\n"
        "### Steps\n1. [File path]: What to change and why\n2. [File path]: What to change and why\n...\n\n"
        "### Testing\n- How to verify the changes work\n\n"
        "### Risks\n- Any potential issues or things to watch out for"
    )
    return "\n\n".join(sections + _key_paths(profile))


def build_execution_prompt(
    profile: CodingProfile,
    task: str,
    plan: str,
    *,
    commit_strategy: str = "incremental",
    max_retries: int = 3,
) -> str:
    if commit_strategy == "incremental":
        commit = "Commit after each logical chunk of work with clear commit messages"
    else:
        commit = "Make all changes, then create a single commit at the end"
    rules = [
        "Follow the plan step by step",
        commit,
        f"If tests fail, debug and fix (up to {max_retries} attempts per issue, then note the failure)",
        *profile.rules,
    ]
    sections = [
        profile.system_prompt.strip(),
        "## Your Task\n" + task.strip(),
        "## Approved Plan\n"
        "Follow this plan. Do not deviate unless you discover something that makes a step impossible.\n\n"
        + plan.strip(),
        "## Execution Rules\n" + "\n".join(f"- {rule}" for rule in rules),
        "## When Done\n"
        "1. Ensure all changes are committed\n"
        "2. Run `git push -u origin HEAD` to push the branch\n"
        '3. Create a PR: `gh pr create --title "<concise title>" --body "<summary of changes>"`\n'
        "4. Output the PR URL as your final message",
    ]
    return "\n\n".join(sections + _key_paths(profile))


def build_review_prompt(profile: CodingProfile, task: str, plan: str, diff: str) -> str:
    sections = [
        "You are reviewing a pull request produced for the task below.",
        "## Original Task\n" + task.strip(),
        "## Approved Plan\n" + plan.strip(),
        "## PR Diff\n```diff\n" + diff.rstrip() + "\n```",
        "## Review Instructions\n"
        "Evaluate the PR against these criteria:\n\n"
        "1. **Plan adherence**: Does the code implement what the plan described? Anything missing or extra?\n"
        "2. **Correctness**: Any bugs, logic errors, off-by-one errors, race conditions?\n"
        "3. **Type safety**: Any type mismatches, missing null checks, unsafe casts?\n"
        "4. **Security**: Any injection vulnerabilities, exposed secrets, unsafe user input handling?\n"
        "5. **Edge cases**: Any unhandled error paths, missing fallbacks?",
        "## Output Format\n"
        "If the PR looks good:\n```\nAPPROVED\n```\n\n"
        "If there are issues to fix:\n```\nISSUES FOUND:\n"
        "1. [file path]: Description of the issue\n2. [file path]: Description of the issue\n...\n```\n\n"
        "Be concise. Only flag real issues, not style preferences or minor nits.\n"
        "Do NOT flag missing tests unless the plan specifically called for them.",
    ]
    return "\n\n".join(sections + _key_paths(profile))


def build_fix_prompt(profile: CodingProfile, task: str, issues: str, *, max_retries: int = 3) -> str:
    sections = [
        profile.system_prompt.strip(),
        "## Original Task\n" + task.strip(),
        "## Review Issues to Fix\n" + issues.strip(),
        "## Instructions\n"
        "- Fix each issue listed above\n"
        f"- If a fix fails after {max_retries} attempts, note it and move on\n"
        "- Commit your fixes with a clear message\n"
        "- Push: `git push`\n"
        '- Output "FIXES PUSHED" as your final message',
    ]
    return "\n\n".join(sections + _key_paths(profile))


def slugify_task(task: str, *, limit: int = 50) -> str:
    """Branch-safe slug: lowercase alphanumerics and single dashes."""

    slug = re.sub(r"[^a-z0-9 -]", "", task.lower())
    slug = slug.replace(" ", "-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:limit].strip("-")


__all__ = [
    "DEFAULT_PROFILE",
    "build_code_prompt",
    "build_execution_prompt",
    "build_fix_prompt",
    "build_planning_prompt",
    "build_resume_context",
    "build_resume_task",
    "build_review_prompt",
    "slugify_task",
]
