"""Coding profile models, loader and prompt builders."""

from .loader import CodingProfile, ProfileLoadError, ProfileLoader
from .prompts import (
    DEFAULT_PROFILE,
    build_code_prompt,
    build_execution_prompt,
    build_fix_prompt,
    build_planning_prompt,
    build_resume_context,
    build_resume_task,
    build_review_prompt,
    slugify_task,
)

__all__ = [
    "CodingProfile",
    "DEFAULT_PROFILE",
    "ProfileLoadError",
    "ProfileLoader",
    "build_code_prompt",
    "build_execution_prompt",
    "build_fix_prompt",
    "build_planning_prompt",
    "build_resume_context",
    "build_resume_task",
    "build_review_prompt",
    "slugify_task",
]
