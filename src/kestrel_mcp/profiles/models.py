"""Profile models describing how coding sessions are primed."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class CodingProfile(BaseModel):
    """System prompt material and tool permissions for a coding session."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display title for the profile.")
    system_prompt: str = Field(
        ...,
        description="Codebase framing appended to the Claude system prompt.",
    )
    rules: list[str] = Field(
        default_factory=list,
        description="Standing rules every session must follow.",
    )
    key_paths: list[str] = Field(
        default_factory=list,
        description="Repository locations worth pointing the agent at.",
    )
    allowed_tools: list[str] = Field(
        default_factory=list,
        description="Claude tool permissions; empty means the runner defaults.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata for listing and filtering.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Coding profile id must not be empty")
        return normalized

    @field_validator("rules", "key_paths", "allowed_tools", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("rules, key_paths and allowed_tools must be sequences of strings")


__all__ = ["CodingProfile"]
