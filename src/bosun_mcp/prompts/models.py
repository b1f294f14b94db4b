"""Prompt template models for assistant sessions."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class PromptTemplate(BaseModel):
    """A named system prompt available to every user."""

    name: str = Field(..., description="Unique name used with --prompt-name.")
    description: str = Field(default="", description="One-line summary shown in listings.")
    content: str = Field(..., description="System prompt text appended to the assistant's own.")
    tags: list[str] = Field(default_factory=list, description="Free-form labels for filtering.")

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Prompt name must not be empty")
        if any(ch.isspace() for ch in normalized):
            raise ValueError("Prompt name must not contain whitespace")
        return normalized

    @field_validator("content")
    @classmethod
    def _require_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Prompt content must not be empty")
        return value.strip()

    @field_validator("tags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("Tags must be a sequence of strings")


DEFAULT_PROMPT = PromptTemplate(
    name="default",
    description="Work on the session branch and keep changes reviewable.",
    content=(
        "You are working in a dedicated git branch checked out for this chat session. "
        "Keep changes focused on the request, explain what you changed, and do not push; "
        "the session commits and pushes your work when it ends."
    ),
)


__all__ = ["DEFAULT_PROMPT", "PromptTemplate"]
