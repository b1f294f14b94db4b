"""Domain records and request models for Bosun sessions."""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import InvalidCommandError

_INVALID_FEATURE_CHARS = set("~^:?*[\\")


class SessionStatus(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.ENDED, SessionStatus.ERROR)

    @property
    def is_live(self) -> bool:
        """Whether the session occupies its conversation scope."""

        return self in (SessionStatus.STARTING, SessionStatus.ACTIVE)

    def can_transition_to(self, target: "SessionStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.STARTING: frozenset({SessionStatus.ACTIVE, SessionStatus.ERROR}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.ENDING, SessionStatus.ERROR}),
    SessionStatus.ENDING: frozenset({SessionStatus.ENDED, SessionStatus.ERROR}),
    SessionStatus.ENDED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


class SessionRole(str, Enum):
    OWNER = "owner"
    COLLABORATOR = "collaborator"


class MessageDirection(str, Enum):
    USER_TO_ASSISTANT = "user_to_assistant"
    ASSISTANT_TO_USER = "assistant_to_user"


class CredentialType(str, Enum):
    ANTHROPIC = "anthropic"
    GITHUB = "github"


@dataclass(slots=True)
class User:
    id: int
    workspace_id: str
    external_user_id: str
    name: str
    created_at: datetime


@dataclass(slots=True)
class Session:
    """Persisted state of one coding session."""

    session_id: str
    workspace_id: str
    channel_id: str
    repo_url: str
    from_commitish: str
    branch_name: str
    working_dir: str
    model_name: str
    thread_ts: str | None = None
    status: SessionStatus = SessionStatus.STARTING
    running_cost: float = 0.0
    assistant_session_id: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def feature_name(self) -> str:
        return self.branch_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "channel_id": self.channel_id,
            "thread_ts": self.thread_ts,
            "repo_url": self.repo_url,
            "from_commitish": self.from_commitish,
            "branch_name": self.branch_name,
            "working_dir": self.working_dir,
            "model_name": self.model_name,
            "status": self.status.value,
            "running_cost": self.running_cost,
            "assistant_session_id": self.assistant_session_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass(slots=True)
class SessionMember:
    session_pk: int
    user_id: int
    role: SessionRole


@dataclass(slots=True)
class SessionMessage:
    id: int
    session_pk: int
    direction: MessageDirection
    content: str
    message_ts: str
    created_at: datetime


@dataclass(slots=True)
class SystemPrompt:
    id: int
    name: str
    description: str
    content: str
    is_public: bool
    created_by: int | None
    created_at: datetime | None = None


@dataclass(slots=True)
class TeardownReport:
    """Outcome of ending a session. Failed steps are collected, never raised."""

    session_id: str
    steps: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    pushed: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "steps": list(self.steps),
            "failures": dict(self.failures),
            "pushed": self.pushed,
            "ok": self.ok,
        }


def validate_feature_name(name: str) -> str:
    """Return ``name`` if it is usable as a git branch name, else raise ``ValueError``."""

    if not name:
        raise ValueError("feature name cannot be empty")
    if any(ch in string.whitespace for ch in name):
        raise ValueError("feature name cannot contain spaces")
    if name.startswith("-") or name.endswith("-"):
        raise ValueError("feature name cannot start or end with hyphen")
    if ".." in name:
        raise ValueError("feature name cannot contain '..'")
    if any(ch in _INVALID_FEATURE_CHARS or ord(ch) < 32 or ord(ch) == 127 for ch in name):
        raise ValueError("feature name contains invalid characters")
    return name


class CreateSessionRequest(BaseModel):
    """Everything needed to create a session, as parsed from a chat command."""

    workspace_id: str = Field(..., description="Chat workspace identifier.")
    user_id: int = Field(..., description="Internal id of the requesting user.")
    channel_id: str = Field(..., description="Channel the session is bound to.")
    channel_name: str | None = Field(default=None, description="Human-readable channel name.")
    thread_ts: str | None = Field(default=None, description="Thread the session is bound to, if any.")
    repo_url: str = Field(..., description="Git repository to clone.")
    from_commitish: str = Field(..., description="Branch, tag or commit to branch from.")
    feature_name: str = Field(..., description="Name of the new branch and session directory.")
    model: str = Field(..., description="Assistant model name.")
    prompt_text: str | None = Field(default=None, description="Literal system prompt.")
    prompt_name: str | None = Field(default=None, description="Name of a stored system prompt.")

    @field_validator("workspace_id", "channel_id", "repo_url", "from_commitish", "model")
    @classmethod
    def _require_text(cls, value: str, info) -> str:  # type: ignore[override]
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} is required")
        return normalized

    @field_validator("thread_ts", "channel_name", "prompt_text", "prompt_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any):  # type: ignore[override]
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("feature_name")
    @classmethod
    def _check_feature_name(cls, value: str) -> str:
        return validate_feature_name(value)

    @model_validator(mode="after")
    def _one_prompt_source(self) -> "CreateSessionRequest":
        if self.prompt_text is not None and self.prompt_name is not None:
            raise ValueError("use either a prompt or a prompt name, not both")
        return self


def parse_create_request(data: dict[str, Any]) -> CreateSessionRequest:
    """Validate raw command fields, reporting every problem as one ``InvalidCommandError``."""

    try:
        return CreateSessionRequest.model_validate(data)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
            location = ".".join(str(part) for part in error.get("loc", ()))
            problems.append(f"{location}: {message}" if location else message)
        raise InvalidCommandError("; ".join(problems), cause=exc) from exc


__all__ = [
    "CreateSessionRequest",
    "CredentialType",
    "MessageDirection",
    "Session",
    "SessionMember",
    "SessionMessage",
    "SessionRole",
    "SessionStatus",
    "SystemPrompt",
    "TeardownReport",
    "User",
    "parse_create_request",
    "validate_feature_name",
]
