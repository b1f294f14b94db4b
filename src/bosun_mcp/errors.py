"""Error types shared across Bosun components.

Every error raised towards a chat user carries a stable ``code`` and a
message that is safe to show. The underlying cause (stderr, git output,
tracebacks) stays on ``cause`` and in the logs.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INVALID_COMMAND = "INVALID_COMMAND"
    SESSION_EXISTS = "SESSION_EXISTS"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    NO_CREDENTIALS = "NO_CREDENTIALS"
    CLAUDE_UNAVAILABLE = "CLAUDE_UNAVAILABLE"
    ASSISTANT_TIMEOUT = "ASSISTANT_TIMEOUT"
    REPO_ACCESS = "REPO_ACCESS"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CHANNEL = "INVALID_CHANNEL"
    SHUTDOWN_FAILED = "SHUTDOWN_FAILED"


class BosunError(RuntimeError):
    """Base class for errors that map to a user-facing error code."""

    code: ErrorCode = ErrorCode.INVALID_COMMAND

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message}

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class InvalidCommandError(BosunError):
    """Raised when a request fails validation."""

    code = ErrorCode.INVALID_COMMAND


class SessionExistsError(BosunError):
    """Raised when a uniqueness rule (scope, branch, quota, directory) is violated."""

    code = ErrorCode.SESSION_EXISTS


class RecordNotFoundError(BosunError):
    """Raised when a persisted record does not exist."""

    code = ErrorCode.NOT_FOUND


class SessionNotFoundError(RecordNotFoundError):
    """Raised when a session is unknown or not in a state that allows the operation."""

    code = ErrorCode.SESSION_NOT_FOUND


class NoCredentialsError(BosunError):
    code = ErrorCode.NO_CREDENTIALS


class ClaudeUnavailableError(BosunError):
    """Raised when the assistant process is missing, not running, or cannot be spawned."""

    code = ErrorCode.CLAUDE_UNAVAILABLE


class AssistantTimeoutError(BosunError):
    """Raised when a turn does not produce its result within the send timeout."""

    code = ErrorCode.ASSISTANT_TIMEOUT


class RepoAccessError(BosunError):
    code = ErrorCode.REPO_ACCESS


class DatabaseError(BosunError):
    code = ErrorCode.DATABASE_ERROR


class UnauthorizedError(BosunError):
    code = ErrorCode.UNAUTHORIZED


class InvalidChannelError(BosunError):
    code = ErrorCode.INVALID_CHANNEL


class SupervisorShutdownError(BosunError):
    """Raised by ``stop_all`` when one or more processes failed to stop cleanly."""

    code = ErrorCode.SHUTDOWN_FAILED

    def __init__(self, failures: dict[str, BaseException]) -> None:
        summary = ", ".join(f"{session_id}: {exc}" for session_id, exc in sorted(failures.items()))
        super().__init__(f"{len(failures)} assistant process(es) failed to stop ({summary})")
        self.failures = dict(failures)


__all__ = [
    "AssistantTimeoutError",
    "BosunError",
    "ClaudeUnavailableError",
    "DatabaseError",
    "ErrorCode",
    "InvalidChannelError",
    "InvalidCommandError",
    "NoCredentialsError",
    "RecordNotFoundError",
    "RepoAccessError",
    "SessionExistsError",
    "SessionNotFoundError",
    "SupervisorShutdownError",
    "UnauthorizedError",
]
