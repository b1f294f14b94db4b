"""Utility helpers for launching the assistant CLI."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "ANTHROPIC_API_KEY",
}

# Keeps the assistant from phoning home or spending tokens outside the session.
ASSISTANT_QUIET_ENV = {
    "DISABLE_TELEMETRY": "1",
    "DISABLE_ERROR_REPORTING": "1",
    "DISABLE_BUG_COMMAND": "1",
    "DISABLE_NON_ESSENTIAL_MODEL_CALLS": "1",
}

DEFAULT_EXECUTABLE = "claude"


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def assistant_environment(credential: str) -> dict[str, str]:
    """Environment for one assistant process, carrying only that user's API key."""

    return sanitize_environment({**ASSISTANT_QUIET_ENV, "ANTHROPIC_API_KEY": credential})


def resolve_executable(explicit: str | Path | None) -> Path | None:
    """Locate the assistant executable, or ``None`` when it cannot be found."""

    if explicit is not None:
        candidate = Path(explicit)
        if candidate.exists() and candidate.is_file():
            return candidate
        found = shutil.which(str(explicit))
        return Path(found) if found else None

    binary = shutil.which(DEFAULT_EXECUTABLE)
    return Path(binary) if binary else None


__all__ = [
    "ASSISTANT_QUIET_ENV",
    "DEFAULT_EXECUTABLE",
    "assistant_environment",
    "resolve_executable",
    "sanitize_environment",
]
