"""Storage abstractions for Bosun MCP."""

from .database import SessionDatabase
from .journal import ChromaUnavailableError, JournalEvent, SessionJournal

__all__ = [
    "ChromaUnavailableError",
    "JournalEvent",
    "SessionDatabase",
    "SessionJournal",
]
