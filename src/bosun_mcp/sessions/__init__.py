"""Session lifecycle management."""

from .manager import LoggingNotifier, Notifier, SessionManager
from .progress import ProgressEvent, ProgressStream

__all__ = [
    "LoggingNotifier",
    "Notifier",
    "ProgressEvent",
    "ProgressStream",
    "SessionManager",
]
