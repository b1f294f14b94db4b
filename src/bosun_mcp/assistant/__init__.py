"""Assistant CLI process management."""

from .process import AssistantEvent, AssistantProcess, ProcessStatus, TurnResult
from .supervisor import AssistantSupervisor, ReadWriteLock

__all__ = [
    "AssistantEvent",
    "AssistantProcess",
    "AssistantSupervisor",
    "ProcessStatus",
    "ReadWriteLock",
    "TurnResult",
]
