"""Progress notifications for a single session."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

HISTORY_SIZE = 200
QUEUE_SIZE = 100


@dataclass(slots=True)
class ProgressEvent:
    session_id: str
    stage: str
    message: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "stage": self.stage,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            **({"data": self.data} if self.data else {}),
        }


ProgressListener = Callable[[ProgressEvent], None]


class ProgressStream:
    """Async iterator of progress events that ends when the stream is closed.

    Calling the stream with a string publishes a ``progress`` event, so it can
    be handed to anything that takes a plain progress callback. Listeners see
    every event synchronously, and recent events stay in ``history`` for
    callers that poll instead of iterating. The iteration queue holds at most
    ``QUEUE_SIZE`` events; when it is full the oldest one is dropped.
    """

    def __init__(self, session_id: str, *, clock: Callable[[], datetime] | None = None) -> None:
        self.session_id = session_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._history: deque[ProgressEvent] = deque(maxlen=HISTORY_SIZE)
        self._listeners: list[ProgressListener] = []
        self._closed = False
        self._dropped = 0

    def __call__(self, message: str) -> None:
        self.publish("progress", message)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def history(self) -> list[ProgressEvent]:
        return list(self._history)

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def publish(self, stage: str, message: str, **data: Any) -> ProgressEvent | None:
        if self._closed:
            return None
        event = ProgressEvent(self.session_id, stage, message, self._clock(), dict(data))
        self._history.append(event)
        self._enqueue(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed", extra={"session_id": self.session_id})
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._enqueue(None)

    def _enqueue(self, item: ProgressEvent | None) -> None:
        # Nobody may be iterating; drop the oldest event rather than grow.
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
            if self._dropped == 1:
                logger.debug("Progress queue full, dropping oldest events", extra={"session_id": self.session_id})
        self._queue.put_nowait(item)

    def __aiter__(self) -> "ProgressStream":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self._queue.get()
        if event is None:
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return event


__all__ = ["ProgressEvent", "ProgressListener", "ProgressStream"]
