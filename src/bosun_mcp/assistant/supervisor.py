"""Registry of running assistant processes, one per session."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Sequence

from ..errors import (
    ClaudeUnavailableError,
    SessionExistsError,
    SessionNotFoundError,
    SupervisorShutdownError,
)
from .process import AssistantProcess, EventHandler, ProcessStatus, TurnResult
from .utils import assistant_environment, resolve_executable

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Asyncio lock allowing many readers or one writer.

    Waiting writers block new readers so a steady stream of sends cannot
    starve ``start``/``stop``.
    """

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._writer and not self._waiting_writers)
            self._readers += 1
        try:
            yield
        finally:
            async with self._condition:
                self._readers -= 1
                if not self._readers:
                    self._condition.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._condition:
            self._waiting_writers += 1
            try:
                await self._condition.wait_for(lambda: not self._writer and not self._readers)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._condition:
                self._writer = False
                self._condition.notify_all()


@dataclass(slots=True)
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class AssistantSupervisor:
    """Start, talk to, and stop assistant processes keyed by session id.

    Per-session locks live only while someone holds or waits on them.
    """

    def __init__(
        self,
        executable: str | Path | None = None,
        *,
        send_timeout: float = 30.0,
        stop_grace: float = 5.0,
        extra_args: Sequence[str] = (),
    ) -> None:
        self._executable_hint = executable
        self._send_timeout = send_timeout
        self._stop_grace = stop_grace
        self._extra_args = tuple(extra_args)
        self._processes: dict[str, AssistantProcess] = {}
        self._registry_lock = ReadWriteLock()
        self._session_locks: dict[str, _SessionLock] = {}

    @property
    def send_timeout(self) -> float:
        return self._send_timeout

    @property
    def lock_count(self) -> int:
        return len(self._session_locks)

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        entry = self._session_locks.get(session_id)
        if entry is None:
            entry = self._session_locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users and self._session_locks.get(session_id) is entry:
                del self._session_locks[session_id]

    def build_args(self, model: str, *, prompt: str | None = None, resume_token: str | None = None) -> list[str]:
        args = [
            "-p",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            model,
        ]
        if prompt:
            args.extend(["--append-system-prompt", prompt])
        if resume_token:
            args.extend(["--resume", resume_token])
        args.extend(self._extra_args)
        return args

    async def start(
        self,
        session_id: str,
        working_dir: Path,
        model: str,
        credential: str,
        prompt: str | None = None,
        *,
        resume_token: str | None = None,
        on_event: EventHandler | None = None,
    ) -> AssistantProcess:
        async with self._session_lock(session_id):
            async with self._registry_lock.write():
                if session_id in self._processes:
                    raise SessionExistsError(f"an assistant is already running for session {session_id}")

                executable = resolve_executable(self._executable_hint)
                if executable is None:
                    raise ClaudeUnavailableError(
                        f"assistant executable not found ({self._executable_hint or 'claude'})"
                    )
                process = await AssistantProcess.launch(
                    executable,
                    self.build_args(model, prompt=prompt, resume_token=resume_token),
                    session_id=session_id,
                    working_dir=Path(working_dir),
                    env=assistant_environment(credential),
                    on_event=on_event,
                )
                self._processes[session_id] = process
                return process

    async def get(self, session_id: str) -> AssistantProcess | None:
        async with self._registry_lock.read():
            return self._processes.get(session_id)

    async def status(self, session_id: str) -> ProcessStatus | None:
        process = await self.get(session_id)
        return process.status if process is not None else None

    async def session_ids(self) -> list[str]:
        async with self._registry_lock.read():
            return sorted(self._processes)

    async def active_count(self) -> int:
        async with self._registry_lock.read():
            return sum(1 for process in self._processes.values() if process.status is ProcessStatus.RUNNING)

    async def send(self, session_id: str, message: str) -> TurnResult:
        async with self._session_lock(session_id):
            async with self._registry_lock.read():
                process = self._processes.get(session_id)
            if process is None:
                raise SessionNotFoundError(f"no assistant is running for session {session_id}")
            if process.status is not ProcessStatus.RUNNING:
                raise ClaudeUnavailableError(f"assistant for session {session_id} is {process.status.value}")
            future = await process.write_turn(message)
        # Waiting happens outside the session lock so stop is never stuck behind a slow turn.
        return await process.wait_turn(future, self._send_timeout)

    async def stop(self, session_id: str) -> bool:
        """Stop and forget the process. Returns ``False`` if nothing was tracked."""

        async with self._session_lock(session_id):
            async with self._registry_lock.write():
                process = self._processes.pop(session_id, None)
            if process is None:
                return False
            await process.terminate(self._stop_grace)
        logger.info(
            "Assistant process stopped",
            extra={"session_id": session_id, "returncode": process.returncode},
        )
        return True

    async def discard(self, session_id: str) -> AssistantProcess | None:
        """Forget a process that has already exited, so the session can be resumed."""

        async with self._session_lock(session_id):
            async with self._registry_lock.write():
                process = self._processes.get(session_id)
                if process is None or process.status is ProcessStatus.RUNNING:
                    return None
                return self._processes.pop(session_id)

    async def stop_all(self, timeout: float | None = None) -> None:
        async with self._registry_lock.read():
            session_ids = list(self._processes)
        if not session_ids:
            return

        async def _stop_all() -> list[object]:
            return await asyncio.gather(
                *(self.stop(session_id) for session_id in session_ids),
                return_exceptions=True,
            )

        failures: dict[str, BaseException] = {}
        try:
            if timeout is None:
                results = await _stop_all()
            else:
                results = await asyncio.wait_for(_stop_all(), timeout)
            for session_id, outcome in zip(session_ids, results):
                if isinstance(outcome, BaseException):
                    failures[session_id] = outcome
        except asyncio.TimeoutError as exc:
            for session_id in session_ids:
                failures.setdefault(session_id, exc)
        finally:
            async with self._registry_lock.write():
                leftovers = list(self._processes.values())
                self._processes.clear()
            for process in leftovers:
                process.kill()

        if failures:
            logger.error("Failed to stop assistant processes", extra={"failures": sorted(failures)})
            raise SupervisorShutdownError(failures)


__all__ = ["AssistantSupervisor", "ReadWriteLock"]
