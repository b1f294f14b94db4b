"""One long-lived assistant CLI process and its output pump."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from ..errors import AssistantTimeoutError, ClaudeUnavailableError
from .protocol import RESULT_TYPES, ParsedLine, RawLine, SystemMessage, parse_line, user_turn

logger = logging.getLogger(__name__)

EXIT_SENTINEL = b"exit\n"
STREAM_LIMIT = 10 * 1024 * 1024
QUEUE_SIZE = 1024
DRAIN_TIMEOUT = 5.0


class ProcessStatus(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(slots=True)
class AssistantEvent:
    """One item from the process's ordered output stream."""

    session_id: str
    kind: str  # message | raw | stderr | exit
    line: str
    message: ParsedLine | None = None
    cost_delta: float = 0.0
    returncode: int | None = None


@dataclass(slots=True)
class TurnResult:
    """Terminal unit of one turn, as reported by the assistant's ``result`` message."""

    text: str
    subtype: str
    is_error: bool = False
    num_turns: int = 0
    cost_usd: float = 0.0
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "subtype": self.subtype,
            "is_error": self.is_error,
            "num_turns": self.num_turns,
            "cost_usd": self.cost_usd,
        }


EventHandler = Callable[[AssistantEvent], "Awaitable[None] | None"]


def _retrieve_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class AssistantProcess:
    """Wraps a running assistant CLI.

    stdout and stderr are read by two tasks into one bounded queue, and a
    single consumer task drains it, so events reach ``on_event`` in the order
    they were read. Each ``result`` message closes the oldest pending turn.
    """

    def __init__(
        self,
        session_id: str,
        process: asyncio.subprocess.Process,
        *,
        args: Sequence[str] = (),
        on_event: EventHandler | None = None,
        started_at: datetime | None = None,
    ) -> None:
        self.session_id = session_id
        self.args = tuple(args)
        self.started_at = started_at or datetime.now(timezone.utc)
        self.returncode: int | None = None
        self.continuation_token: str | None = None
        self._process = process
        self._on_event = on_event
        self._status = ProcessStatus.RUNNING
        self._queue: asyncio.Queue[tuple[str, str | None]] = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._pending: deque[asyncio.Future[TurnResult]] = deque()
        self._total_cost = Decimal("0")
        self._last_reported_total = Decimal("0")
        self._tasks: list[asyncio.Task] = []
        self._consumer: asyncio.Task | None = None
        self._watcher: asyncio.Task | None = None

    @classmethod
    async def launch(
        cls,
        executable: Path,
        args: Sequence[str],
        *,
        session_id: str,
        working_dir: Path,
        env: dict[str, str],
        on_event: EventHandler | None = None,
    ) -> "AssistantProcess":
        cmd = [str(executable), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(working_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise ClaudeUnavailableError("failed to start the assistant", cause=exc) from exc

        instance = cls(session_id, process, args=cmd, on_event=on_event)
        instance._begin()
        logger.info(
            "Assistant process started",
            extra={"session_id": session_id, "pid": process.pid, "working_dir": str(working_dir)},
        )
        return instance

    def _begin(self) -> None:
        self._tasks = [
            asyncio.create_task(self._read_stream(self._process.stdout, "stdout")),
            asyncio.create_task(self._read_stream(self._process.stderr, "stderr")),
        ]
        self._consumer = asyncio.create_task(self._consume())
        self._watcher = asyncio.create_task(self._watch())

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def total_cost(self) -> float:
        return float(self._total_cost)

    @property
    def pending_turns(self) -> int:
        return len(self._pending)

    async def write_turn(self, message: str) -> asyncio.Future[TurnResult]:
        """Write one user turn and return the future of its result."""

        if self._status is not ProcessStatus.RUNNING:
            raise ClaudeUnavailableError(f"assistant is {self._status.value}")
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise ClaudeUnavailableError("assistant is not accepting input")

        future: asyncio.Future[TurnResult] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_exception)
        self._pending.append(future)
        try:
            stdin.write(user_turn(message).encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            if future in self._pending:
                self._pending.remove(future)
            future.cancel()
            raise ClaudeUnavailableError("assistant is not accepting input", cause=exc) from exc
        return future

    async def wait_turn(self, future: asyncio.Future[TurnResult], timeout: float) -> TurnResult:
        # The future stays queued on timeout so a late result is matched to its own turn.
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError as exc:
            raise AssistantTimeoutError(
                f"the assistant did not answer within {timeout:g} seconds"
            ) from exc

    async def send(self, message: str, *, timeout: float) -> TurnResult:
        future = await self.write_turn(message)
        return await self.wait_turn(future, timeout)

    async def terminate(self, grace: float) -> int | None:
        """Ask the process to exit, kill it after ``grace`` seconds, and reap it."""

        if self._status is ProcessStatus.RUNNING:
            self._status = ProcessStatus.STOPPING
        try:
            if self._process.returncode is None:
                await self._request_exit()
                try:
                    await asyncio.wait_for(self._process.wait(), grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Assistant process ignored exit request; killing",
                        extra={"session_id": self.session_id, "pid": self.pid, "grace": grace},
                    )
                    self.kill()
                    await self._process.wait()
            if self._watcher is not None:
                await self._watcher
        except asyncio.CancelledError:
            self.kill()
            raise
        return self._process.returncode

    async def _request_exit(self) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.write(EXIT_SENTINEL)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            stdin.close()

    def kill(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def _read_stream(self, stream: asyncio.StreamReader | None, source: str) -> None:
        try:
            if stream is None:
                return
            while True:
                try:
                    chunk = await stream.readline()
                except ValueError:
                    logger.warning(
                        "Dropped assistant output line over %d bytes",
                        STREAM_LIMIT,
                        extra={"session_id": self.session_id, "source": source},
                    )
                    continue
                if not chunk:
                    break
                await self._queue.put((source, chunk.decode("utf-8", errors="replace").rstrip("\r\n")))
        finally:
            await self._queue.put((source, None))

    async def _consume(self) -> None:
        open_streams = 2
        while open_streams:
            source, line = await self._queue.get()
            if line is None:
                open_streams -= 1
                continue
            try:
                await self._handle_line(source, line)
            except Exception:
                logger.exception("Failed to handle assistant output", extra={"session_id": self.session_id})

    async def _handle_line(self, source: str, line: str) -> None:
        if source == "stderr":
            logger.debug("assistant stderr: %s", line, extra={"session_id": self.session_id})
            await self._dispatch(AssistantEvent(self.session_id, "stderr", line))
            return

        message = parse_line(line)
        if isinstance(message, RawLine):
            await self._dispatch(AssistantEvent(self.session_id, "raw", line, message))
            return

        if isinstance(message, SystemMessage) and message.is_init and message.session_id:
            self.continuation_token = message.session_id

        if isinstance(message, RESULT_TYPES):
            delta = self._account_cost(message)
            await self._dispatch(
                AssistantEvent(self.session_id, "message", line, message, cost_delta=float(delta))
            )
            self._complete_turn(
                TurnResult(
                    text=message.result,
                    subtype=message.subtype,
                    is_error=message.is_error or message.subtype != "success",
                    num_turns=message.num_turns,
                    cost_usd=float(delta),
                    metadata={"session_id": message.session_id},
                )
            )
            return

        await self._dispatch(AssistantEvent(self.session_id, "message", line, message))

    def _account_cost(self, message) -> Decimal:
        # cost_usd is per turn; total_cost_usd is cumulative for the process.
        delta = Decimal("0")
        if message.cost_usd is not None:
            delta = Decimal(repr(message.cost_usd))
            if message.total_cost_usd is not None:
                self._last_reported_total = Decimal(repr(message.total_cost_usd))
        elif message.total_cost_usd is not None:
            total = Decimal(repr(message.total_cost_usd))
            delta = total - self._last_reported_total
            self._last_reported_total = max(total, self._last_reported_total)
        if delta < 0:
            delta = Decimal("0")
        self._total_cost += delta
        return delta

    def _complete_turn(self, result: TurnResult) -> None:
        while self._pending:
            future = self._pending.popleft()
            if not future.done():
                future.set_result(result)
                return
        logger.debug("Result without a pending turn", extra={"session_id": self.session_id})

    def _fail_pending(self, error: Exception) -> None:
        while self._pending:
            future = self._pending.popleft()
            if not future.done():
                future.set_exception(error)

    async def _dispatch(self, event: AssistantEvent) -> None:
        if self._on_event is None:
            return
        try:
            outcome = self._on_event(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception(
                "Assistant event handler failed",
                extra={"session_id": self.session_id, "kind": event.kind},
            )

    async def _watch(self) -> None:
        returncode = await self._process.wait()
        if self._consumer is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._consumer), DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(
                    "Assistant output still open after exit", extra={"session_id": self.session_id}
                )

        self.returncode = returncode
        if self._status is ProcessStatus.RUNNING:
            self._status = ProcessStatus.ERROR if returncode != 0 else ProcessStatus.STOPPED
        elif self._status is ProcessStatus.STOPPING:
            self._status = ProcessStatus.STOPPED

        log = logger.warning if self._status is ProcessStatus.ERROR else logger.info
        log(
            "Assistant process exited",
            extra={"session_id": self.session_id, "returncode": returncode, "status": self._status.value},
        )
        self._fail_pending(ClaudeUnavailableError(f"assistant exited with code {returncode}"))
        await self._dispatch(
            AssistantEvent(self.session_id, "exit", "", returncode=returncode)
        )


__all__ = [
    "AssistantEvent",
    "AssistantProcess",
    "EventHandler",
    "ProcessStatus",
    "TurnResult",
]
