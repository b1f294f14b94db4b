from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from bosun_mcp.assistant import AssistantEvent, AssistantSupervisor, ProcessStatus, ReadWriteLock
from bosun_mcp.assistant.protocol import AssistantMessage, RawLine
from bosun_mcp.assistant.utils import sanitize_environment
from bosun_mcp.errors import (
    AssistantTimeoutError,
    ClaudeUnavailableError,
    SessionExistsError,
    SessionNotFoundError,
)


def _workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir(exist_ok=True)
    return path


def test_build_args_orders_flags() -> None:
    supervisor = AssistantSupervisor("claude", extra_args=("--max-turns", "5"))

    args = supervisor.build_args("opus", prompt="Be brief", resume_token="tok-1")

    assert args == [
        "-p",
        "--input-format",
        "stream-json",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        "opus",
        "--append-system-prompt",
        "Be brief",
        "--resume",
        "tok-1",
        "--max-turns",
        "5",
    ]


def test_start_send_and_stop(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("echo")
    workdir = _workdir(tmp_path)
    events: list[AssistantEvent] = []

    async def scenario():
        supervisor = AssistantSupervisor(script, send_timeout=5)
        process = await supervisor.start(
            "s1", workdir, "sonnet", "sk-test", "Be brief", on_event=events.append
        )
        first = await supervisor.send("s1", "hello")
        second = await supervisor.send("s1", "again")
        token = process.continuation_token
        total = process.total_cost
        stopped = await supervisor.stop("s1")
        return process, first, second, token, total, stopped, await supervisor.get("s1")

    process, first, second, token, total, stopped, after = asyncio.run(scenario())

    assert first.text == "reply 1"
    assert second.text == "reply 2"
    assert first.cost_usd == pytest.approx(0.002)
    assert total == pytest.approx(0.004)
    assert token == "tok-123"
    assert stopped is True
    assert after is None
    assert process.status is ProcessStatus.STOPPED
    assert process.returncode == 0

    args = (tmp_path / "assistant-args.txt").read_text(encoding="utf-8").splitlines()
    assert args[:8] == ["-p", "--input-format", "stream-json", "--output-format", "stream-json", "--verbose", "--model", "sonnet"]
    assert args[8:] == ["--append-system-prompt", "Be brief"]
    key, telemetry = (tmp_path / "assistant-env.txt").read_text(encoding="utf-8").splitlines()
    assert key == "sk-test"
    assert telemetry == "1"
    assert Path((tmp_path / "assistant-cwd.txt").read_text(encoding="utf-8").strip()).resolve() == workdir.resolve()

    kinds = [event.kind for event in events]
    assert kinds[-1] == "exit"
    assert any(isinstance(event.message, RawLine) for event in events)
    assert any(isinstance(event.message, AssistantMessage) for event in events)
    assert sum(event.cost_delta for event in events) == pytest.approx(0.004)


def test_duplicate_start_is_rejected(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("echo")

    async def scenario():
        supervisor = AssistantSupervisor(script)
        await supervisor.start("s1", _workdir(tmp_path), "sonnet", "key")
        try:
            with pytest.raises(SessionExistsError):
                await supervisor.start("s1", _workdir(tmp_path), "sonnet", "key")
        finally:
            await supervisor.stop_all(5)

    asyncio.run(scenario())


def test_missing_executable(tmp_path: Path) -> None:
    supervisor = AssistantSupervisor(tmp_path / "no-such-claude")

    with pytest.raises(ClaudeUnavailableError):
        asyncio.run(supervisor.start("s1", _workdir(tmp_path), "sonnet", "key"))


def test_send_to_unknown_session() -> None:
    supervisor = AssistantSupervisor("claude")

    with pytest.raises(SessionNotFoundError):
        asyncio.run(supervisor.send("missing", "hi"))


def test_stop_unknown_session_returns_false() -> None:
    assert asyncio.run(AssistantSupervisor("claude").stop("missing")) is False


def test_send_times_out_and_late_result_is_not_misattributed(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("silent")

    async def scenario():
        supervisor = AssistantSupervisor(script, send_timeout=0.2)
        process = await supervisor.start("s1", _workdir(tmp_path), "sonnet", "key")
        with pytest.raises(AssistantTimeoutError):
            await supervisor.send("s1", "hello")
        pending = process.pending_turns
        await supervisor.stop("s1")
        return pending

    assert asyncio.run(scenario()) == 1


def test_crash_fails_pending_turn_and_marks_error(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("crash")
    events: list[AssistantEvent] = []

    async def scenario():
        supervisor = AssistantSupervisor(script, send_timeout=5)
        process = await supervisor.start("s1", _workdir(tmp_path), "sonnet", "key", on_event=events.append)
        with pytest.raises(ClaudeUnavailableError):
            await supervisor.send("s1", "hello")
        for _ in range(50):
            if process.status is ProcessStatus.ERROR:
                break
            await asyncio.sleep(0.05)
        with pytest.raises(ClaudeUnavailableError):
            await supervisor.send("s1", "again")
        discarded = await supervisor.discard("s1")
        return process, discarded

    process, discarded = asyncio.run(scenario())

    assert process.status is ProcessStatus.ERROR
    assert process.returncode == 3
    assert discarded is process
    assert any(event.kind == "stderr" and "fatal" in event.line for event in events)


def test_stop_kills_process_that_ignores_exit(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("hang")

    async def scenario():
        supervisor = AssistantSupervisor(script, stop_grace=0.3)
        process = await supervisor.start("s1", _workdir(tmp_path), "sonnet", "key")
        started = time.monotonic()
        await supervisor.stop("s1")
        return process, time.monotonic() - started

    process, elapsed = asyncio.run(scenario())

    assert process.returncode is not None
    assert process.returncode != 0
    assert elapsed < 10


def test_stop_all_stops_processes_concurrently(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("hang")

    async def scenario():
        supervisor = AssistantSupervisor(script, stop_grace=0.5)
        for index in range(3):
            await supervisor.start(f"s{index}", _workdir(tmp_path), "sonnet", "key")
        started = time.monotonic()
        await supervisor.stop_all(10)
        return time.monotonic() - started, await supervisor.session_ids()

    elapsed, remaining = asyncio.run(scenario())

    assert remaining == []
    assert elapsed < 1.5 * 3


def test_handler_failure_does_not_break_the_stream(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("echo")

    def explode(event: AssistantEvent) -> None:
        raise RuntimeError("handler bug")

    async def scenario():
        supervisor = AssistantSupervisor(script, send_timeout=5)
        await supervisor.start("s1", _workdir(tmp_path), "sonnet", "key", on_event=explode)
        try:
            return await supervisor.send("s1", "hello")
        finally:
            await supervisor.stop("s1")

    assert asyncio.run(scenario()).text == "reply 1"


def test_read_write_lock_excludes_writers() -> None:
    lock = ReadWriteLock()
    timeline: list[str] = []

    async def reader(name: str) -> None:
        async with lock.read():
            timeline.append(f"{name}-in")
            await asyncio.sleep(0.05)
            timeline.append(f"{name}-out")

    async def writer() -> None:
        await asyncio.sleep(0.01)
        async with lock.write():
            timeline.append("w-in")
            await asyncio.sleep(0.01)
            timeline.append("w-out")

    async def scenario():
        await asyncio.gather(reader("a"), reader("b"), writer())

    asyncio.run(scenario())

    assert timeline.index("w-in") > timeline.index("a-out")
    assert timeline.index("w-in") > timeline.index("b-out")
    assert timeline.index("w-out") == timeline.index("w-in") + 1


def test_sanitize_environment_drops_inherited_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "someone-else")
    monkeypatch.setenv("PYTHONPATH", "value")

    env = sanitize_environment()

    assert "ANTHROPIC_API_KEY" not in env
    assert "PYTHONPATH" not in env


def test_concurrent_stops_terminate_once(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("echo")
    terminations: list[str] = []

    async def scenario():
        supervisor = AssistantSupervisor(script, stop_grace=1)
        process = await supervisor.start("s1", _workdir(tmp_path), "sonnet", "key")
        terminate = process.terminate

        async def counting_terminate(grace: float):
            terminations.append(process.session_id)
            return await terminate(grace)

        process.terminate = counting_terminate
        results = await asyncio.gather(supervisor.stop("s1"), supervisor.stop("s1"))
        return results, process

    results, process = asyncio.run(scenario())

    assert sorted(results) == [False, True]
    assert terminations == ["s1"]
    assert process.status is ProcessStatus.STOPPED


def test_session_locks_are_released_after_use(tmp_path: Path, make_assistant) -> None:
    script = make_assistant("echo")

    async def scenario():
        supervisor = AssistantSupervisor(script, send_timeout=5, stop_grace=1)
        counts = []
        for index in range(3):
            session_id = f"s{index}"
            await supervisor.start(session_id, _workdir(tmp_path), "sonnet", "key")
            await supervisor.send(session_id, "hello")
            counts.append(supervisor.lock_count)
            await supervisor.stop(session_id)
        await supervisor.discard("s0")
        counts.append(supervisor.lock_count)
        return counts

    assert asyncio.run(scenario()) == [0, 0, 0, 0]
