from __future__ import annotations

import asyncio
from datetime import datetime

from bosun_mcp.sessions import ProgressEvent, ProgressStream
from bosun_mcp.sessions.progress import QUEUE_SIZE


def _clock() -> datetime:
    return datetime.fromisoformat("2025-01-01T00:00:00+00:00")


def test_stream_yields_events_until_closed() -> None:
    async def scenario():
        stream = ProgressStream("s1", clock=_clock)
        stream.publish("provisioning", "Preparing")
        stream("Cloning repo")
        stream.publish("ready", "Ready", working_dir="/tmp/x")
        stream.close()
        stream.publish("late", "ignored")
        return [event async for event in stream], stream

    events, stream = asyncio.run(scenario())

    assert [event.stage for event in events] == ["provisioning", "progress", "ready"]
    assert events[2].to_dict() == {
        "session_id": "s1",
        "stage": "ready",
        "message": "Ready",
        "timestamp": "2025-01-01T00:00:00+00:00",
        "data": {"working_dir": "/tmp/x"},
    }
    assert stream.closed
    assert len(stream.history) == 3


def test_listeners_see_every_event_and_failures_are_contained() -> None:
    seen: list[ProgressEvent] = []

    def broken(event: ProgressEvent) -> None:
        raise RuntimeError("listener bug")

    async def scenario():
        stream = ProgressStream("s1", clock=_clock)
        stream.subscribe(broken)
        stream.subscribe(seen.append)
        stream.publish("launching", "Starting")
        stream.close()

    asyncio.run(scenario())

    assert [event.message for event in seen] == ["Starting"]


def test_iteration_can_be_cancelled() -> None:
    async def scenario():
        stream = ProgressStream("s1")

        async def consume():
            return [event async for event in stream]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            return True
        return False

    assert asyncio.run(scenario()) is True


def test_second_iterator_also_stops_after_close() -> None:
    async def scenario():
        stream = ProgressStream("s1")
        stream.close()
        first = [event async for event in stream]
        second = [event async for event in stream]
        return first, second

    assert asyncio.run(scenario()) == ([], [])


def test_queue_drops_oldest_events_when_nobody_iterates() -> None:
    async def scenario():
        stream = ProgressStream("s1", clock=_clock)
        for index in range(QUEUE_SIZE + 50):
            stream.publish("output", f"line {index}")
        pending = stream.pending
        stream.close()
        return pending, [event async for event in stream], stream

    pending, events, stream = asyncio.run(scenario())

    assert pending == QUEUE_SIZE
    assert stream.dropped == 51
    assert events[0].message == "line 51"
    assert events[-1].message == f"line {QUEUE_SIZE + 49}"
    assert len(stream.history) == QUEUE_SIZE + 50
