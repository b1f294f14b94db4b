from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from bosun_mcp.storage import ChromaUnavailableError, JournalEvent, SessionJournal


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            filtered = [record for record in filtered if _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def make_journal(tmp_path: Path, client: StubClient | None = None) -> SessionJournal:
    client = client or StubClient()
    return SessionJournal(
        tmp_path,
        client_factory=lambda: client,
        clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


def test_record_and_fetch_events(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)

    event = journal.record_event(
        session_id="session-1",
        event_type="status",
        body={"status": "starting"},
        metadata={"branch": "feature-x", "code": None, "failures": ["push"]},
    )

    assert isinstance(event, JournalEvent)
    assert event.metadata["sequence"] == 1
    assert "code" not in event.metadata
    assert event.metadata["failures"] == '["push"]'

    events = journal.fetch_session_events("session-1")
    assert len(events) == 1
    assert events[0].document == '{"status": "starting"}'
    assert events[0].to_dict()["timestamp"] == "2025-01-01T00:00:00+00:00"


def test_sequence_continues_from_existing_records(tmp_path: Path) -> None:
    client = StubClient()
    first = make_journal(tmp_path, client)
    first.record_event(session_id="s", event_type="a", body="A")
    first.record_event(session_id="s", event_type="b", body="B")

    restarted = make_journal(tmp_path, client)
    restarted.record_event(session_id="s", event_type="c", body="C")

    events = restarted.fetch_session_events("s")
    assert [event.metadata["sequence"] for event in events] == [1, 2, 3]
    assert [event.document for event in restarted.fetch_session_events("s", limit=2)] == ["B", "C"]


def test_search_by_keyword_and_filters(tmp_path: Path) -> None:
    journal = make_journal(tmp_path)
    journal.record_event(session_id="s1", event_type="turn", body="Investigate auth failure")
    journal.record_event(session_id="s1", event_type="status", body="active")
    journal.record_event(session_id="s2", event_type="turn", body="Fix AUTH logging")

    by_keyword = journal.search_events("auth")
    by_filters = journal.search_events(filters={"session_id": "s1", "event_type": "turn"})
    limited = journal.search_events("auth", limit=1)

    assert [event.session_id for event in by_keyword] == ["s1", "s2"]
    assert [event.document for event in by_filters] == ["Investigate auth failure"]
    assert len(limited) == 1


def test_unavailable_client_surfaces_on_first_use(tmp_path: Path) -> None:
    def broken_factory():
        raise ChromaUnavailableError("no chroma")

    journal = SessionJournal(tmp_path, client_factory=broken_factory)

    with pytest.raises(ChromaUnavailableError):
        journal.ping()
