from __future__ import annotations

import argparse
import asyncio
import importlib.util
import json
from pathlib import Path

import pytest

from bosun_mcp.models import MessageDirection, Session, SessionStatus
from bosun_mcp.storage import ChromaUnavailableError, SessionDatabase


def load_diag():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "bosun_diag.py"
    spec = importlib.util.spec_from_file_location("bosun_diag_test_module", module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


@pytest.fixture
def database_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "bosun.db"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BOSUN_DATABASE_PATH", str(path))
    monkeypatch.setenv("CHROMA_PERSIST_PATH", str(tmp_path / "chroma"))

    async def seed() -> None:
        async with SessionDatabase(path) as db:
            for index, (model, status) in enumerate(
                [("sonnet", SessionStatus.ACTIVE), ("sonnet", SessionStatus.ERROR), ("opus", None)]
            ):
                session = await db.create_session(
                    Session(
                        session_id=f"s{index}",
                        workspace_id="T1",
                        channel_id=f"C{index}",
                        repo_url="git@example.com:org/repo.git",
                        from_commitish="main",
                        branch_name=f"feature-{index}",
                        working_dir=f"/tmp/feature-{index}",
                        model_name=model,
                    )
                )
                await db.update_session_cost(session.session_id, 0.25)
                if status is not None:
                    await db.update_session_status(session.session_id, status)
            await db.add_session_message(1, MessageDirection.USER_TO_ASSISTANT, "hello", "1700.1")
            await db.add_session_message(1, MessageDirection.ASSISTANT_TO_USER, "hi there")

    asyncio.run(seed())
    return path


def test_sessions_lists_json(database_path: Path, capsys) -> None:
    load_diag().main(["sessions", "--open", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert sorted(item["session_id"] for item in payload) == ["s0", "s2"]


def test_sessions_filters_by_status(database_path: Path, capsys) -> None:
    load_diag().main(["sessions", "--status", "error"])

    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    assert lines[0].startswith("s1 [error] feature-1")


def test_metrics_summarizes_sessions(database_path: Path, capsys) -> None:
    load_diag().cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["sessions_total"] == 3
    assert payload["status_counts"] == {"starting": 1, "active": 1, "ending": 0, "ended": 0, "error": 1}
    assert payload["open_sessions"] == 2
    assert payload["total_cost_usd"] == 0.75
    assert payload["sessions_by_model"] == {"sonnet": 2, "opus": 1}


def test_messages_shows_audit_log(database_path: Path, capsys) -> None:
    load_diag().main(["messages", "s0"])

    payload = json.loads(capsys.readouterr().out)
    assert [item["direction"] for item in payload] == ["user_to_assistant", "assistant_to_user"]
    assert payload[0]["message_ts"] == "1700.1"


def test_missing_database_exits(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setenv("BOSUN_DATABASE_PATH", str(tmp_path / "nowhere.db"))

    with pytest.raises(SystemExit) as excinfo:
        load_diag().main(["metrics"])

    assert excinfo.value.code == 1
    assert "Database not found" in capsys.readouterr().out


def test_events_handles_missing_chroma(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    class BrokenJournal:
        def __init__(self, path) -> None:
            self.path = path

        def ping(self) -> bool:
            raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setenv("CHROMA_PERSIST_PATH", str(tmp_path / "chroma"))
    diag = load_diag()
    monkeypatch.setattr(diag, "SessionJournal", BrokenJournal)

    with pytest.raises(SystemExit):
        diag.main(["events", "s1"])

    assert "Chroma unavailable" in capsys.readouterr().out


def test_search_passes_filters(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    calls = []

    class StubJournal:
        def search_events(self, query, *, filters=None, limit=None):
            calls.append((query, filters, limit))
            return []

    diag = load_diag()
    monkeypatch.setattr(diag, "load_journal", lambda _settings: StubJournal())

    diag.main(["search", "auth", "--event-type", "turn", "--limit", "5"])

    assert calls == [("auth", {"event_type": "turn"}, 5)]
    assert json.loads(capsys.readouterr().out) == []


def test_no_command_prints_help(capsys) -> None:
    load_diag().main([])

    assert "Bosun MCP diagnostics" in capsys.readouterr().out
