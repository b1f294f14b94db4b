"""Bosun MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Awaitable, Callable

from bosun_mcp.config import BosunSettings
from bosun_mcp.models import SessionStatus
from bosun_mcp.storage import ChromaUnavailableError, SessionDatabase, SessionJournal


def load_journal(settings: BosunSettings) -> SessionJournal:
    try:
        journal = SessionJournal(settings.chroma_persist_path)
        journal.ping()
        return journal
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def query_database(settings: BosunSettings, query: Callable[[SessionDatabase], Awaitable[Any]]) -> Any:
    if not settings.database_path.exists():
        print(f"Database not found: {settings.database_path}")
        raise SystemExit(1)

    async def _run() -> Any:
        async with SessionDatabase(settings.database_path) as database:
            return await query(database)

    return asyncio.run(_run())


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = BosunSettings()

    async def _query(database: SessionDatabase):
        if args.open:
            return await database.list_open_sessions()
        return await database.list_sessions(limit=args.limit)

    sessions = query_database(settings, _query)
    if args.status:
        sessions = [session for session in sessions if session.status.value == args.status]
    if args.json:
        print(json.dumps([session.to_dict() for session in sessions], indent=2))
    else:
        for session in sessions:
            print(
                f"{session.session_id} [{session.status.value}] {session.branch_name} "
                f"{session.channel_id} ${session.running_cost:.4f}"
            )


def cmd_messages(args: argparse.Namespace) -> None:
    settings = BosunSettings()

    async def _query(database: SessionDatabase):
        session = await database.get_session(args.session_id)
        return await database.list_session_messages(session.id, limit=args.limit)

    messages = query_database(settings, _query)
    payload = [
        {
            "direction": message.direction.value,
            "content": message.content,
            "message_ts": message.message_ts,
            "created_at": message.created_at.isoformat() if message.created_at else None,
        }
        for message in messages
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = BosunSettings()
    sessions = query_database(settings, lambda database: database.list_sessions())

    status_counts = {status.value: 0 for status in SessionStatus}
    total_cost = 0.0
    models: dict[str, int] = {}
    for session in sessions:
        status_counts[session.status.value] += 1
        total_cost += session.running_cost
        models[session.model_name] = models.get(session.model_name, 0) + 1

    metrics = {
        "sessions_total": len(sessions),
        "status_counts": status_counts,
        "open_sessions": sum(1 for session in sessions if not session.status.is_terminal),
        "total_cost_usd": round(total_cost, 6),
        "sessions_by_model": models,
    }
    print(json.dumps(metrics, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = BosunSettings()
    journal = load_journal(settings)
    try:
        events = journal.fetch_session_events(args.session_id, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([event.to_dict() for event in events], indent=2))


def cmd_search(args: argparse.Namespace) -> None:
    settings = BosunSettings()
    journal = load_journal(settings)
    filters = {"event_type": args.event_type} if args.event_type else None
    try:
        events = journal.search_events(args.query, filters=filters, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([event.to_dict() for event in events], indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bosun MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List persisted sessions")
    p_sessions.add_argument("--open", action="store_true", help="Only sessions that have not ended")
    p_sessions.add_argument("--status", choices=[status.value for status in SessionStatus])
    p_sessions.add_argument("--limit", type=int, default=None)
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_messages = sub.add_parser("messages", help="Show the message audit log of a session")
    p_messages.add_argument("session_id")
    p_messages.add_argument("--limit", type=int, default=None, help="Show only the latest N messages")
    p_messages.set_defaults(func=cmd_messages)

    p_metrics = sub.add_parser("metrics", help="Show session counts and accumulated cost")
    p_metrics.set_defaults(func=cmd_metrics)

    p_events = sub.add_parser("events", help="Show journal events of a session")
    p_events.add_argument("session_id")
    p_events.add_argument("--limit", type=int, default=None)
    p_events.set_defaults(func=cmd_events)

    p_search = sub.add_parser("search", help="Keyword search across journal events")
    p_search.add_argument("query", nargs="?")
    p_search.add_argument("--event-type")
    p_search.add_argument("--limit", type=int, default=20)
    p_search.set_defaults(func=cmd_search)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
