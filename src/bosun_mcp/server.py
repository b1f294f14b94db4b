"""FastMCP server bootstrap for Bosun."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import FastMCP

from . import __version__
from .assistant import AssistantSupervisor
from .assistant.utils import resolve_executable
from .config import BosunSettings, get_settings
from .errors import SupervisorShutdownError
from .prompts import PromptLibrary, PromptLoadError
from .sessions import Notifier, SessionManager
from .storage import ChromaUnavailableError, SessionDatabase, SessionJournal
from .tools import register_tools
from .workspace import WorkspaceProvisioner

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Bosun server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[BosunSettings] = None,
    *,
    database: SessionDatabase | None = None,
    supervisor: AssistantSupervisor | None = None,
    journal: SessionJournal | None = None,
    notifier: Notifier | None = None,
) -> FastMCP:
    """Wire the session stack and register tools. The database is opened by ``serve``."""

    settings = settings or get_settings()

    database = database or SessionDatabase(settings.database_path)
    supervisor = supervisor or AssistantSupervisor(
        settings.assistant_path,
        send_timeout=settings.send_timeout_seconds,
        stop_grace=settings.stop_grace_seconds,
        extra_args=settings.assistant_args,
    )
    provisioner = WorkspaceProvisioner(
        settings.workspace_root,
        author_name=settings.git_author_name,
        author_email=settings.git_author_email,
    )
    prompt_library = PromptLibrary(settings.prompt_paths)

    executable = resolve_executable(settings.assistant_path)
    assistant_metadata = {
        "available": executable is not None,
        "path": str(executable) if executable else settings.assistant_path,
        "models": list(settings.allowed_models),
    }

    journal_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "bosun_sessions",
        "error": None,
    }
    try:
        journal = journal or SessionJournal(settings.chroma_persist_path)
        journal.ping()
        journal_metadata["available"] = True
    except ChromaUnavailableError as exc:
        journal_metadata["error"] = str(exc)
        journal = None

    manager = SessionManager(
        database=database,
        provisioner=provisioner,
        supervisor=supervisor,
        settings=settings,
        prompts=prompt_library,
        journal=journal,
        notifier=notifier,
    )

    server = FastMCP(
        name="Bosun MCP",
        version=__version__,
        instructions=(
            "Bosun runs one coding assistant per chat session inside an isolated git "
            "workspace. Start a session on a feature branch, talk to it with "
            "send_message, and stop it to push the branch."
        ),
    )

    handles = register_tools(server, manager=manager, settings=settings, journal=journal)

    async def status_resource() -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            prompt_names = sorted(prompt_library.load_all())
            prompt_error: str | None = None
        except PromptLoadError as exc:
            prompt_names = []
            prompt_error = str(exc)

        status_counts: dict[str, int] = {}
        for session in await database.list_open_sessions():
            status_counts[session.status.value] = status_counts.get(session.status.value, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "assistant": {
                **assistant_metadata,
                "running": await supervisor.active_count(),
            },
            "sessions": {
                "open": sum(status_counts.values()),
                "by_status": status_counts,
                "max_per_user": settings.max_sessions_per_user,
                "idle_timeout_seconds": settings.idle_timeout_seconds,
            },
            "prompts": {"count": len(prompt_names), "names": prompt_names, "error": prompt_error},
            "journal": journal_metadata,
        }
        return json.dumps(payload)

    server.resource(
        "resource://bosun/status",
        name="bosun_status",
        description="Current runtime status of the Bosun MCP server.",
        mime_type="application/json",
    )(status_resource)

    setattr(server, "session_manager", manager)
    setattr(server, "assistant_metadata", assistant_metadata)
    setattr(server, "journal_metadata", journal_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


async def serve(settings: Optional[BosunSettings] = None) -> None:
    """Open storage, recover leftover sessions, run the server, and shut down cleanly."""

    settings = settings or get_settings()
    server = create_server(settings)
    manager: SessionManager = getattr(server, "session_manager")

    await manager.database.start()
    try:
        await manager.recover()
        manager.start_idle_monitor()
        logger.info(
            "Launching Bosun MCP server",
            extra={
                "version": __version__,
                "log_level": settings.log_level,
                "assistant_available": getattr(server, "assistant_metadata", {}).get("available"),
                "journal_available": getattr(server, "journal_metadata", {}).get("available"),
            },
        )
        await server.run_async()
    finally:
        try:
            await manager.shutdown()
        except SupervisorShutdownError as exc:
            logger.error("Shutdown left assistant processes behind: %s", sorted(exc.failures))
        finally:
            await manager.database.stop()


def main() -> None:
    """Entry point for running the Bosun MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
