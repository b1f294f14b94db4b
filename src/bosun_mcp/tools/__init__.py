"""Tool registration for Bosun MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import BosunSettings
from ..errors import BosunError
from ..models import User, parse_create_request
from ..sessions import SessionManager
from ..storage import ChromaUnavailableError, SessionJournal

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    start_session: Any
    send_message: Any
    stop_session: Any
    continue_session: Any
    session_status: Any
    list_sessions: Any
    join_session: Any
    set_credential: Any
    credential_status: Any
    create_prompt: Any
    list_prompts: Any
    session_events: Any
    search_events: Any


def _failure(context: Context | None, tool: str, exc: BosunError) -> dict[str, Any]:
    _emit_log(
        context,
        "warning",
        f"{tool} failed",
        extra={"tool": tool, "code": exc.code.value, "error": exc.message},
    )
    return {"ok": False, "error": exc.to_payload()}


_JOURNAL_UNAVAILABLE = {
    "ok": False,
    "error": {"code": "JOURNAL_UNAVAILABLE", "message": "the session journal is not available"},
}


def register_tools(
    server: FastMCP,
    *,
    manager: SessionManager,
    settings: BosunSettings,
    journal: SessionJournal | None,
) -> ToolHandles:
    """Register Bosun's MCP tools on the server."""

    async def _user(workspace_id: str, user: str, name: str = "") -> User:
        return await manager.register_user(workspace_id, user, name)

    async def _start_session(
        workspace_id: str,
        user: str,
        channel_id: str,
        repo_url: str,
        from_commitish: str,
        feature_name: str,
        model: str,
        thread_ts: str | None = None,
        channel_name: str | None = None,
        prompt: str | None = None,
        prompt_name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Validate the request, create the session, and begin provisioning in the background."""

        try:
            requester = await _user(workspace_id, user)
            request = parse_create_request(
                {
                    "workspace_id": workspace_id,
                    "user_id": requester.id,
                    "channel_id": channel_id,
                    "channel_name": channel_name,
                    "thread_ts": thread_ts,
                    "repo_url": repo_url,
                    "from_commitish": from_commitish,
                    "feature_name": feature_name,
                    "model": model,
                    "prompt_text": prompt,
                    "prompt_name": prompt_name,
                }
            )
            session, _stream = await manager.launch_session(request)
        except BosunError as exc:
            return _failure(context, "start_session", exc)

        _emit_log(
            context,
            "info",
            "Session starting",
            extra={"session_id": session.session_id, "branch": session.branch_name, "model": session.model_name},
        )
        return {
            "ok": True,
            "session": session.to_dict(),
            "message": f"Starting session {session.branch_name}; poll session_status for progress.",
        }

    async def _send_message(
        session_id: str,
        message: str,
        workspace_id: str,
        user: str,
        message_ts: str = "",
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Forward a message to the session's assistant and wait for its reply."""

        try:
            sender = await _user(workspace_id, user)
            result = await manager.send_to_session(
                session_id, message, user_id=sender.id, message_ts=message_ts
            )
        except BosunError as exc:
            return _failure(context, "send_message", exc)

        _emit_log(
            context,
            "debug",
            "Assistant replied",
            extra={"session_id": session_id, "subtype": result.subtype, "cost_usd": result.cost_usd},
        )
        return {"ok": True, "session_id": session_id, "result": result.to_dict()}

    async def _stop_session(
        session_id: str,
        workspace_id: str,
        user: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """End the session: stop the assistant, push its branch, and remove the workspace."""

        try:
            owner = await _user(workspace_id, user)
            report = await manager.end_session(session_id, requested_by=owner.id)
        except BosunError as exc:
            return _failure(context, "stop_session", exc)

        _emit_log(context, "info", "Session stopped", extra=report.to_dict())
        return {"ok": True, "report": report.to_dict()}

    async def _continue_session(
        feature_name: str,
        workspace_id: str,
        user: str,
        channel_id: str,
        thread_ts: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            member = await _user(workspace_id, user)
            session = await manager.continue_session(feature_name, member.id, channel_id, thread_ts or None)
        except BosunError as exc:
            return _failure(context, "continue_session", exc)

        _emit_log(
            context,
            "info",
            "Session moved",
            extra={"session_id": session.session_id, "channel_id": channel_id, "thread_ts": thread_ts},
        )
        return {"ok": True, "session": session.to_dict()}

    async def _session_status(session_id: str, context: Context | None = None) -> dict[str, Any]:
        try:
            info = await manager.get_session_info(session_id)
        except BosunError as exc:
            return _failure(context, "session_status", exc)
        return {"ok": True, "session": info}

    async def _list_sessions(
        workspace_id: str,
        user: str,
        include_ended: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            member = await _user(workspace_id, user)
            sessions = await manager.list_user_sessions(member.id, include_ended=include_ended)
        except BosunError as exc:
            return _failure(context, "list_sessions", exc)

        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return {"ok": True, "sessions": [session.to_dict() for session in sessions]}

    async def _join_session(
        session_id: str,
        workspace_id: str,
        user: str,
        collaborator: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Add a collaborator. Only the session owner may do this."""

        try:
            owner = await _user(workspace_id, user)
            joining = await _user(workspace_id, collaborator)
            member = await manager.join_session(session_id, joining.id, requested_by=owner.id)
        except BosunError as exc:
            return _failure(context, "join_session", exc)
        return {"ok": True, "session_id": session_id, "user": collaborator, "role": member.role.value}

    async def _set_credential(
        workspace_id: str,
        user: str,
        credential_type: str,
        value: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            owner = await _user(workspace_id, user)
            await manager.store_credential(owner.id, credential_type, value)
        except BosunError as exc:
            return _failure(context, "set_credential", exc)
        return {"ok": True, "credential_type": credential_type}

    async def _credential_status(
        workspace_id: str,
        user: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            owner = await _user(workspace_id, user)
            status = await manager.credential_status(owner.id)
        except BosunError as exc:
            return _failure(context, "credential_status", exc)
        return {"ok": True, "credentials": status}

    async def _create_prompt(
        workspace_id: str,
        user: str,
        name: str,
        content: str,
        description: str = "",
        public: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            owner = await _user(workspace_id, user)
            prompt = await manager.create_system_prompt(
                owner.id, name, content, description=description, is_public=public
            )
        except BosunError as exc:
            return _failure(context, "create_prompt", exc)
        return {"ok": True, "prompt": {"id": prompt.id, "name": prompt.name, "public": prompt.is_public}}

    async def _list_prompts(
        workspace_id: str,
        user: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            owner = await _user(workspace_id, user)
            prompts = await manager.list_prompts(owner.id)
        except BosunError as exc:
            return _failure(context, "list_prompts", exc)
        return {"ok": True, "prompts": prompts}

    def _session_events(
        session_id: str,
        limit: int = 50,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the most recent journal events for a session."""

        if journal is None:
            return dict(_JOURNAL_UNAVAILABLE)
        try:
            events = journal.fetch_session_events(session_id, limit=limit)
        except ChromaUnavailableError as exc:
            _emit_log(context, "warning", "Journal unavailable", extra={"error": str(exc)})
            return dict(_JOURNAL_UNAVAILABLE)
        return {"ok": True, "session_id": session_id, "events": [event.to_dict() for event in events]}

    def _search_events(
        query: str | None = None,
        session_id: str | None = None,
        event_type: str | None = None,
        limit: int = 20,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Keyword search across journal events, optionally narrowed by session or event type."""

        if journal is None:
            return dict(_JOURNAL_UNAVAILABLE)
        filters = {
            key: value
            for key, value in {"session_id": session_id, "event_type": event_type}.items()
            if value
        }
        try:
            events = journal.search_events(query, filters=filters or None, limit=limit)
        except ChromaUnavailableError as exc:
            _emit_log(context, "warning", "Journal unavailable", extra={"error": str(exc)})
            return dict(_JOURNAL_UNAVAILABLE)

        _emit_log(
            context,
            "debug",
            "Journal search",
            extra={"query": query, "filters": filters, "count": len(events)},
        )
        return {"ok": True, "query": query, "events": [event.to_dict() for event in events]}

    models = ", ".join(settings.allowed_models)
    tool_start = server.tool(
        name="start_session",
        description=(
            "Start a coding session: clone the repository, create the feature branch from "
            f"the given commit-ish, and launch the assistant. Models: {models}. Pass either "
            "prompt or prompt_name for a custom system prompt."
        ),
    )(_start_session)
    tool_send = server.tool(
        name="send_message",
        description="Send a message to an active session's assistant and return its reply.",
    )(_send_message)
    tool_stop = server.tool(
        name="stop_session",
        description="End a session, committing and pushing its changes before removing the workspace.",
    )(_stop_session)
    tool_continue = server.tool(
        name="continue_session",
        description="Move a session to another channel or thread by its feature name.",
    )(_continue_session)
    tool_status = server.tool(
        name="session_status",
        description="Report a session's state, process, members, repository and recent progress.",
    )(_session_status)
    tool_list = server.tool(
        name="list_sessions",
        description="List the sessions you own or collaborate on.",
    )(_list_sessions)
    tool_join = server.tool(
        name="join_session",
        description="Add a collaborator to a session you own.",
    )(_join_session)
    tool_set_credential = server.tool(
        name="set_credential",
        description="Store an anthropic or github credential for your user.",
    )(_set_credential)
    tool_credential_status = server.tool(
        name="credential_status",
        description="Show which credentials are stored for your user, without revealing them.",
    )(_credential_status)
    tool_create_prompt = server.tool(
        name="create_prompt",
        description="Save a named system prompt, optionally public to every user.",
    )(_create_prompt)
    tool_list_prompts = server.tool(
        name="list_prompts",
        description="List system prompts available to you: your own, shared, public and catalog prompts.",
    )(_list_prompts)
    tool_session_events = server.tool(
        name="session_events",
        description="Return the journal of a session's lifecycle events and assistant turns.",
    )(_session_events)
    tool_search_events = server.tool(
        name="search_events",
        description="Search journal events by keyword, session id or event type.",
    )(_search_events)

    return ToolHandles(
        start_session=tool_start,
        send_message=tool_send,
        stop_session=tool_stop,
        continue_session=tool_continue,
        session_status=tool_status,
        list_sessions=tool_list,
        join_session=tool_join,
        set_credential=tool_set_credential,
        credential_status=tool_credential_status,
        create_prompt=tool_create_prompt,
        list_prompts=tool_list_prompts,
        session_events=tool_session_events,
        search_events=tool_search_events,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached, else the module logger."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
