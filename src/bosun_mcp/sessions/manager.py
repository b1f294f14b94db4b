"""Session lifecycle: creation, messaging, hand-off, teardown and idle expiry."""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from ..assistant import AssistantEvent, AssistantSupervisor, ProcessStatus, TurnResult
from ..assistant.protocol import RESULT_TYPES, AssistantMessage, SystemMessage
from ..config import BosunSettings
from ..errors import (
    BosunError,
    ClaudeUnavailableError,
    InvalidChannelError,
    InvalidCommandError,
    SessionExistsError,
    SessionNotFoundError,
    UnauthorizedError,
)
from ..models import (
    CreateSessionRequest,
    CredentialType,
    MessageDirection,
    Session,
    SessionMember,
    SessionRole,
    SessionStatus,
    SystemPrompt,
    TeardownReport,
    User,
)
from ..prompts import DEFAULT_PROMPT, PromptLibrary, PromptLoadError
from ..storage import SessionDatabase, SessionJournal
from ..workspace import WorkspaceProvisioner
from .progress import ProgressEvent, ProgressStream

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers a plain-text notice to a chat location."""

    async def notify(self, workspace_id: str, channel_id: str, thread_ts: str | None, text: str) -> None:
        ...


class LoggingNotifier:
    """Notifier used when no chat adapter is attached."""

    async def notify(self, workspace_id: str, channel_id: str, thread_ts: str | None, text: str) -> None:
        logger.info(
            text,
            extra={"workspace_id": workspace_id, "channel_id": channel_id, "thread_ts": thread_ts},
        )


class SessionManager:
    """Owns the session state machine and coordinates its collaborators.

    Status changes go through compare-and-set updates in the database, so the
    user, the idle sweep and the background setup task can race without
    applying one transition twice.
    """

    def __init__(
        self,
        *,
        database: SessionDatabase,
        provisioner: WorkspaceProvisioner,
        supervisor: AssistantSupervisor,
        settings: BosunSettings,
        prompts: PromptLibrary | None = None,
        journal: SessionJournal | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = database
        self._provisioner = provisioner
        self._supervisor = supervisor
        self._settings = settings
        self._prompts = prompts
        self._journal = journal
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._streams: dict[str, ProgressStream] = {}
        self._setup_tasks: dict[str, asyncio.Task] = {}
        self._resume_locks: dict[str, asyncio.Lock] = {}
        self._monitor_task: asyncio.Task | None = None

    @property
    def database(self) -> SessionDatabase:
        return self._db

    @property
    def supervisor(self) -> AssistantSupervisor:
        return self._supervisor

    @property
    def journal(self) -> SessionJournal | None:
        return self._journal

    def progress_stream(self, session_id: str) -> ProgressStream | None:
        return self._streams.get(session_id)

    # ─── Users, credentials, prompts ─────────────────────────────

    async def register_user(self, workspace_id: str, external_user_id: str, name: str = "") -> User:
        return await self._db.upsert_user(workspace_id, external_user_id, name)

    async def store_credential(self, user_id: int, credential_type: str, value: str) -> None:
        await self._db.get_user(user_id)
        await self._db.store_credential(user_id, credential_type, value)
        logger.info("Credential stored", extra={"user_id": user_id, "credential_type": credential_type})

    async def credential_status(self, user_id: int) -> dict[str, bool]:
        stored = await self._db.credential_types(user_id)
        return {kind.value: kind.value in stored for kind in CredentialType}

    async def create_system_prompt(
        self,
        user_id: int,
        name: str,
        content: str,
        *,
        description: str = "",
        is_public: bool = False,
    ) -> SystemPrompt:
        await self._db.get_user(user_id)
        return await self._db.create_system_prompt(
            name, content, description=description, is_public=is_public, created_by=user_id
        )

    async def list_prompts(self, user_id: int | None) -> list[dict[str, Any]]:
        listed: dict[str, dict[str, Any]] = {}
        for template in self._catalog().values():
            listed[template.name] = {"name": template.name, "description": template.description, "source": "catalog"}
        for prompt in await self._db.list_system_prompts(user_id):
            source = "own" if prompt.created_by == user_id else "shared"
            listed[prompt.name] = {"name": prompt.name, "description": prompt.description, "source": source}
        return [listed[name] for name in sorted(listed)]

    def _catalog(self) -> dict[str, Any]:
        if self._prompts is None:
            return {}
        try:
            return self._prompts.load_all()
        except PromptLoadError as exc:
            logger.warning("Prompt catalog failed to load: %s", exc)
            return {}

    async def _resolve_prompt(self, request: CreateSessionRequest) -> str:
        if request.prompt_text:
            return request.prompt_text
        if request.prompt_name:
            stored = await self._db.find_system_prompt(request.prompt_name, request.user_id)
            if stored is not None:
                return stored.content
            template = self._catalog().get(request.prompt_name)
            if template is not None:
                return template.content
            raise InvalidCommandError(f"no prompt named '{request.prompt_name}'")
        template = self._catalog().get(DEFAULT_PROMPT.name, DEFAULT_PROMPT)
        return template.content

    # ─── Creation and setup ──────────────────────────────────────

    async def create_session(self, request: CreateSessionRequest) -> Session:
        """Validate the request and persist a ``starting`` session owned by the requester.

        Nothing is cloned or spawned here. Every check runs before the first write.
        """

        if request.model not in self._settings.allowed_models:
            allowed = ", ".join(self._settings.allowed_models)
            raise InvalidCommandError(f"invalid model '{request.model}', must be one of: {allowed}")

        channel = (request.channel_name or request.channel_id).lstrip("#").lower()
        if channel in self._settings.reserved_channels:
            raise InvalidChannelError(f"sessions cannot be started in #{channel}")

        await self._db.get_user(request.user_id)
        await self._db.get_credential(request.user_id, CredentialType.ANTHROPIC)
        await self._provisioner.validate_repo_url(request.repo_url, check_remote=False)
        await self._resolve_prompt(request)

        session = Session(
            session_id=secrets.token_hex(16),
            workspace_id=request.workspace_id,
            channel_id=request.channel_id,
            thread_ts=request.thread_ts,
            repo_url=request.repo_url,
            from_commitish=request.from_commitish,
            branch_name=request.feature_name,
            working_dir=str(self._provisioner.worktree_path(request.feature_name)),
            model_name=request.model,
        )

        async with self._db.transaction():
            if await self._db.get_session_by_branch(request.feature_name) is not None:
                raise SessionExistsError(f"feature branch '{request.feature_name}' was already used by a session")
            existing = await self._db.get_active_session_for_scope(
                request.workspace_id, request.channel_id, request.thread_ts
            )
            if existing is not None:
                raise SessionExistsError(
                    f"session '{existing.branch_name}' is already running here; stop it first"
                )
            open_count = await self._db.count_open_sessions_for_user(request.user_id)
            if open_count >= self._settings.max_sessions_per_user:
                raise SessionExistsError(
                    f"you already have {open_count} open sessions (limit {self._settings.max_sessions_per_user})"
                )
            await self._db.create_session(session)
            await self._db.add_session_member(session.id, request.user_id, SessionRole.OWNER)

        logger.info(
            "Session created",
            extra={"session_id": session.session_id, "branch": session.branch_name, "user_id": request.user_id},
        )
        self._record(session.session_id, "status", {"status": "starting", "branch": session.branch_name})
        return session

    async def launch_session(self, request: CreateSessionRequest) -> tuple[Session, ProgressStream]:
        """Create the session and run its setup on a background task."""

        session = await self.create_session(request)
        stream = self._open_stream(session.session_id)
        task = asyncio.create_task(
            self.setup_session_async(session, request, stream),
            name=f"bosun-setup-{session.session_id}",
        )
        self._setup_tasks[session.session_id] = task
        task.add_done_callback(lambda _task, sid=session.session_id: self._setup_tasks.pop(sid, None))
        return session, stream

    def _open_stream(self, session_id: str) -> ProgressStream:
        stream = self._streams.get(session_id)
        if stream is None or stream.closed:
            stream = ProgressStream(session_id, clock=self._clock)
            stream.subscribe(self._journal_progress)
            self._streams[session_id] = stream
        return stream

    def _close_stream(self, session_id: str) -> None:
        stream = self._streams.pop(session_id, None)
        if stream is not None:
            stream.close()

    async def setup_session_async(
        self,
        session: Session,
        request: CreateSessionRequest,
        progress: ProgressStream,
    ) -> None:
        """Provision, launch and activate. Failures end in ``error`` and are reported on ``progress``."""

        session_id = session.session_id
        working_dir: Path | None = None
        try:
            progress.publish("provisioning", f"Preparing workspace for {session.branch_name}")
            working_dir = await self._provisioner.setup(
                session.repo_url, session.from_commitish, session.branch_name, progress
            )
            prompt = await self._resolve_prompt(request)
            credential = await self._db.get_credential(request.user_id, CredentialType.ANTHROPIC)
            progress.publish("launching", f"Starting assistant ({session.model_name})")
            await self._supervisor.start(
                session_id,
                working_dir,
                session.model_name,
                credential,
                prompt,
                on_event=self._event_handler(session_id),
            )
            if not await self._db.update_session_status(
                session_id, SessionStatus.ACTIVE, expected=SessionStatus.STARTING
            ):
                raise SessionNotFoundError("session was closed while it was starting")
        except asyncio.CancelledError:
            await self._fail_setup(session, progress, "session setup was cancelled", working_dir)
            raise
        except BosunError as exc:
            await self._fail_setup(session, progress, exc.message, working_dir, code=exc.code.value)
            return
        except Exception:
            logger.exception("Unexpected failure during session setup", extra={"session_id": session_id})
            await self._fail_setup(session, progress, "unexpected error while starting the session", working_dir)
            return

        logger.info("Session active", extra={"session_id": session_id, "working_dir": str(working_dir)})
        self._record(session_id, "status", {"status": "active"})
        progress.publish("ready", f"Session {session.branch_name} is ready", working_dir=str(working_dir))

    async def _fail_setup(
        self,
        session: Session,
        progress: ProgressStream,
        reason: str,
        working_dir: Path | None,
        *,
        code: str | None = None,
    ) -> None:
        session_id = session.session_id
        try:
            await self._supervisor.stop(session_id)
        except Exception:
            logger.exception("Failed to stop assistant after setup failure", extra={"session_id": session_id})
        if working_dir is not None:
            try:
                await self._provisioner.cleanup(working_dir)
            except Exception:
                logger.exception("Failed to remove workspace after setup failure", extra={"session_id": session_id})
        try:
            await self._db.update_session_status(session_id, SessionStatus.ERROR, expected=SessionStatus.STARTING)
        except Exception:
            logger.exception("Failed to mark session as errored", extra={"session_id": session_id})

        logger.warning("Session setup failed: %s", reason, extra={"session_id": session_id, "code": code})
        self._record(session_id, "status", {"status": "error", "reason": reason, "code": code})
        progress.publish("error", reason, **({"code": code} if code else {}))
        progress.close()
        if self._streams.get(session_id) is progress:
            self._streams.pop(session_id, None)
        self._resume_locks.pop(session_id, None)

    # ─── Assistant output ────────────────────────────────────────

    def _event_handler(self, session_id: str):
        async def _on_event(event: AssistantEvent) -> None:
            message = event.message
            if isinstance(message, SystemMessage) and message.is_init and message.session_id:
                await self._db.set_assistant_session_id(session_id, message.session_id)
            if event.cost_delta > 0:
                await self._db.update_session_cost(session_id, event.cost_delta)

            stream = self._streams.get(session_id)
            if stream is None:
                return
            if isinstance(message, AssistantMessage):
                text = message.text()
                if text:
                    stream.publish("assistant", text)
            elif isinstance(message, RESULT_TYPES):
                stream.publish(
                    "result",
                    message.result or message.subtype,
                    subtype=message.subtype,
                    is_error=message.is_error,
                    cost_usd=event.cost_delta,
                )
            elif event.kind == "raw":
                stream.publish("output", event.line)
            elif event.kind == "stderr":
                stream.publish("stderr", event.line)
            elif event.kind == "exit":
                stream.publish("exited", f"Assistant exited with code {event.returncode}", returncode=event.returncode)

        return _on_event

    def _journal_progress(self, event: ProgressEvent) -> None:
        if event.stage in ("assistant", "output", "stderr"):
            return
        self._record(event.session_id, "progress", event.message, stage=event.stage)

    def _record(self, session_id: str, event_type: str, body: Any, **metadata: Any) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_event(session_id=session_id, event_type=event_type, body=body, metadata=metadata)
        except Exception as exc:
            logger.warning("Journal write failed: %s", exc, extra={"session_id": session_id})

    # ─── Messaging ───────────────────────────────────────────────

    async def _require_member(self, session: Session, user_id: int) -> SessionRole:
        role = await self._db.get_session_role(session.id, user_id)
        if role is None:
            raise UnauthorizedError("you are not a member of this session")
        return role

    async def _require_owner(self, session: Session, user_id: int) -> None:
        if await self._db.get_session_owner(session.id) != user_id:
            raise UnauthorizedError("only the session owner can do that")

    def _resume_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._resume_locks.get(session_id)
        if lock is None:
            lock = self._resume_locks[session_id] = asyncio.Lock()
        return lock

    async def _ensure_process(self, session: Session) -> None:
        """Restart a missing or crashed assistant, resuming its conversation when possible."""

        session_id = session.session_id
        async with self._resume_lock(session_id):
            # Teardown stops the process under this lock. A session that is no longer active must not restart.
            session = await self._db.get_session(session_id)
            if session.status is not SessionStatus.ACTIVE:
                raise ClaudeUnavailableError(f"session is {session.status.value}, not active")
            process = await self._supervisor.get(session_id)
            if process is not None and process.status is ProcessStatus.RUNNING:
                return
            if process is not None:
                await self._supervisor.discard(session_id)
            if not Path(session.working_dir).exists():
                raise ClaudeUnavailableError("the session workspace is gone; stop and start a new session")

            owner = await self._db.get_session_owner(session.id)
            if owner is None:
                raise ClaudeUnavailableError("session has no owner to run the assistant as")
            credential = await self._db.get_credential(owner, CredentialType.ANTHROPIC)
            token = session.assistant_session_id or (process.continuation_token if process else None)

            stream = self._open_stream(session_id)
            stream.publish("resuming", "Restarting the assistant" + (" with its previous conversation" if token else ""))
            logger.info("Resuming assistant", extra={"session_id": session_id, "resume_token": bool(token)})
            await self._supervisor.start(
                session_id,
                Path(session.working_dir),
                session.model_name,
                credential,
                resume_token=token,
                on_event=self._event_handler(session_id),
            )

    async def send_to_session(
        self,
        session_id: str,
        message: str,
        *,
        user_id: int | None = None,
        message_ts: str = "",
    ) -> TurnResult:
        if not message.strip():
            raise InvalidCommandError("message must not be empty")
        session = await self._db.get_session(session_id)
        if session.status is not SessionStatus.ACTIVE:
            raise ClaudeUnavailableError(f"session is {session.status.value}, not active")
        if user_id is not None:
            await self._require_member(session, user_id)

        await self._ensure_process(session)
        await self._db.add_session_message(session.id, MessageDirection.USER_TO_ASSISTANT, message, message_ts)
        await self._db.touch_session(session_id)
        result = await self._supervisor.send(session_id, message)
        await self._db.add_session_message(session.id, MessageDirection.ASSISTANT_TO_USER, result.text)
        self._record(
            session_id,
            "turn",
            {"prompt": message, "response": result.text},
            subtype=result.subtype,
            cost_usd=result.cost_usd,
        )
        return result

    # ─── Teardown ────────────────────────────────────────────────

    async def end_session(self, session_id: str, *, requested_by: int | None = None) -> TeardownReport:
        session = await self._db.get_session(session_id)
        if requested_by is not None:
            await self._require_owner(session, requested_by)
        if not await self._db.update_session_status(session_id, SessionStatus.ENDING, expected=SessionStatus.ACTIVE):
            current = await self._db.get_session(session_id)
            raise ClaudeUnavailableError(f"session {session.branch_name} is {current.status.value}, not active")
        return await self._teardown(session, reason="stopped by owner" if requested_by else "stopped")

    async def _teardown(self, session: Session, *, reason: str) -> TeardownReport:
        """Stop, commit and push, clean up, then mark ``ended``. Each step runs even if an earlier one failed."""

        session_id = session.session_id
        report = TeardownReport(session_id=session_id)
        stream = self._open_stream(session_id)
        stream.publish("ending", f"Ending session {session.branch_name} ({reason})")
        self._record(session_id, "status", {"status": "ending", "reason": reason})

        async with self._resume_lock(session_id):
            process = await self._supervisor.get(session_id)
            crashed = process is not None and process.status is ProcessStatus.ERROR
            try:
                await self._supervisor.stop(session_id)
                report.steps.append("stop")
            except Exception as exc:
                logger.exception("Teardown step failed: stop", extra={"session_id": session_id})
                report.failures["stop"] = str(exc)

        commit_message = f"Bosun session {session.branch_name} changes"
        if crashed:
            commit_message += " (assistant exited unexpectedly)"
        try:
            report.pushed = await self._provisioner.commit_and_push(
                Path(session.working_dir), session.branch_name, commit_message
            )
            report.steps.append("push")
        except Exception as exc:
            logger.exception("Teardown step failed: push", extra={"session_id": session_id})
            report.failures["push"] = exc.message if isinstance(exc, BosunError) else str(exc)

        try:
            await self._provisioner.cleanup(Path(session.working_dir))
            report.steps.append("cleanup")
        except Exception as exc:
            logger.exception("Teardown step failed: cleanup", extra={"session_id": session_id})
            report.failures["cleanup"] = str(exc)

        try:
            await self._db.update_session_status(session_id, SessionStatus.ENDED, expected=SessionStatus.ENDING)
        except Exception as exc:
            logger.exception("Teardown step failed: status", extra={"session_id": session_id})
            report.failures["status"] = str(exc)

        summary = "Session ended"
        if report.pushed:
            summary += f"; changes pushed to {session.branch_name}"
        if report.failures:
            summary += "; problems: " + ", ".join(sorted(report.failures))
        stream.publish("ended", summary, pushed=report.pushed, failures=sorted(report.failures))
        self._record(session_id, "status", {"status": "ended", **report.to_dict()})
        logger.info("Session ended", extra={"session_id": session_id, **report.to_dict()})
        self._close_stream(session_id)
        self._resume_locks.pop(session_id, None)
        return report

    # ─── Hand-off and membership ─────────────────────────────────

    async def continue_session(
        self,
        feature_name: str,
        user_id: int,
        channel_id: str,
        thread_ts: str | None = None,
    ) -> Session:
        """Rebind a session to a new channel or thread and tell the old location it moved."""

        session = await self._db.get_session_by_branch(feature_name)
        if session is None or session.status.is_terminal:
            raise SessionNotFoundError(f"no open session for feature '{feature_name}'")
        await self._require_member(session, user_id)

        previous = (session.channel_id, session.thread_ts)
        if previous == (channel_id, thread_ts or None):
            return session

        await self._db.update_session_binding(session.session_id, channel_id, thread_ts)
        self._record(
            session.session_id,
            "moved",
            {"from": list(previous), "to": [channel_id, thread_ts]},
            user_id=user_id,
        )
        try:
            await self._notifier.notify(
                session.workspace_id,
                previous[0],
                previous[1],
                f"Session {feature_name} is now monitored in another conversation ({channel_id}).",
            )
        except Exception:
            logger.exception("Failed to notify previous session location", extra={"session_id": session.session_id})
        return await self._db.get_session(session.session_id)

    async def join_session(self, session_id: str, user_id: int, *, requested_by: int) -> SessionMember:
        session = await self._db.get_session(session_id)
        if session.status.is_terminal:
            raise SessionNotFoundError(f"session {session.branch_name} has ended")
        await self._require_owner(session, requested_by)
        await self._db.get_user(user_id)
        member = await self._db.add_session_member(session.id, user_id, SessionRole.COLLABORATOR)
        self._record(session_id, "member", {"user_id": user_id, "role": "collaborator"})
        return member

    async def leave_session(self, session_id: str, user_id: int, *, requested_by: int) -> bool:
        session = await self._db.get_session(session_id)
        if requested_by != user_id:
            await self._require_owner(session, requested_by)
        return await self._db.remove_session_member(session.id, user_id)

    # ─── Queries ─────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> Session:
        return await self._db.get_session(session_id)

    async def get_active_session_for_channel(
        self, workspace_id: str, channel_id: str, thread_ts: str | None = None
    ) -> Session | None:
        return await self._db.get_active_session_for_scope(workspace_id, channel_id, thread_ts)

    async def list_user_sessions(self, user_id: int, *, include_ended: bool = False) -> list[Session]:
        statuses = None if include_ended else [status for status in SessionStatus if not status.is_terminal]
        return await self._db.list_sessions_for_user(user_id, statuses)

    async def get_session_info(self, session_id: str) -> dict[str, Any]:
        session = await self._db.get_session(session_id)
        info = session.to_dict()

        process = await self._supervisor.get(session_id)
        info["process"] = (
            {
                "status": process.status.value,
                "pid": process.pid,
                "started_at": process.started_at.isoformat(),
                "pending_turns": process.pending_turns,
            }
            if process is not None
            else None
        )
        info["members"] = [
            {"user_id": member.user_id, "role": member.role.value}
            for member in await self._db.list_session_members(session.id)
        ]
        if not session.status.is_terminal and Path(session.working_dir).exists():
            info["repository"] = await self._provisioner.repo_info(Path(session.working_dir))
        stream = self._streams.get(session_id)
        info["progress"] = [event.to_dict() for event in stream.history[-10:]] if stream else []
        return info

    # ─── Idle expiry, recovery, shutdown ─────────────────────────

    async def idle_sweep(self, now: datetime | None = None) -> list[str]:
        """End idle active sessions and fail starting sessions whose setup is gone."""

        now = now or self._clock()
        threshold = now - timedelta(seconds=self._settings.idle_timeout_seconds)
        swept: list[str] = []
        for session in await self._db.list_open_sessions():
            if session.updated_at is None or session.updated_at > threshold:
                continue
            session_id = session.session_id
            try:
                if session.status is SessionStatus.ACTIVE:
                    if not await self._db.update_session_status(
                        session_id, SessionStatus.ENDING, expected=SessionStatus.ACTIVE
                    ):
                        continue
                    await self._teardown(session, reason="idle timeout")
                    await self._notify_session(session, f"Session {session.branch_name} ended after being idle.")
                    swept.append(session_id)
                elif session.status is SessionStatus.STARTING and session_id not in self._setup_tasks:
                    if await self._db.update_session_status(
                        session_id, SessionStatus.ERROR, expected=SessionStatus.STARTING
                    ):
                        await self._provisioner.cleanup(Path(session.working_dir))
                        self._record(session_id, "status", {"status": "error", "reason": "setup abandoned"})
                        swept.append(session_id)
            except Exception:
                logger.exception("Idle sweep failed for session", extra={"session_id": session_id})
        if swept:
            logger.info("Idle sweep ended sessions", extra={"count": len(swept), "session_ids": swept})
        return swept

    async def _notify_session(self, session: Session, text: str) -> None:
        try:
            await self._notifier.notify(session.workspace_id, session.channel_id, session.thread_ts, text)
        except Exception:
            logger.exception("Failed to notify session location", extra={"session_id": session.session_id})

    async def run_idle_monitor(self, interval: float | None = None) -> None:
        interval = interval or self._settings.idle_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.idle_sweep()
            except Exception:
                logger.exception("Idle sweep failed")

    def start_idle_monitor(self, interval: float | None = None) -> asyncio.Task:
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self.run_idle_monitor(interval), name="bosun-idle-monitor")
        return self._monitor_task

    async def recover(self) -> dict[str, int]:
        """Settle sessions left over from a previous run.

        ``starting`` sessions lost their setup task and become ``error``;
        ``ending`` sessions finish their teardown; ``active`` sessions are
        resumed lazily on their next message.
        """

        counts = {"failed": 0, "ended": 0, "active": 0}
        for session in await self._db.list_open_sessions():
            if session.status is SessionStatus.STARTING:
                if session.session_id in self._setup_tasks:
                    continue
                if await self._db.update_session_status(
                    session.session_id, SessionStatus.ERROR, expected=SessionStatus.STARTING
                ):
                    await self._provisioner.cleanup(Path(session.working_dir))
                    counts["failed"] += 1
            elif session.status is SessionStatus.ENDING:
                await self._teardown(session, reason="interrupted by restart")
                counts["ended"] += 1
            elif session.status is SessionStatus.ACTIVE:
                counts["active"] += 1
        logger.info("Recovered sessions", extra=counts)
        return counts

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop background work, end active sessions if configured, and stop every process."""

        timeout = timeout or self._settings.shutdown_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        background = [task for task in [self._monitor_task, *self._setup_tasks.values()] if task is not None]
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        self._monitor_task = None

        if self._settings.end_sessions_on_shutdown:
            active = [s for s in await self._db.list_open_sessions() if s.status is SessionStatus.ACTIVE]
            if active:
                try:
                    await asyncio.wait_for(
                        asyncio.gather(*(self._end_for_shutdown(s) for s in active), return_exceptions=True),
                        max(deadline - loop.time(), 0.1),
                    )
                except asyncio.TimeoutError:
                    logger.warning("Timed out ending sessions during shutdown")

        try:
            await self._supervisor.stop_all(max(deadline - loop.time(), 0.1))
        finally:
            for session_id in list(self._streams):
                self._close_stream(session_id)

    async def _end_for_shutdown(self, session: Session) -> None:
        if await self._db.update_session_status(
            session.session_id, SessionStatus.ENDING, expected=SessionStatus.ACTIVE
        ):
            await self._teardown(session, reason="service shutdown")


__all__ = ["LoggingNotifier", "Notifier", "SessionManager"]
