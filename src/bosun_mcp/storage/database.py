"""
Session Database: SQLite-backed persistence for users, credentials and sessions.

Usage:
    db = SessionDatabase(Path("bosun.db"))
    await db.start()

    user = await db.upsert_user("T1", "U1", "alice")
    async with db.transaction():
        session = await db.create_session(session)
        await db.add_session_member(session.id, user.id, SessionRole.OWNER)

The uniqueness rules of the session model live in the schema (partial
unique indexes), so concurrent writers cannot break them. All statements go
through one connection and one asyncio lock. ``transaction()`` holds that
lock for the whole block, and calls made from the task that owns the
transaction pass straight through.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable

import aiosqlite

from ..errors import (
    DatabaseError,
    InvalidCommandError,
    NoCredentialsError,
    RecordNotFoundError,
    SessionExistsError,
    SessionNotFoundError,
)
from ..models import (
    CredentialType,
    MessageDirection,
    Session,
    SessionMember,
    SessionMessage,
    SessionRole,
    SessionStatus,
    SystemPrompt,
    User,
)

logger = logging.getLogger(__name__)

_OPEN_STATUSES = tuple(status.value for status in SessionStatus if not status.is_terminal)
_LIVE_STATUSES = tuple(status.value for status in SessionStatus if status.is_live)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workspace_id TEXT NOT NULL,
        external_user_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (workspace_id, external_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        credential_type TEXT NOT NULL CHECK (credential_type IN ('anthropic', 'github')),
        value TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (user_id, credential_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL UNIQUE,
        workspace_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        thread_ts TEXT NOT NULL DEFAULT '',
        repo_url TEXT NOT NULL,
        from_commitish TEXT NOT NULL,
        branch_name TEXT NOT NULL UNIQUE,
        working_dir TEXT NOT NULL,
        model_name TEXT NOT NULL,
        running_cost REAL NOT NULL DEFAULT 0,
        status TEXT NOT NULL CHECK (status IN ('starting', 'active', 'ending', 'ended', 'error')),
        assistant_session_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        ended_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_live_scope
    ON sessions(workspace_id, channel_id, thread_ts)
    WHERE status IN ('starting', 'active')
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_open_working_dir
    ON sessions(working_dir)
    WHERE status NOT IN ('ended', 'error')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sessions_status
    ON sessions(status, updated_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS session_users (
        session_pk INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('owner', 'collaborator')),
        created_at TEXT NOT NULL,
        PRIMARY KEY (session_pk, user_id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_session_users_owner
    ON session_users(session_pk)
    WHERE role = 'owner'
    """,
    """
    CREATE TABLE IF NOT EXISTS session_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_pk INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        direction TEXT NOT NULL CHECK (direction IN ('user_to_assistant', 'assistant_to_user')),
        content TEXT NOT NULL,
        message_ts TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_session_messages_session
    ON session_messages(session_pk, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS system_prompts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL,
        is_public INTEGER NOT NULL DEFAULT 0,
        created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
        created_at TEXT NOT NULL,
        UNIQUE (name, created_by)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_system_prompts (
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        prompt_id INTEGER NOT NULL REFERENCES system_prompts(id) ON DELETE CASCADE,
        PRIMARY KEY (user_id, prompt_id)
    )
    """,
)


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_session(row: aiosqlite.Row) -> Session:
    return Session(
        id=row["id"],
        session_id=row["session_id"],
        workspace_id=row["workspace_id"],
        channel_id=row["channel_id"],
        thread_ts=row["thread_ts"] or None,
        repo_url=row["repo_url"],
        from_commitish=row["from_commitish"],
        branch_name=row["branch_name"],
        working_dir=row["working_dir"],
        model_name=row["model_name"],
        running_cost=row["running_cost"],
        status=SessionStatus(row["status"]),
        assistant_session_id=row["assistant_session_id"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        ended_at=_parse_ts(row["ended_at"]),
    )


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=row["id"],
        workspace_id=row["workspace_id"],
        external_user_id=row["external_user_id"],
        name=row["name"],
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_prompt(row: aiosqlite.Row) -> SystemPrompt:
    return SystemPrompt(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        content=row["content"],
        is_public=bool(row["is_public"]),
        created_by=row["created_by"],
        created_at=_parse_ts(row["created_at"]),
    )


def _session_conflict(exc: sqlite3.IntegrityError) -> SessionExistsError:
    text = str(exc)
    if "sessions.branch_name" in text:
        message = "that feature branch is already used by another session"
    elif "sessions.channel_id" in text:
        message = "a session is already running in this channel or thread"
    elif "sessions.working_dir" in text:
        message = "that workspace directory is already in use"
    else:
        message = "session already exists"
    return SessionExistsError(message, cause=exc)


class SessionDatabase:
    """aiosqlite gateway for every persisted Bosun record."""

    def __init__(self, db_path: Path | str, *, clock: Callable[[], datetime] | None = None) -> None:
        self.db_path = db_path
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None

    async def start(self) -> None:
        """Open the connection and create tables."""

        if self._db is not None:
            return
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path), isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        for statement in _SCHEMA:
            await self._db.execute(statement)
        logger.info("SessionDatabase started (db=%s)", self.db_path)

    async def stop(self) -> None:
        """Close the database connection."""

        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "SessionDatabase":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise DatabaseError("database is not started")
        return self._db

    def _now(self) -> str:
        return self._clock().isoformat()

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[aiosqlite.Connection]:
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            yield self.connection
            return
        async with self._lock:
            self._owner = task
            try:
                yield self.connection
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                logger.error("Database operation failed: %s", exc)
                raise DatabaseError("database operation failed", cause=exc) from exc
            finally:
                self._owner = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SessionDatabase"]:
        """Run the block atomically. Any exception rolls the whole block back."""

        async with self._guard() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            else:
                await db.execute("COMMIT")

    async def _fetchone(self, sql: str, params: Any = ()) -> aiosqlite.Row | None:
        async with self._guard() as db:
            async with db.execute(sql, params) as cursor:
                return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Any = ()) -> list[aiosqlite.Row]:
        async with self._guard() as db:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    # ─── Users and credentials ───────────────────────────────────

    async def upsert_user(self, workspace_id: str, external_user_id: str, name: str = "") -> User:
        now = self._now()
        async with self._guard() as db:
            await db.execute(
                """
                INSERT INTO users (workspace_id, external_user_id, name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (workspace_id, external_user_id) DO UPDATE SET
                    name = CASE WHEN excluded.name != '' THEN excluded.name ELSE users.name END,
                    updated_at = excluded.updated_at
                """,
                (workspace_id, external_user_id, name, now, now),
            )
            user = await self.get_user_by_external_id(workspace_id, external_user_id)
        if user is None:
            raise DatabaseError("user upsert did not persist")
        return user

    async def get_user(self, user_id: int) -> User:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        if row is None:
            raise RecordNotFoundError(f"user {user_id} not found")
        return _row_to_user(row)

    async def get_user_by_external_id(self, workspace_id: str, external_user_id: str) -> User | None:
        row = await self._fetchone(
            "SELECT * FROM users WHERE workspace_id = ? AND external_user_id = ?",
            (workspace_id, external_user_id),
        )
        return _row_to_user(row) if row else None

    async def store_credential(self, user_id: int, credential_type: CredentialType | str, value: str) -> None:
        try:
            kind = CredentialType(credential_type)
        except ValueError as exc:
            raise InvalidCommandError(f"unknown credential type '{credential_type}'") from exc
        if not value.strip():
            raise InvalidCommandError("credential value must not be empty")
        now = self._now()
        async with self._guard() as db:
            try:
                await db.execute(
                    """
                    INSERT INTO credentials (user_id, credential_type, value, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, credential_type) DO UPDATE SET
                        value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (user_id, kind.value, value, now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise RecordNotFoundError(f"user {user_id} not found", cause=exc) from exc

    async def get_credential(self, user_id: int, credential_type: CredentialType | str) -> str:
        row = await self._fetchone(
            "SELECT value FROM credentials WHERE user_id = ? AND credential_type = ?",
            (user_id, CredentialType(credential_type).value),
        )
        if row is None:
            raise NoCredentialsError(
                f"no {CredentialType(credential_type).value} credential stored; "
                "set one with the credentials command"
            )
        return row["value"]

    async def credential_types(self, user_id: int) -> set[str]:
        rows = await self._fetchall("SELECT credential_type FROM credentials WHERE user_id = ?", (user_id,))
        return {row["credential_type"] for row in rows}

    # ─── Sessions ────────────────────────────────────────────────

    async def create_session(self, session: Session) -> Session:
        now = self._clock()
        async with self._guard() as db:
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO sessions (
                        session_id, workspace_id, channel_id, thread_ts, repo_url, from_commitish,
                        branch_name, working_dir, model_name, running_cost, status,
                        assistant_session_id, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.session_id,
                        session.workspace_id,
                        session.channel_id,
                        session.thread_ts or "",
                        session.repo_url,
                        session.from_commitish,
                        session.branch_name,
                        session.working_dir,
                        session.model_name,
                        session.running_cost,
                        session.status.value,
                        session.assistant_session_id,
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise _session_conflict(exc) from exc
            session.id = cursor.lastrowid
            await cursor.close()
        session.created_at = session.updated_at = now
        return session

    async def get_session(self, session_id: str) -> Session:
        row = await self._fetchone("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
        if row is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        return _row_to_session(row)

    async def get_session_by_branch(self, branch_name: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE branch_name = ?", (branch_name,))
        return _row_to_session(row) if row else None

    async def get_active_session_for_scope(
        self,
        workspace_id: str,
        channel_id: str,
        thread_ts: str | None,
        *,
        statuses: Iterable[SessionStatus] | None = None,
    ) -> Session | None:
        wanted = tuple(status.value for status in statuses) if statuses else _LIVE_STATUSES
        placeholders = ", ".join("?" for _ in wanted)
        row = await self._fetchone(
            f"""
            SELECT * FROM sessions
            WHERE workspace_id = ? AND channel_id = ? AND thread_ts = ? AND status IN ({placeholders})
            ORDER BY id DESC LIMIT 1
            """,
            (workspace_id, channel_id, thread_ts or "", *wanted),
        )
        return _row_to_session(row) if row else None

    async def list_open_sessions(self) -> list[Session]:
        placeholders = ", ".join("?" for _ in _OPEN_STATUSES)
        rows = await self._fetchall(
            f"SELECT * FROM sessions WHERE status IN ({placeholders}) ORDER BY id",
            _OPEN_STATUSES,
        )
        return [_row_to_session(row) for row in rows]

    async def list_sessions(self, *, limit: int | None = None) -> list[Session]:
        sql = "SELECT * FROM sessions ORDER BY id DESC"
        params: tuple[Any, ...] = ()
        if limit:
            sql += " LIMIT ?"
            params = (limit,)
        return [_row_to_session(row) for row in await self._fetchall(sql, params)]

    async def list_sessions_for_user(
        self, user_id: int, statuses: Iterable[SessionStatus] | None = None
    ) -> list[Session]:
        sql = """
            SELECT s.* FROM sessions s
            JOIN session_users su ON su.session_pk = s.id
            WHERE su.user_id = ?
        """
        params: list[Any] = [user_id]
        if statuses:
            wanted = [status.value for status in statuses]
            sql += f" AND s.status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        sql += " ORDER BY s.id DESC"
        return [_row_to_session(row) for row in await self._fetchall(sql, params)]

    async def count_open_sessions_for_user(self, user_id: int) -> int:
        placeholders = ", ".join("?" for _ in _OPEN_STATUSES)
        row = await self._fetchone(
            f"""
            SELECT COUNT(*) AS total FROM sessions s
            JOIN session_users su ON su.session_pk = s.id
            WHERE su.user_id = ? AND su.role = 'owner' AND s.status IN ({placeholders})
            """,
            (user_id, *_OPEN_STATUSES),
        )
        return int(row["total"]) if row else 0

    async def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        expected: SessionStatus | None = None,
    ) -> bool:
        """Apply a legal transition. With ``expected`` this is a compare-and-set.

        Returns ``False`` when the row was not in a state that allows the move.
        """

        if expected is not None:
            if not expected.can_transition_to(status):
                raise ValueError(f"illegal transition {expected.value} -> {status.value}")
            sources = (expected.value,)
        else:
            sources = tuple(source.value for source in SessionStatus if source.can_transition_to(status))

        now = self._now()
        assignments = "status = ?, updated_at = ?"
        params: list[Any] = [status.value, now]
        if status.is_terminal:
            assignments += ", ended_at = ?"
            params.append(now)
        placeholders = ", ".join("?" for _ in sources)
        params.extend([session_id, *sources])

        async with self._guard() as db:
            try:
                cursor = await db.execute(
                    f"UPDATE sessions SET {assignments} WHERE session_id = ? AND status IN ({placeholders})",
                    params,
                )
            except sqlite3.IntegrityError as exc:
                raise _session_conflict(exc) from exc
            changed = cursor.rowcount > 0
            await cursor.close()
            if not changed:
                await self.get_session(session_id)
        if changed:
            logger.debug(
                "Session status updated",
                extra={"session_id": session_id, "status": status.value},
            )
        return changed

    async def update_session_cost(self, session_id: str, delta: float) -> float:
        """Add ``delta`` to the running cost and return the new total."""

        async with self._guard() as db:
            session = await self.get_session(session_id)
            if delta <= 0:
                return session.running_cost
            total = float(Decimal(repr(session.running_cost)) + Decimal(repr(float(delta))))
            await db.execute(
                "UPDATE sessions SET running_cost = ?, updated_at = ? WHERE session_id = ?",
                (total, self._now(), session_id),
            )
        return total

    async def update_session_binding(self, session_id: str, channel_id: str, thread_ts: str | None) -> None:
        async with self._guard() as db:
            try:
                cursor = await db.execute(
                    "UPDATE sessions SET channel_id = ?, thread_ts = ?, updated_at = ? WHERE session_id = ?",
                    (channel_id, thread_ts or "", self._now(), session_id),
                )
            except sqlite3.IntegrityError as exc:
                raise _session_conflict(exc) from exc
            if cursor.rowcount == 0:
                raise SessionNotFoundError(f"session {session_id} not found")

    async def touch_session(self, session_id: str) -> None:
        async with self._guard() as db:
            await db.execute(
                "UPDATE sessions SET updated_at = ? WHERE session_id = ?",
                (self._now(), session_id),
            )

    async def set_assistant_session_id(self, session_id: str, token: str) -> None:
        async with self._guard() as db:
            await db.execute(
                "UPDATE sessions SET assistant_session_id = ? WHERE session_id = ?",
                (token, session_id),
            )

    # ─── Membership ──────────────────────────────────────────────

    async def add_session_member(self, session_pk: int, user_id: int, role: SessionRole) -> SessionMember:
        async with self._guard() as db:
            try:
                await db.execute(
                    "INSERT INTO session_users (session_pk, user_id, role, created_at) VALUES (?, ?, ?, ?)",
                    (session_pk, user_id, SessionRole(role).value, self._now()),
                )
            except sqlite3.IntegrityError as exc:
                raise SessionExistsError("user is already a member of this session", cause=exc) from exc
        return SessionMember(session_pk=session_pk, user_id=user_id, role=SessionRole(role))

    async def remove_session_member(self, session_pk: int, user_id: int) -> bool:
        async with self._guard() as db:
            cursor = await db.execute(
                "DELETE FROM session_users WHERE session_pk = ? AND user_id = ? AND role != 'owner'",
                (session_pk, user_id),
            )
            return cursor.rowcount > 0

    async def get_session_role(self, session_pk: int, user_id: int) -> SessionRole | None:
        row = await self._fetchone(
            "SELECT role FROM session_users WHERE session_pk = ? AND user_id = ?",
            (session_pk, user_id),
        )
        return SessionRole(row["role"]) if row else None

    async def get_session_owner(self, session_pk: int) -> int | None:
        row = await self._fetchone(
            "SELECT user_id FROM session_users WHERE session_pk = ? AND role = 'owner'",
            (session_pk,),
        )
        return row["user_id"] if row else None

    async def list_session_members(self, session_pk: int) -> list[SessionMember]:
        rows = await self._fetchall(
            "SELECT * FROM session_users WHERE session_pk = ? ORDER BY role DESC, user_id",
            (session_pk,),
        )
        return [
            SessionMember(session_pk=row["session_pk"], user_id=row["user_id"], role=SessionRole(row["role"]))
            for row in rows
        ]

    # ─── Audit messages ──────────────────────────────────────────

    async def add_session_message(
        self,
        session_pk: int,
        direction: MessageDirection,
        content: str,
        message_ts: str = "",
    ) -> SessionMessage:
        now = self._clock()
        async with self._guard() as db:
            cursor = await db.execute(
                """
                INSERT INTO session_messages (session_pk, direction, content, message_ts, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_pk, MessageDirection(direction).value, content, message_ts, now.isoformat()),
            )
            message_id = cursor.lastrowid
            await cursor.close()
        return SessionMessage(
            id=message_id,
            session_pk=session_pk,
            direction=MessageDirection(direction),
            content=content,
            message_ts=message_ts,
            created_at=now,
        )

    async def list_session_messages(self, session_pk: int, *, limit: int | None = None) -> list[SessionMessage]:
        sql = "SELECT * FROM session_messages WHERE session_pk = ? ORDER BY id"
        params: list[Any] = [session_pk]
        if limit:
            sql = f"SELECT * FROM ({sql} DESC LIMIT ?) ORDER BY id"
            params.append(limit)
        rows = await self._fetchall(sql, params)
        return [
            SessionMessage(
                id=row["id"],
                session_pk=row["session_pk"],
                direction=MessageDirection(row["direction"]),
                content=row["content"],
                message_ts=row["message_ts"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # ─── System prompts ──────────────────────────────────────────

    async def create_system_prompt(
        self,
        name: str,
        content: str,
        *,
        description: str = "",
        is_public: bool = False,
        created_by: int | None = None,
    ) -> SystemPrompt:
        if not name.strip() or not content.strip():
            raise InvalidCommandError("prompt name and content are required")
        now = self._clock()
        async with self._guard() as db:
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO system_prompts (name, description, content, is_public, created_by, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (name.strip(), description, content, int(is_public), created_by, now.isoformat()),
                )
            except sqlite3.IntegrityError as exc:
                raise InvalidCommandError(f"a prompt named '{name}' already exists", cause=exc) from exc
            prompt_id = cursor.lastrowid
            await cursor.close()
        return SystemPrompt(
            id=prompt_id,
            name=name.strip(),
            description=description,
            content=content,
            is_public=is_public,
            created_by=created_by,
            created_at=now,
        )

    async def share_system_prompt(self, prompt_id: int, user_id: int) -> None:
        async with self._guard() as db:
            await db.execute(
                "INSERT OR IGNORE INTO user_system_prompts (user_id, prompt_id) VALUES (?, ?)",
                (user_id, prompt_id),
            )

    _VISIBLE_PROMPTS = """
        SELECT p.*,
               CASE WHEN p.created_by = :user THEN 0 WHEN l.user_id IS NOT NULL THEN 1 ELSE 2 END AS visibility
        FROM system_prompts p
        LEFT JOIN user_system_prompts l ON l.prompt_id = p.id AND l.user_id = :user
        WHERE (p.created_by = :user OR l.user_id IS NOT NULL OR p.is_public = 1)
    """

    async def find_system_prompt(self, name: str, user_id: int | None) -> SystemPrompt | None:
        """Look up a prompt visible to the user, preferring their own, then shared, then public."""

        row = await self._fetchone(
            self._VISIBLE_PROMPTS + " AND p.name = :name ORDER BY visibility, p.id LIMIT 1",
            {"user": user_id, "name": name},
        )
        return _row_to_prompt(row) if row else None

    async def list_system_prompts(self, user_id: int | None) -> list[SystemPrompt]:
        rows = await self._fetchall(self._VISIBLE_PROMPTS + " ORDER BY p.name, visibility", {"user": user_id})
        seen: set[str] = set()
        prompts: list[SystemPrompt] = []
        for row in rows:
            if row["name"] in seen:
                continue
            seen.add(row["name"])
            prompts.append(_row_to_prompt(row))
        return prompts


__all__ = ["SessionDatabase"]
