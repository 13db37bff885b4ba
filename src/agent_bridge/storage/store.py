"""Session and message store: in-memory view backed by async SQLite.

The in-memory dictionaries are the source of truth for the running process.
Every mutation is applied to memory first and then queued as a write job;
a single worker drains the queue in order so concurrent turns never
interleave partial writes. A failed write is logged and memory is kept.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import aiosqlite

from agent_bridge.config import BridgeConfig
from agent_bridge.errors import PersistenceError, SessionNotFoundError
from agent_bridge.models import DEFAULT_TITLE, Message, MessageRole, Session
from agent_bridge.storage.migrations import apply_migrations

logger = logging.getLogger(__name__)

WriteJob = Callable[[aiosqlite.Connection], Awaitable[None]]


class SessionStore:
    """Durable, append-only record of sessions and their messages."""

    def __init__(self, config: BridgeConfig) -> None:
        self._config = config
        self._db: aiosqlite.Connection | None = None
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, list[Message]] = {}
        self._writes: asyncio.Queue[tuple[str, WriteJob] | None] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None

    async def initialize(self) -> None:
        """Open the database, apply migrations and load existing rows into memory."""
        self._db = await aiosqlite.connect(self._config.db_path)
        self._db.row_factory = aiosqlite.Row
        await apply_migrations(self._db)
        await self._load()
        self._writer = asyncio.create_task(self._drain_writes(), name="session-store-writer")

    async def close(self) -> None:
        """Flush pending writes and close the database connection."""
        if self._writer is not None:
            await self._writes.put(None)
            await self._writer
            self._writer = None
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Get the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._db

    async def flush(self) -> None:
        """Wait until every queued write has been attempted."""
        await self._writes.join()

    # ── queries ──

    def get(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        session = self._sessions.get(session_id)
        return session.model_copy() if session else None

    def list(self) -> list[Session]:
        """All sessions, most recently updated first."""
        ordered = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        return [s.model_copy() for s in ordered]

    def list_messages(self, session_id: str) -> list[Message]:
        """Messages of a session in the order they were appended."""
        self._require(session_id)
        return [m.model_copy() for m in self._messages.get(session_id, [])]

    # ── mutations ──

    async def create_session(
        self, title: str | None = None, directory: str | None = None
    ) -> Session:
        session = Session(
            title=title or DEFAULT_TITLE,
            directory=directory or self._config.working_directory or os.getcwd(),
        )
        self._sessions[session.id] = session
        self._messages[session.id] = []
        snapshot = session.model_copy()

        async def job(db: aiosqlite.Connection) -> None:
            await db.execute(
                """
                INSERT INTO sessions (
                    id, title, directory, created_at, updated_at, message_count,
                    external_conversation_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.id,
                    snapshot.title,
                    snapshot.directory,
                    snapshot.created_at.isoformat(),
                    snapshot.updated_at.isoformat(),
                    snapshot.message_count,
                    snapshot.external_conversation_id,
                ),
            )

        self._enqueue("create_session", job)
        return snapshot.model_copy()

    async def update_session(self, session: Session) -> Session:
        """Replace a session's metadata (title, timestamps, counts, resume id)."""
        self._require(session.id)
        snapshot = session.model_copy()
        self._sessions[session.id] = snapshot

        async def job(db: aiosqlite.Connection) -> None:
            await db.execute(
                """
                UPDATE sessions SET title = ?, directory = ?, updated_at = ?,
                    message_count = ?, external_conversation_id = ?
                WHERE id = ?
                """,
                (
                    snapshot.title,
                    snapshot.directory,
                    snapshot.updated_at.isoformat(),
                    snapshot.message_count,
                    snapshot.external_conversation_id,
                    snapshot.id,
                ),
            )

        self._enqueue("update_session", job)
        return snapshot.model_copy()

    async def set_external_conversation_id(self, session_id: str, value: str | None) -> Session:
        """Store (or clear, with ``None``) the agent's resume token."""
        session = self._require(session_id).model_copy()
        session.external_conversation_id = value
        return await self.update_session(session)

    async def delete(self, session_id: str) -> bool:
        """Remove a session together with its message history."""
        if session_id not in self._sessions:
            return False
        del self._sessions[session_id]
        self._messages.pop(session_id, None)

        async def job(db: aiosqlite.Connection) -> None:
            await db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

        self._enqueue("delete_session", job)
        return True

    async def append_message(
        self,
        session_id: str,
        role: MessageRole,
        text: str,
        *,
        message_id: str | None = None,
    ) -> Message:
        """Append to a session's history. ``message_id`` lets streamed parts keep their id."""
        self._require(session_id)
        history = self._messages.setdefault(session_id, [])
        message = Message(session_id=session_id, role=role, content=text)
        if message_id is not None:
            message.id = message_id
        seq = len(history)
        history.append(message)
        snapshot = message.model_copy()

        async def job(db: aiosqlite.Connection) -> None:
            await db.execute(
                """
                INSERT INTO messages (id, session_id, seq, role, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.id,
                    snapshot.session_id,
                    seq,
                    snapshot.role.value,
                    snapshot.content,
                    snapshot.created_at.isoformat(),
                ),
            )

        self._enqueue("append_message", job)
        return snapshot.model_copy()

    # ── internals ──

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _enqueue(self, operation: str, job: WriteJob) -> None:
        if self._writer is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        self._writes.put_nowait((operation, job))

    async def _drain_writes(self) -> None:
        while True:
            item = await self._writes.get()
            try:
                if item is None:
                    return
                operation, job = item
                try:
                    await job(self.db)
                    await self.db.commit()
                except Exception as exc:
                    error = PersistenceError(operation, str(exc))
                    logger.error("%s; keeping in-memory state", error)
                    try:
                        await self.db.rollback()
                    except aiosqlite.Error:
                        logger.debug("Rollback after failed %s also failed", operation)
            finally:
                self._writes.task_done()

    async def _load(self) -> None:
        cursor = await self.db.execute("SELECT * FROM sessions")
        for row in await cursor.fetchall():
            session = Session(
                id=row["id"],
                title=row["title"],
                directory=row["directory"],
                created_at=_parse_time(row["created_at"]),
                updated_at=_parse_time(row["updated_at"]),
                message_count=row["message_count"],
                external_conversation_id=row["external_conversation_id"],
            )
            self._sessions[session.id] = session
            self._messages[session.id] = []

        cursor = await self.db.execute("SELECT * FROM messages ORDER BY session_id, seq")
        for row in await cursor.fetchall():
            history = self._messages.get(row["session_id"])
            if history is None:
                continue
            history.append(
                Message(
                    id=row["id"],
                    session_id=row["session_id"],
                    role=MessageRole(row["role"]),
                    content=row["content"],
                    created_at=_parse_time(row["created_at"]),
                )
            )
        logger.info("Loaded %d sessions from %s", len(self._sessions), self._config.db_path)


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
