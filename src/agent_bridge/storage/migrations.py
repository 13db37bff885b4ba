"""SQLite schema DDL for the bridge database."""

from __future__ import annotations

import aiosqlite

SCHEMA_VERSION = 1

CREATE_SESSIONS_TABLE = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    directory TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    external_conversation_id TEXT
);
"""

CREATE_MESSAGES_TABLE = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at);",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);",
]

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);
"""


async def apply_migrations(db: aiosqlite.Connection) -> None:
    """Apply all pending migrations to the database."""

    await db.execute("PRAGMA foreign_keys = ON")
    await db.execute(CREATE_SCHEMA_VERSION_TABLE)

    cursor = await db.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
    row = await cursor.fetchone()
    current_version = row[0] if row else 0

    if current_version < 1:
        await db.execute(CREATE_SESSIONS_TABLE)
        await db.execute(CREATE_MESSAGES_TABLE)
        for index_sql in CREATE_INDEXES:
            await db.execute(index_sql)
        await db.execute("INSERT INTO schema_version (version) VALUES (?)", (1,))

    await db.commit()
