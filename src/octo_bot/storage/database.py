"""SQLite database connection manager with schema migration."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from octo_bot.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS model_configs (
    id              TEXT    PRIMARY KEY,
    name            TEXT    NOT NULL DEFAULT '',
    provider        TEXT    NOT NULL,
    model_id        TEXT,
    api_key         TEXT,
    endpoint        TEXT,
    temperature     REAL    NOT NULL DEFAULT 0.7,
    max_tokens      INTEGER NOT NULL DEFAULT 4096,
    updated_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE TABLE IF NOT EXISTS bot_instances (
    id                TEXT    PRIMARY KEY,
    name              TEXT    NOT NULL,
    description       TEXT    NOT NULL DEFAULT '',
    system_prompt     TEXT    NOT NULL DEFAULT '',
    default_model_id  TEXT    REFERENCES model_configs(id) ON DELETE SET NULL,
    is_active         INTEGER NOT NULL DEFAULT 1,
    created_at        TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    updated_at        TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE TABLE IF NOT EXISTS plugin_configs (
    bot_id          TEXT    NOT NULL REFERENCES bot_instances(id) ON DELETE CASCADE,
    plugin_id       TEXT    NOT NULL,
    is_enabled      INTEGER NOT NULL DEFAULT 1,
    settings_json   TEXT    NOT NULL DEFAULT '{}',
    PRIMARY KEY (bot_id, plugin_id)
);

CREATE TABLE IF NOT EXISTS channel_configs (
    bot_id          TEXT    NOT NULL REFERENCES bot_instances(id) ON DELETE CASCADE,
    channel_type    TEXT    NOT NULL,
    is_enabled      INTEGER NOT NULL DEFAULT 1,
    settings_json   TEXT    NOT NULL DEFAULT '{}',
    PRIMARY KEY (bot_id, channel_type)
);

CREATE TABLE IF NOT EXISTS conversations (
    id               TEXT PRIMARY KEY,
    bot_id           TEXT NOT NULL,
    channel_id       TEXT NOT NULL,
    user_id          TEXT NOT NULL,
    title            TEXT,
    created_at       TEXT NOT NULL,
    last_message_at  TEXT NOT NULL,
    UNIQUE (bot_id, channel_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_conversations_bot
    ON conversations(bot_id, last_message_at);

CREATE TABLE IF NOT EXISTS messages (
    seq              INTEGER PRIMARY KEY AUTOINCREMENT,
    id               TEXT    NOT NULL UNIQUE,
    conversation_id  TEXT    NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role             TEXT    NOT NULL CHECK(role IN ('user','assistant','system','tool')),
    content          TEXT    NOT NULL,
    metadata_json    TEXT,
    created_at       TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, created_at, seq);

CREATE TABLE IF NOT EXISTS scheduled_jobs (
    id               TEXT    PRIMARY KEY,
    bot_id           TEXT    NOT NULL,
    name             TEXT    NOT NULL DEFAULT '',
    description      TEXT    NOT NULL DEFAULT '',
    instructions     TEXT    NOT NULL,
    cron_expr        TEXT    NOT NULL,
    is_enabled       INTEGER NOT NULL DEFAULT 1,
    target_channel   TEXT,
    target_chat_id   TEXT,
    last_run_at      TEXT,
    next_run_at      TEXT,
    last_run_status  TEXT,
    created_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    updated_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_jobs_due
    ON scheduled_jobs(is_enabled, next_run_at);

CREATE TABLE IF NOT EXISTS job_executions (
    id               TEXT PRIMARY KEY,
    job_id           TEXT NOT NULL REFERENCES scheduled_jobs(id) ON DELETE CASCADE,
    started_at       TEXT NOT NULL,
    completed_at     TEXT,
    status           TEXT NOT NULL,
    output           TEXT,
    error_message    TEXT
);

CREATE INDEX IF NOT EXISTS idx_executions_job
    ON job_executions(job_id, started_at);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Serialize as fixed-width UTC ISO-8601 so text ordering equals time ordering."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        # Rows written by SQLite defaults carry no offset
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers on the shared connection; commit on success, roll back on error."""
        async with self._write_lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
