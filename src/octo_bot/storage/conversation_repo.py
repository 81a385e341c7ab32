"""Conversation and message persistence."""

from __future__ import annotations

import json
from typing import Optional

from octo_bot.core.types import MessageRole
from octo_bot.log import get_logger
from octo_bot.storage.database import Database, from_db_time, to_db_time
from octo_bot.storage.models import ChatMessage, Conversation

logger = get_logger(__name__)


class ConversationRepository:
    """CRUD over conversations keyed by (bot, channel, user) and their messages."""

    def __init__(self, db: Database):
        self._db = db

    async def get_by_key(
        self, bot_id: str, channel_id: str, user_id: str
    ) -> Optional[Conversation]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM conversations
               WHERE bot_id = ? AND channel_id = ? AND user_id = ?""",
            (bot_id, channel_id, user_id),
        )
        row = await cursor.fetchone()
        return self._row_to_conversation(row) if row else None

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_conversation(row) if row else None

    async def insert_if_absent(self, conversation: Conversation) -> None:
        """Insert unless the (bot, channel, user) key already exists."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO conversations
                   (id, bot_id, channel_id, user_id, title, created_at, last_message_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(bot_id, channel_id, user_id) DO NOTHING""",
                (
                    conversation.id,
                    conversation.bot_id,
                    conversation.channel_id,
                    conversation.user_id,
                    conversation.title,
                    to_db_time(conversation.created_at),
                    to_db_time(conversation.last_message_at),
                ),
            )

    async def append_message(
        self, conversation_id: str, message_id: str, message: ChatMessage
    ) -> bool:
        """Append a message and advance last_message_at. Returns False if the conversation is gone."""
        timestamp = to_db_time(message.timestamp)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE conversations
                   SET last_message_at = MAX(last_message_at, ?)
                   WHERE id = ?""",
                (timestamp, conversation_id),
            )
            if cursor.rowcount == 0:
                return False
            await conn.execute(
                """INSERT INTO messages
                   (id, conversation_id, role, content, metadata_json, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    message_id,
                    conversation_id,
                    message.role.value,
                    message.content,
                    json.dumps(message.metadata) if message.metadata is not None else None,
                    timestamp,
                ),
            )
        return True

    async def get_recent_messages(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        """Most recent `limit` messages, returned oldest first."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM messages
               WHERE conversation_id = ?
               ORDER BY created_at DESC, seq DESC
               LIMIT ?""",
            (conversation_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    async def delete_messages(self, conversation_id: str) -> int:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
        return cursor.rowcount

    async def list_for_bot(self, bot_id: str, limit: int = 100) -> list[Conversation]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM conversations WHERE bot_id = ?
               ORDER BY last_message_at DESC LIMIT ?""",
            (bot_id, limit),
        )
        return [self._row_to_conversation(row) for row in await cursor.fetchall()]

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        return Conversation(
            id=row["id"],
            bot_id=row["bot_id"],
            channel_id=row["channel_id"],
            user_id=row["user_id"],
            title=row["title"],
            created_at=from_db_time(row["created_at"]),
            last_message_at=from_db_time(row["last_message_at"]),
        )

    @staticmethod
    def _row_to_message(row) -> ChatMessage:
        metadata = row["metadata_json"]
        return ChatMessage(
            role=MessageRole(row["role"]),
            content=row["content"],
            timestamp=from_db_time(row["created_at"]),
            metadata=json.loads(metadata) if metadata is not None else None,
        )
