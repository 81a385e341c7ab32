"""Conversation memory: (bot, channel, user) conversations and bounded history windows."""

from __future__ import annotations

import uuid

from octo_bot.errors import NotFoundError
from octo_bot.log import get_logger
from octo_bot.storage.conversation_repo import ConversationRepository
from octo_bot.storage.database import utcnow
from octo_bot.storage.models import ChatMessage, Conversation

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 50


class ConversationMemory:
    """Single writer of conversation and message state.

    Conversations are created lazily on first use and never deleted here.
    Uniqueness of the (bot, channel, user) key is enforced by the store, so
    concurrent creators all end up with the same row.
    """

    def __init__(self, repo: ConversationRepository):
        self._repo = repo

    async def get_or_create(self, bot_id: str, channel_id: str, user_id: str) -> Conversation:
        existing = await self._repo.get_by_key(bot_id, channel_id, user_id)
        if existing is not None:
            return existing

        now = utcnow()
        await self._repo.insert_if_absent(
            Conversation(
                id=uuid.uuid4().hex,
                bot_id=bot_id,
                channel_id=channel_id,
                user_id=user_id,
                created_at=now,
                last_message_at=now,
            )
        )
        conversation = await self._repo.get_by_key(bot_id, channel_id, user_id)
        if conversation is None:
            raise NotFoundError(
                f"Conversation for ({bot_id}, {channel_id}, {user_id}) vanished after insert"
            )
        logger.info(
            "conversation_resolved",
            conversation_id=conversation.id,
            bot_id=bot_id,
            channel_id=channel_id,
        )
        return conversation

    async def add_message(self, conversation_id: str, message: ChatMessage) -> None:
        """Append a message. last_message_at never moves backwards."""
        appended = await self._repo.append_message(conversation_id, uuid.uuid4().hex, message)
        if not appended:
            raise NotFoundError(f"Conversation '{conversation_id}' not found")

    async def get_history(
        self, conversation_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[ChatMessage]:
        """Return the last `limit` messages, oldest first."""
        if limit <= 0:
            return []
        return await self._repo.get_recent_messages(conversation_id, limit)

    async def clear_history(self, conversation_id: str) -> int:
        deleted = await self._repo.delete_messages(conversation_id)
        logger.info("conversation_cleared", conversation_id=conversation_id, deleted=deleted)
        return deleted

    async def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self._repo.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation '{conversation_id}' not found")
        return conversation

    async def list_conversations(self, bot_id: str, limit: int = 100) -> list[Conversation]:
        return await self._repo.list_for_bot(bot_id, limit)
