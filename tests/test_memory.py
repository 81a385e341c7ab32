from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from octo_bot.core.types import MessageRole
from octo_bot.errors import NotFoundError
from octo_bot.storage.models import ChatMessage

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)


def _msg(i: int, role: MessageRole = MessageRole.USER) -> ChatMessage:
    return ChatMessage(role=role, content=f"message {i}", timestamp=BASE_TIME + timedelta(seconds=i))


class TestGetOrCreate:
    async def test_creates_once_per_key(self, memory):
        first = await memory.get_or_create("bot-1", "chan", "user")
        second = await memory.get_or_create("bot-1", "chan", "user")
        assert first.id == second.id
        assert first.created_at == first.last_message_at

    async def test_distinct_keys_get_distinct_conversations(self, memory):
        a = await memory.get_or_create("bot-1", "chan", "alice")
        b = await memory.get_or_create("bot-1", "chan", "bob")
        c = await memory.get_or_create("bot-2", "chan", "alice")
        assert len({a.id, b.id, c.id}) == 3

    async def test_concurrent_creation_yields_single_conversation(self, memory, conversation_repo):
        results = await asyncio.gather(
            *(memory.get_or_create("bot-1", "chan", "user") for _ in range(10))
        )
        assert len({c.id for c in results}) == 1
        assert len(await conversation_repo.list_for_bot("bot-1")) == 1


class TestHistory:
    @pytest.mark.parametrize("total,limit", [(5, 3), (3, 5), (4, 4)])
    async def test_returns_last_window_in_chronological_order(self, memory, total, limit):
        conversation = await memory.get_or_create("bot-1", "chan", "user")
        for i in range(total):
            await memory.add_message(conversation.id, _msg(i))

        history = await memory.get_history(conversation.id, limit)

        expected = [f"message {i}" for i in range(max(0, total - limit), total)]
        assert [m.content for m in history] == expected

    async def test_message_round_trips_unchanged(self, memory):
        conversation = await memory.get_or_create("bot-1", "chan", "user")
        original = ChatMessage(
            role=MessageRole.ASSISTANT,
            content="Ünïcode ✓ and\nnewlines",
            timestamp=BASE_TIME,
            metadata={"model": "fake-1"},
        )
        await memory.add_message(conversation.id, original)

        [stored] = await memory.get_history(conversation.id, 10)
        assert stored.role == original.role
        assert stored.content == original.content
        assert stored.timestamp == original.timestamp
        assert stored.metadata == original.metadata

    async def test_same_timestamp_keeps_append_order(self, memory):
        conversation = await memory.get_or_create("bot-1", "chan", "user")
        for text in ("first", "second", "third"):
            await memory.add_message(
                conversation.id, ChatMessage(role=MessageRole.USER, content=text, timestamp=BASE_TIME)
            )
        history = await memory.get_history(conversation.id, 2)
        assert [m.content for m in history] == ["second", "third"]

    async def test_non_positive_limit_returns_nothing(self, memory):
        conversation = await memory.get_or_create("bot-1", "chan", "user")
        await memory.add_message(conversation.id, _msg(0))
        assert await memory.get_history(conversation.id, 0) == []

    async def test_add_to_unknown_conversation_raises(self, memory):
        with pytest.raises(NotFoundError):
            await memory.add_message("missing", _msg(0))


class TestLastMessageAt:
    async def test_advances_with_new_messages(self, memory):
        conversation = await memory.get_or_create("bot-1", "chan", "user")
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        await memory.add_message(
            conversation.id, ChatMessage(role=MessageRole.USER, content="hi", timestamp=later)
        )
        refreshed = await memory.get_conversation(conversation.id)
        assert refreshed.last_message_at == later

    async def test_out_of_order_append_does_not_regress(self, memory):
        conversation = await memory.get_or_create("bot-1", "chan", "user")
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        await memory.add_message(
            conversation.id, ChatMessage(role=MessageRole.USER, content="new", timestamp=later)
        )
        await memory.add_message(
            conversation.id,
            ChatMessage(role=MessageRole.USER, content="old", timestamp=later - timedelta(days=1)),
        )
        refreshed = await memory.get_conversation(conversation.id)
        assert refreshed.last_message_at == later


class TestClearAndList:
    async def test_clear_keeps_conversation(self, memory):
        conversation = await memory.get_or_create("bot-1", "chan", "user")
        for i in range(3):
            await memory.add_message(conversation.id, _msg(i))

        assert await memory.clear_history(conversation.id) == 3
        assert await memory.get_history(conversation.id, 10) == []
        assert (await memory.get_conversation(conversation.id)).id == conversation.id

    async def test_list_most_recent_first(self, memory):
        older = await memory.get_or_create("bot-1", "chan", "alice")
        newer = await memory.get_or_create("bot-1", "chan", "bob")
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        await memory.add_message(
            newer.id, ChatMessage(role=MessageRole.USER, content="x", timestamp=future)
        )
        listed = await memory.list_conversations("bot-1")
        assert [c.id for c in listed] == [newer.id, older.id]

    async def test_get_unknown_conversation_raises(self, memory):
        with pytest.raises(NotFoundError):
            await memory.get_conversation("missing")
