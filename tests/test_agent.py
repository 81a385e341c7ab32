from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from octo_bot.ai.agent import AgentFactory, BotAgent
from octo_bot.channels.models import Attachment, IncomingMessage
from octo_bot.core.types import MessageRole
from octo_bot.errors import (
    ConfigurationInvalidError,
    NotInitializedError,
    TurnCancelledError,
    UpstreamFailureError,
)
from octo_bot.plugins.registry import PluginRegistry
from octo_bot.plugins.websearch import WebSearchPlugin
from octo_bot.storage.models import PluginConfig


def _incoming(content: str = "Say hello", user_id: str = "alice", **kwargs) -> IncomingMessage:
    return IncomingMessage(
        channel_type="api",
        channel_id="chan-1",
        user_id=user_id,
        user_name=user_id.title(),
        content=content,
        timestamp=kwargs.pop("timestamp", datetime.now(timezone.utc)),
        **kwargs,
    )


async def _stored(memory, bot_id: str = "bot-1", user_id: str = "alice"):
    conversation = await memory.get_or_create(bot_id, "chan-1", user_id)
    return conversation, await memory.get_history(conversation.id, 100)


class TestProcess:
    async def test_returns_completion_and_persists_both_turns(
        self, agent_factory, seed_bot, memory, fake_provider
    ):
        fake_provider.replies = ["Hello!"]
        agent = await agent_factory.create_agent(await seed_bot())

        reply = await agent.process(_incoming("Say hello"))

        assert reply == "Hello!"
        conversation, history = await _stored(memory)
        assert [(m.role, m.content) for m in history] == [
            (MessageRole.USER, "Say hello"),
            (MessageRole.ASSISTANT, "Hello!"),
        ]
        assert conversation.last_message_at == history[1].timestamp

    async def test_user_turn_keeps_original_timestamp(self, agent_factory, seed_bot, memory):
        agent = await agent_factory.create_agent(await seed_bot())
        sent_at = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)

        await agent.process(_incoming(timestamp=sent_at))

        _, history = await _stored(memory)
        assert history[0].timestamp == sent_at
        assert history[1].timestamp >= sent_at

    async def test_assistant_never_predates_user_turn(self, agent_factory, seed_bot, memory):
        agent = await agent_factory.create_agent(await seed_bot())
        future = datetime.now(timezone.utc) + timedelta(minutes=10)

        await agent.process(_incoming(timestamp=future))

        _, history = await _stored(memory)
        assert history[1].timestamp == future

    async def test_history_and_system_prompt_reach_model(
        self, agent_factory, seed_bot, fake_provider
    ):
        fake_provider.replies = ["first answer", "second answer"]
        agent = await agent_factory.create_agent(await seed_bot(system_prompt="Be terse."))

        await agent.process(_incoming("first question"))
        await agent.process(_incoming("second question"))

        call = fake_provider.last.calls[-1]
        assert call["system"] == "Be terse."
        assert call["messages"] == [
            {"role": "user", "content": "first question"},
            {"role": "assistant", "content": "first answer"},
            {"role": "user", "content": "second question"},
        ]

    async def test_history_window_is_bounded(
        self, client_factory, plugin_registry, memory, seed_bot, fake_provider
    ):
        factory = AgentFactory(client_factory, plugin_registry, memory, history_limit=2)
        agent = await factory.create_agent(await seed_bot())

        for i in range(3):
            await agent.process(_incoming(f"q{i}"))

        prompt = fake_provider.last.calls[-1]["messages"]
        assert [m["content"] for m in prompt] == ["q1", "Hello there!", "q2"]

    async def test_conversations_are_per_user(self, agent_factory, seed_bot, memory):
        agent = await agent_factory.create_agent(await seed_bot())
        await agent.process(_incoming("from alice", user_id="alice"))
        await agent.process(_incoming("from bob", user_id="bob"))

        _, alice = await _stored(memory, user_id="alice")
        _, bob = await _stored(memory, user_id="bob")
        assert alice[0].content == "from alice"
        assert bob[0].content == "from bob"

    async def test_text_attachment_is_inlined(self, agent_factory, seed_bot, fake_provider):
        agent = await agent_factory.create_agent(await seed_bot())
        note = Attachment(data=b"remember the milk", media_type="text/plain", filename="todo.txt")

        await agent.process(_incoming("see file", attachments=[note]))

        content = fake_provider.last.calls[-1]["messages"][-1]["content"]
        assert content.startswith("see file")
        assert "[File: todo.txt]\nremember the milk" in content

    async def test_model_error_propagates_and_persists_nothing(
        self, agent_factory, seed_bot, memory, fake_provider
    ):
        fake_provider.error = UpstreamFailureError("fake", "overloaded")
        agent = await agent_factory.create_agent(await seed_bot())

        with pytest.raises(UpstreamFailureError):
            await agent.process(_incoming())

        _, history = await _stored(memory)
        assert history == []

    async def test_cancel_before_model_call(self, agent_factory, seed_bot, memory, fake_provider):
        agent = await agent_factory.create_agent(await seed_bot())
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(TurnCancelledError):
            await agent.process(_incoming(), cancel_event=cancel)

        assert fake_provider.last.calls == []
        _, history = await _stored(memory)
        assert history == []

    async def test_cancel_aborts_in_flight_model_call(
        self, agent_factory, seed_bot, memory, fake_provider
    ):
        fake_provider.delay = 2.0
        agent = await agent_factory.create_agent(await seed_bot())
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel.set)

        start = loop.time()
        with pytest.raises(TurnCancelledError):
            await agent.process(_incoming(), cancel_event=cancel)

        assert loop.time() - start < 0.5
        assert len(fake_provider.last.calls) == 1
        _, history = await _stored(memory)
        assert history == []


class TestInitialization:
    async def test_process_before_initialize_fails(
        self, client_factory, plugin_registry, memory, seed_bot
    ):
        agent = BotAgent(await seed_bot(), client_factory, plugin_registry, memory)
        with pytest.raises(NotInitializedError):
            await agent.process(_incoming())

    async def test_stream_before_initialize_fails(
        self, client_factory, plugin_registry, memory, seed_bot
    ):
        agent = BotAgent(await seed_bot(), client_factory, plugin_registry, memory)
        with pytest.raises(NotInitializedError):
            async for _ in agent.process_stream(_incoming()):
                pass

    async def test_missing_model_is_invalid(self, agent_factory, seed_bot):
        with pytest.raises(ConfigurationInvalidError):
            await agent_factory.create_agent(await seed_bot(with_model=False))

    async def test_unknown_plugins_are_skipped(self, agent_factory, seed_bot):
        bot = await seed_bot(
            plugins=(
                PluginConfig(plugin_id="math"),
                PluginConfig(plugin_id="does-not-exist"),
                PluginConfig(plugin_id="datetime", enabled=False),
            )
        )
        agent = await agent_factory.create_agent(bot)

        names = {tool.name for tool in agent.tools}
        assert "Math_Add" in names
        assert not any(name.startswith("DateTime_") for name in names)

    async def test_tools_are_passed_to_model(self, agent_factory, seed_bot, fake_provider):
        agent = await agent_factory.create_agent(
            await seed_bot(plugins=(PluginConfig(plugin_id="datetime"),))
        )
        await agent.process(_incoming())
        tools = fake_provider.last.calls[-1]["tools"]
        assert "DateTime_GetCurrentDateTimeUtc" in {t.name for t in tools}

    async def test_configurable_plugin_receives_settings(
        self, client_factory, memory, seed_bot
    ):
        seen_keys = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_keys.append(request.headers["X-Subscription-Token"])
            return httpx.Response(
                200,
                json={"web": {"results": [{"title": "Octo", "description": "d", "url": "https://x"}]}},
            )

        registry = PluginRegistry()
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        registry.register(WebSearchPlugin(http_client=http_client))
        bot = await seed_bot(
            plugins=(PluginConfig(plugin_id="websearch", settings={"api_key": "brave-key"}),)
        )

        agent = await AgentFactory(client_factory, registry, memory).create_agent(bot)
        [search] = agent.tools
        result = await search.execute(query="octo")

        assert seen_keys == ["brave-key"]
        assert "**Octo**" in result
        await http_client.aclose()


class TestProcessStream:
    async def test_yields_chunks_and_persists_after_completion(
        self, agent_factory, seed_bot, memory, fake_provider
    ):
        fake_provider.chunks = ["Hel", "lo", " world"]
        agent = await agent_factory.create_agent(await seed_bot())

        chunks = [chunk async for chunk in agent.process_stream(_incoming("Say hello"))]

        assert chunks == ["Hel", "lo", " world"]
        conversation, history = await _stored(memory)
        assert [m.content for m in history] == ["Say hello", "Hello world"]
        assert conversation.last_message_at == history[1].timestamp

    async def test_nothing_persisted_until_drained(self, agent_factory, seed_bot, memory):
        agent = await agent_factory.create_agent(await seed_bot())
        stream = agent.process_stream(_incoming())

        await stream.__anext__()
        _, history = await _stored(memory)
        assert history == []
        await stream.aclose()

    async def test_abandoned_stream_persists_nothing(self, agent_factory, seed_bot, memory):
        agent = await agent_factory.create_agent(await seed_bot())

        stream = agent.process_stream(_incoming())
        async for _ in stream:
            break
        await stream.aclose()

        _, history = await _stored(memory)
        assert history == []

    async def test_cancel_mid_stream_persists_no_assistant_turn(
        self, agent_factory, seed_bot, memory, fake_provider
    ):
        fake_provider.chunks = ["one ", "two ", "three"]
        agent = await agent_factory.create_agent(await seed_bot())
        cancel = asyncio.Event()
        received = []

        with pytest.raises(TurnCancelledError):
            async for chunk in agent.process_stream(_incoming(), cancel_event=cancel):
                received.append(chunk)
                cancel.set()

        assert received == ["one "]
        _, history = await _stored(memory)
        assert not any(m.role == MessageRole.ASSISTANT for m in history)

    async def test_cancel_while_waiting_for_chunk(
        self, agent_factory, seed_bot, memory, fake_provider
    ):
        fake_provider.delay = 2.0
        agent = await agent_factory.create_agent(await seed_bot())
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel.set)
        received = []

        start = loop.time()
        with pytest.raises(TurnCancelledError):
            async for chunk in agent.process_stream(_incoming(), cancel_event=cancel):
                received.append(chunk)

        assert loop.time() - start < 0.5
        assert received == []
        _, history = await _stored(memory)
        assert history == []

    async def test_task_cancellation_persists_nothing(self, agent_factory, seed_bot, memory):
        agent = await agent_factory.create_agent(await seed_bot())
        first_chunk = asyncio.Event()

        async def consume() -> None:
            async for _ in agent.process_stream(_incoming()):
                first_chunk.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(consume())
        await first_chunk.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        _, history = await _stored(memory)
        assert history == []

    async def test_stream_error_aborts_without_persisting(
        self, agent_factory, seed_bot, memory, fake_provider
    ):
        fake_provider.error = UpstreamFailureError("fake", "connection reset")
        agent = await agent_factory.create_agent(await seed_bot())

        with pytest.raises(UpstreamFailureError):
            async for _ in agent.process_stream(_incoming()):
                pass

        _, history = await _stored(memory)
        assert history == []


class TestClose:
    async def test_close_waits_for_in_flight_turn(
        self, agent_factory, seed_bot, fake_provider
    ):
        fake_provider.delay = 0.05
        agent = await agent_factory.create_agent(await seed_bot())

        turn = asyncio.create_task(agent.process(_incoming()))
        await asyncio.sleep(0.01)
        await agent.close()
        assert not fake_provider.last.closed

        assert await turn == "Hello there!"
        assert fake_provider.last.closed
        with pytest.raises(NotInitializedError):
            await agent.process(_incoming())
