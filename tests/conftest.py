from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio

from octo_bot.ai.agent import AgentFactory
from octo_bot.ai.client import ChatClient, ChatResponse
from octo_bot.ai.providers import ModelClientFactory
from octo_bot.ai.tool_runner import raise_if_cancelled
from octo_bot.channels.base import ChannelAdapter, ChannelFactory
from octo_bot.channels.manager import ChannelOrchestrator
from octo_bot.channels.models import (
    ChannelConfiguration,
    ChannelSettingDefinition,
    OutgoingMessage,
)
from octo_bot.channels.registry import ChannelRegistry
from octo_bot.config import SchedulerConfig
from octo_bot.core.agent_directory import AgentDirectory
from octo_bot.core.memory import ConversationMemory
from octo_bot.core.types import ChannelStatus
from octo_bot.plugins.base import Tool
from octo_bot.plugins.registry import PluginRegistry
from octo_bot.services.scheduler import ScheduledJobRunner
from octo_bot.storage.bot_repo import BotRepository
from octo_bot.storage.conversation_repo import ConversationRepository
from octo_bot.storage.database import Database
from octo_bot.storage.job_repo import JobRepository
from octo_bot.storage.models import (
    BotInstance,
    ChannelConfig,
    ModelConfiguration,
    PluginConfig,
)

FAKE_MODEL = ModelConfiguration(id="fake-model", provider="fake", name="Fake", model_id="fake-1")


# ── Fake model client ───────────────────────────────────────────────

class FakeChatClient(ChatClient):
    """Scripted chat client. Replies are consumed in order; the last one repeats."""

    def __init__(self, replies: list[str] | None = None, chunks: list[str] | None = None):
        super().__init__("fake-1")
        self.replies = list(replies or ["Hello there!"])
        self.chunks = list(chunks or ["Hel", "lo", "!"])
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.delay = 0.0
        self.closed = False

    def _record(self, system: str, messages: list[dict[str, Any]], tools: list[Tool]) -> None:
        self.calls.append({"system": system, "messages": messages, "tools": tools})

    async def complete(self, system, messages, tools, cancel_event=None) -> ChatResponse:
        self._record(system, messages, tools)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return ChatResponse(text=text, input_tokens=3, output_tokens=5)

    async def stream(self, system, messages, tools, cancel_event=None) -> AsyncIterator[str]:
        self._record(system, messages, tools)
        for chunk in self.chunks:
            raise_if_cancelled(cancel_event)
            await asyncio.sleep(self.delay)
            yield chunk
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        self.closed = True


class FakeProvider:
    """Client builder that remembers every client it hands out."""

    def __init__(self) -> None:
        self.clients: list[FakeChatClient] = []
        self.replies: list[str] | None = None
        self.chunks: list[str] | None = None
        self.error: Exception | None = None
        self.delay = 0.0

    def __call__(self, config: ModelConfiguration, max_tool_rounds: int) -> FakeChatClient:
        client = FakeChatClient(self.replies, self.chunks)
        client.error = self.error
        client.delay = self.delay
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeChatClient:
        return self.clients[-1]


# ── Fake channel ────────────────────────────────────────────────────

class FakeChannelAdapter(ChannelAdapter):
    def __init__(self, config: ChannelConfiguration, channel_type: str):
        super().__init__(config)
        self.channel_type = channel_type
        self.sent: list[OutgoingMessage] = []
        self.started = 0
        self.stopped = 0
        self.fail_start = False
        self.fail_send = False
        self.typing: list[str] = []
        self.on_typing: Callable[[], Awaitable[Any]] | None = None

    async def start(self) -> None:
        if self.fail_start:
            raise RuntimeError("cannot connect")
        self.started += 1
        self.status = ChannelStatus.CONNECTED

    async def stop(self) -> None:
        self.stopped += 1
        self.status = ChannelStatus.STOPPED

    async def send_typing_indicator(self, channel_id: str) -> None:
        self.typing.append(channel_id)
        if self.on_typing is not None:
            await self.on_typing()

    async def send(self, message: OutgoingMessage) -> None:
        if self.fail_send:
            raise RuntimeError("send failed")
        self.sent.append(message)


class FakeChannelFactory(ChannelFactory):
    settings = (ChannelSettingDefinition(key="token", display_name="Token", required=True),)

    def __init__(self, channel_type: str = "telegram"):
        self.channel_type = channel_type
        self.display_name = channel_type.title()
        self.adapters: list[FakeChannelAdapter] = []
        self.fail_start = False

    def create(self, config: ChannelConfiguration) -> ChannelAdapter:
        adapter = FakeChannelAdapter(config, self.channel_type)
        adapter.fail_start = self.fail_start
        self.adapters.append(adapter)
        return adapter


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until `predicate` holds; fails the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ── Storage ─────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def bot_repo(db) -> BotRepository:
    return BotRepository(db)


@pytest.fixture
def conversation_repo(db) -> ConversationRepository:
    return ConversationRepository(db)


@pytest.fixture
def job_repo(db) -> JobRepository:
    return JobRepository(db)


@pytest.fixture
def memory(conversation_repo) -> ConversationMemory:
    return ConversationMemory(conversation_repo)


@pytest.fixture
def seed_bot(bot_repo) -> Callable[..., Awaitable[BotInstance]]:
    async def _seed(
        bot_id: str = "bot-1",
        *,
        with_model: bool = True,
        enabled: bool = True,
        system_prompt: str = "You are helpful.",
        plugins: tuple[PluginConfig, ...] = (),
        channels: tuple[str, ...] = (),
    ) -> BotInstance:
        if with_model:
            await bot_repo.upsert_model_config(FAKE_MODEL)
        bot = BotInstance(
            id=bot_id,
            name=bot_id,
            system_prompt=system_prompt,
            enabled=enabled,
            default_model=FAKE_MODEL if with_model else None,
            plugin_configs=list(plugins),
            channel_configs=[
                ChannelConfig(bot_id=bot_id, channel_type=c, settings={"token": "secret"})
                for c in channels
            ],
        )
        await bot_repo.upsert_bot_instance(bot)
        return bot

    return _seed


# ── Runtime ─────────────────────────────────────────────────────────

@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def client_factory(fake_provider) -> ModelClientFactory:
    factory = ModelClientFactory.with_builtin_providers()
    factory.register("fake", fake_provider)
    return factory


@pytest.fixture
def plugin_registry() -> PluginRegistry:
    registry = PluginRegistry()
    registry.discover_and_register()
    return registry


@pytest.fixture
def agent_factory(client_factory, plugin_registry, memory) -> AgentFactory:
    return AgentFactory(client_factory, plugin_registry, memory)


@pytest_asyncio.fixture
async def agents(bot_repo, agent_factory):
    directory = AgentDirectory(bot_repo, agent_factory)
    yield directory
    await directory.close_all()


@pytest.fixture
def channel_factory() -> FakeChannelFactory:
    return FakeChannelFactory("telegram")


@pytest.fixture
def channel_registry(channel_factory) -> ChannelRegistry:
    registry = ChannelRegistry()
    registry.register(channel_factory)
    return registry


@pytest_asyncio.fixture
async def orchestrator(bot_repo, channel_registry, agents):
    manager = ChannelOrchestrator(
        bot_repo, channel_registry, agents, apology_message="Sorry!", stop_grace_seconds=1.0
    )
    yield manager
    await manager.stop_all()


@pytest_asyncio.fixture
async def job_runner(job_repo, agents, orchestrator):
    runner = ScheduledJobRunner(
        job_repo,
        agents,
        SchedulerConfig(poll_interval_seconds=3600, shutdown_grace_seconds=1.0),
        channels=orchestrator,
    )
    yield runner
    await runner.stop()
