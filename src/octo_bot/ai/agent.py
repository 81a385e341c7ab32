"""Agent runtime: one bot bound to its model client, tools and conversation memory."""

from __future__ import annotations

import asyncio
from typing import AsyncGenerator, AsyncIterator

from octo_bot.ai.client import ChatClient, ChatResponse
from octo_bot.ai.conversation import build_messages, build_user_content
from octo_bot.ai.providers import ModelClientFactory
from octo_bot.ai.tool_runner import await_or_cancel, raise_if_cancelled
from octo_bot.channels.models import IncomingMessage
from octo_bot.core.memory import DEFAULT_HISTORY_LIMIT, ConversationMemory
from octo_bot.core.types import MessageRole, PluginCapability
from octo_bot.errors import ConfigurationInvalidError, NotInitializedError
from octo_bot.log import get_logger
from octo_bot.plugins.base import Tool
from octo_bot.plugins.registry import PluginRegistry
from octo_bot.storage.database import ensure_utc, utcnow
from octo_bot.storage.models import BotInstance, ChatMessage, Conversation

logger = get_logger(__name__)

_END_OF_STREAM = object()


async def _next_chunk(stream: AsyncGenerator[str, None]) -> str | object:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


class BotAgent:
    """Turns one incoming message plus history into a model response.

    Both turns of an exchange are persisted only after the model has produced
    its complete answer. A stream that is abandoned, cancelled or fails part
    way leaves history untouched.
    """

    def __init__(
        self,
        bot: BotInstance,
        client_factory: ModelClientFactory,
        plugin_registry: PluginRegistry,
        memory: ConversationMemory,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self._bot = bot
        self._client_factory = client_factory
        self._plugin_registry = plugin_registry
        self._memory = memory
        self._history_limit = history_limit
        self._client: ChatClient | None = None
        self._tools: list[Tool] = []
        self._active_turns = 0
        self._closing = False

    @property
    def bot_id(self) -> str:
        return self._bot.id

    @property
    def bot(self) -> BotInstance:
        return self._bot

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    @property
    def is_closed(self) -> bool:
        return self._closing

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools)

    @property
    def model_name(self) -> str:
        return self._client.model_name if self._client else ""

    async def initialize(self) -> None:
        """Bind the model client and resolve enabled plugins into tools."""
        model_config = self._bot.default_model
        if model_config is None:
            raise ConfigurationInvalidError(f"Bot '{self._bot.id}' has no default model configuration")

        tools: dict[str, Tool] = {}
        for plugin_config in self._bot.enabled_plugins:
            plugin = self._plugin_registry.get(plugin_config.plugin_id)
            if plugin is None:
                logger.warning("plugin_not_found", bot_id=self._bot.id, plugin_id=plugin_config.plugin_id)
                continue
            if plugin.supports(PluginCapability.CONFIGURABLE):
                plugin.configure(self._bot.id, dict(plugin_config.settings))
            for tool in plugin.get_functions(self._bot.id):
                if tool.name in tools:
                    logger.warning("tool_name_conflict", bot_id=self._bot.id, tool=tool.name)
                    continue
                tools[tool.name] = tool

        self._tools = list(tools.values())
        self._client = self._client_factory.create_client(model_config)
        logger.info(
            "agent_initialized",
            bot_id=self._bot.id,
            model=self._client.model_name,
            tools=len(self._tools),
        )

    def _require_client(self) -> ChatClient:
        if self._client is None:
            raise NotInitializedError(f"Agent for bot '{self._bot.id}' is not initialized")
        if self._closing:
            raise NotInitializedError(f"Agent for bot '{self._bot.id}' has been closed")
        return self._client

    async def _prepare(self, message: IncomingMessage) -> tuple[Conversation, list[dict]]:
        conversation = await self._memory.get_or_create(
            self._bot.id, message.channel_id, message.user_id
        )
        history = await self._memory.get_history(conversation.id, self._history_limit)
        return conversation, build_messages(history, message.content, message.attachments)

    async def process(
        self, message: IncomingMessage, cancel_event: asyncio.Event | None = None
    ) -> str:
        client = self._require_client()
        self._active_turns += 1
        try:
            conversation, messages = await self._prepare(message)
            raise_if_cancelled(cancel_event)
            response = await await_or_cancel(
                client.complete(self._bot.system_prompt, messages, self._tools, cancel_event),
                cancel_event,
            )
            raise_if_cancelled(cancel_event)
            await self._persist_turn(conversation.id, message, response)
            return response.text
        finally:
            await self._turn_finished()

    async def process_stream(
        self, message: IncomingMessage, cancel_event: asyncio.Event | None = None
    ) -> AsyncIterator[str]:
        """Yield response fragments as they arrive.

        Persistence happens after the last fragment, so a consumer that stops
        iterating (or sets ``cancel_event``) leaves no assistant turn behind.
        """
        client = self._require_client()
        self._active_turns += 1
        try:
            conversation, messages = await self._prepare(message)
            parts: list[str] = []
            stream = client.stream(self._bot.system_prompt, messages, self._tools, cancel_event)
            try:
                while True:
                    chunk = await await_or_cancel(_next_chunk(stream), cancel_event)
                    if chunk is _END_OF_STREAM:
                        break
                    raise_if_cancelled(cancel_event)
                    parts.append(chunk)
                    yield chunk
            finally:
                await stream.aclose()
            raise_if_cancelled(cancel_event)
            await self._persist_turn(conversation.id, message, ChatResponse(text="".join(parts)))
        finally:
            await self._turn_finished()

    async def _persist_turn(
        self, conversation_id: str, message: IncomingMessage, response: ChatResponse
    ) -> None:
        user_time = ensure_utc(message.timestamp)
        user_message = ChatMessage(
            role=MessageRole.USER,
            content=build_user_content(message.content, message.attachments),
            timestamp=user_time,
            metadata={"user_name": message.user_name, "channel_type": message.channel_type},
        )
        assistant_message = ChatMessage(
            role=MessageRole.ASSISTANT,
            content=response.text,
            timestamp=max(utcnow(), user_time),
            metadata={
                "model": self.model_name,
                "input_tokens": response.input_tokens,
                "output_tokens": response.output_tokens,
            },
        )

        async def _write() -> None:
            # User turn first: a cut-off write never leaves an unanswered reply
            await self._memory.add_message(conversation_id, user_message)
            await self._memory.add_message(conversation_id, assistant_message)

        await asyncio.shield(_write())
        logger.debug("turn_persisted", bot_id=self._bot.id, conversation_id=conversation_id)

    async def _turn_finished(self) -> None:
        self._active_turns -= 1
        if self._closing and self._active_turns == 0:
            await self._close_client()

    async def close(self) -> None:
        """Release the model client once in-flight turns have finished."""
        self._closing = True
        if self._active_turns == 0:
            await self._close_client()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.close()
            except Exception as e:
                logger.warning("model_client_close_error", bot_id=self._bot.id, error=str(e))
            logger.info("agent_closed", bot_id=self._bot.id)


class AgentFactory:
    """Builds initialized agents from bot instances."""

    def __init__(
        self,
        client_factory: ModelClientFactory,
        plugin_registry: PluginRegistry,
        memory: ConversationMemory,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self._client_factory = client_factory
        self._plugin_registry = plugin_registry
        self._memory = memory
        self._history_limit = history_limit

    async def create_agent(self, bot: BotInstance) -> BotAgent:
        agent = BotAgent(
            bot,
            self._client_factory,
            self._plugin_registry,
            self._memory,
            history_limit=self._history_limit,
        )
        await agent.initialize()
        return agent
