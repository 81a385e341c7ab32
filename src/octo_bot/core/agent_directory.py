"""Process-wide map from bot id to its live agent."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from octo_bot.ai.agent import AgentFactory, BotAgent
from octo_bot.channels.models import IncomingMessage
from octo_bot.core.keyed_lock import KeyedLock
from octo_bot.errors import ConfigurationInvalidError, NotFoundError, NotInitializedError
from octo_bot.log import get_logger
from octo_bot.storage.bot_repo import BotRepository

logger = get_logger(__name__)


class AgentDirectory:
    """Builds an agent on first use and reuses it until evicted.

    Construction is serialized per bot id, so concurrent callers for the same
    bot share one instance. Different bots never wait on each other.
    """

    def __init__(self, bot_repo: BotRepository, agent_factory: AgentFactory):
        self._bot_repo = bot_repo
        self._agent_factory = agent_factory
        self._agents: dict[str, BotAgent] = {}
        self._locks: KeyedLock[str] = KeyedLock()

    async def get_or_create(self, bot_id: str) -> BotAgent:
        agent = self._agents.get(bot_id)
        if agent is not None:
            return agent

        async with self._locks.hold(bot_id):
            agent = self._agents.get(bot_id)
            if agent is not None:
                return agent

            bot = await self._bot_repo.get_bot_instance_with_configs(bot_id)
            if bot is None:
                raise NotFoundError(f"Bot instance '{bot_id}' not found")
            if not bot.enabled:
                raise ConfigurationInvalidError(f"Bot instance '{bot_id}' is disabled")

            agent = await self._agent_factory.create_agent(bot)
            self._agents[bot_id] = agent
            logger.info("agent_created", bot_id=bot_id)
            return agent

    async def process(
        self,
        bot_id: str,
        message: IncomingMessage,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Run one turn on the bot's current agent.

        An agent evicted after it was looked up refuses the turn before doing
        any work; the turn is then retried once on a freshly built agent.
        """
        agent = await self.get_or_create(bot_id)
        try:
            return await agent.process(message, cancel_event)
        except NotInitializedError:
            if not agent.is_closed:
                raise
            logger.info("agent_evicted_during_lookup", bot_id=bot_id)
        agent = await self.get_or_create(bot_id)
        return await agent.process(message, cancel_event)

    async def process_stream(
        self,
        bot_id: str,
        message: IncomingMessage,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        agent = await self.get_or_create(bot_id)
        stream = agent.process_stream(message, cancel_event)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    async def remove(self, bot_id: str) -> bool:
        """Evict so the next lookup rebuilds from current configuration."""
        async with self._locks.hold(bot_id):
            agent = self._agents.pop(bot_id, None)
        if agent is None:
            return False
        await agent.close()
        logger.info("agent_removed", bot_id=bot_id)
        return True

    def has(self, bot_id: str) -> bool:
        return bot_id in self._agents

    def bot_ids(self) -> list[str]:
        return list(self._agents)

    async def close_all(self) -> None:
        for bot_id in list(self._agents):
            await self.remove(bot_id)
