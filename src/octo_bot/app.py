"""Application orchestrator: wires all components and manages lifecycle."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from octo_bot.ai.agent import AgentFactory
from octo_bot.ai.providers import ModelClientFactory
from octo_bot.channels.manager import ChannelOrchestrator, RunningChannelInfo
from octo_bot.channels.models import IncomingMessage
from octo_bot.channels.registry import ChannelRegistry
from octo_bot.config import AppConfig, BotConfig, JobConfig, ModelConfigEntry
from octo_bot.core.agent_directory import AgentDirectory
from octo_bot.core.memory import ConversationMemory
from octo_bot.core.types import API_CHANNEL, ChannelStatus
from octo_bot.log import get_logger
from octo_bot.plugins.registry import PluginRegistry
from octo_bot.services.scheduler import ScheduledJobRunner
from octo_bot.storage.bot_repo import BotRepository
from octo_bot.storage.conversation_repo import ConversationRepository
from octo_bot.storage.database import Database, utcnow
from octo_bot.storage.job_repo import JobRepository
from octo_bot.storage.models import (
    BotInstance,
    ChannelConfig,
    ChatMessage,
    Conversation,
    JobExecution,
    ModelConfiguration,
    PluginConfig,
    ScheduledJob,
)

logger = get_logger(__name__)


def _model_from_config(entry: ModelConfigEntry) -> ModelConfiguration:
    return ModelConfiguration(
        id=entry.id,
        provider=entry.provider,
        name=entry.name or entry.id,
        model_id=entry.model,
        api_key=entry.api_key,
        endpoint=entry.endpoint,
        temperature=entry.temperature,
        max_tokens=entry.max_tokens,
    )


def _bot_from_config(cfg: BotConfig, models: dict[str, ModelConfiguration]) -> BotInstance:
    return BotInstance(
        id=cfg.id,
        name=cfg.name or cfg.id,
        description=cfg.description,
        system_prompt=cfg.system_prompt,
        enabled=cfg.enabled,
        default_model=models.get(cfg.model) if cfg.model else None,
        plugin_configs=[
            PluginConfig(plugin_id=p.id, enabled=p.enabled, settings=dict(p.settings))
            for p in cfg.plugins
        ],
        channel_configs=[
            ChannelConfig(
                bot_id=cfg.id,
                channel_type=c.type.lower(),
                enabled=c.enabled,
                settings=dict(c.settings),
            )
            for c in cfg.channels
        ],
    )


def _job_from_config(cfg: JobConfig) -> ScheduledJob:
    return ScheduledJob(
        id=cfg.id,
        bot_id=cfg.bot,
        instructions=cfg.instructions,
        cron_expression=cfg.cron,
        name=cfg.name or cfg.id,
        description=cfg.description,
        enabled=cfg.enabled,
        target_channel=cfg.target_channel,
        target_chat_id=cfg.target_chat_id,
    )


def api_message(
    content: str,
    user_id: str = "api",
    channel_id: str = "api",
    user_name: str = "API",
) -> IncomingMessage:
    """Incoming message for the direct (channel-less) path."""
    return IncomingMessage(
        channel_type=API_CHANNEL,
        channel_id=channel_id,
        user_id=user_id,
        user_name=user_name,
        content=content,
        timestamp=utcnow(),
    )


class OctoBotApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        client_factory: Optional[ModelClientFactory] = None,
        channel_registry: Optional[ChannelRegistry] = None,
        plugin_registry: Optional[PluginRegistry] = None,
    ):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.bot_repo = BotRepository(self.db)
        self.conversation_repo = ConversationRepository(self.db)
        self.job_repo = JobRepository(self.db)
        self.memory = ConversationMemory(self.conversation_repo)

        self.plugin_registry = plugin_registry or PluginRegistry()
        self.client_factory = client_factory or ModelClientFactory.with_builtin_providers(
            config.agent.max_tool_rounds
        )
        self.agent_factory = AgentFactory(
            self.client_factory,
            self.plugin_registry,
            self.memory,
            history_limit=config.agent.history_limit,
        )
        self.agents = AgentDirectory(self.bot_repo, self.agent_factory)
        self.channels = ChannelOrchestrator(
            self.bot_repo,
            channel_registry or ChannelRegistry.with_builtin_channels(),
            self.agents,
            apology_message=config.channels.apology_message,
        )
        self.scheduler = ScheduledJobRunner(
            self.job_repo, self.agents, config.scheduler, channels=self.channels
        )
        self._initialized = False

    async def initialize(self) -> None:
        """Open storage, register plugins and sync configuration. Starts nothing."""
        if self._initialized:
            return
        # 1. Database
        await self.db.initialize()

        # 2. Plugins
        if not self.plugin_registry.all_plugins():
            self.plugin_registry.discover_and_register()
        await self.plugin_registry.initialize_all()

        # 3. Configuration store
        await self.sync_config()
        await self.scheduler.initialize_schedule()
        self._initialized = True

    async def start(self) -> None:
        """Initialize, start the job poller and bring up enabled channels."""
        await self.initialize()
        await self.scheduler.start()

        started = 0
        for bot_cfg in self.config.bots:
            if not bot_cfg.enabled:
                continue
            for channel in bot_cfg.channels:
                if not channel.enabled:
                    continue
                try:
                    await self.channels.start(bot_cfg.id, channel.type)
                    started += 1
                except Exception as e:
                    logger.error(
                        "channel_autostart_failed",
                        bot_id=bot_cfg.id,
                        channel_type=channel.type,
                        error=str(e),
                    )

        logger.info("octo_bot_started", bot_count=len(self.config.bots), channel_count=started)

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await self.channels.stop_all()
        await self.scheduler.stop()
        await self.agents.close_all()
        await self.plugin_registry.shutdown_all()
        await self.db.close()
        self._initialized = False
        logger.info("octo_bot_stopped")

    async def sync_config(self) -> None:
        """Upsert models, bots and jobs from YAML into the configuration store."""
        models = {m.id: _model_from_config(m) for m in self.config.models}
        for model in models.values():
            await self.bot_repo.upsert_model_config(model)
        for bot_cfg in self.config.bots:
            await self.bot_repo.upsert_bot_instance(_bot_from_config(bot_cfg, models))
        for job_cfg in self.config.jobs:
            job = _job_from_config(job_cfg)
            stored = await self.job_repo.get(job.id)
            await self.job_repo.upsert(job)
            if stored is not None and stored.cron_expression != job.cron_expression:
                # The stored next run belongs to the old schedule
                await self.job_repo.set_next_run(
                    job.id, self.scheduler.compute_next_run(job.cron_expression)
                )
        logger.info(
            "config_synced",
            models=len(models),
            bots=len(self.config.bots),
            jobs=len(self.config.jobs),
        )

    # ── Caller surface ───────────────────────────────────────────────

    async def process(
        self,
        bot_id: str,
        message: IncomingMessage,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        return await self.agents.process(bot_id, message, cancel_event)

    async def process_stream(
        self,
        bot_id: str,
        message: IncomingMessage,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        stream = self.agents.process_stream(bot_id, message, cancel_event)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    async def reload_bot(self, bot_id: str) -> bool:
        """Drop the cached agent so the next message rebuilds it from the store."""
        return await self.agents.remove(bot_id)

    async def start_channel(self, bot_id: str, channel_type: str) -> RunningChannelInfo:
        return await self.channels.start(bot_id, channel_type)

    async def stop_channel(self, bot_id: str, channel_type: str) -> bool:
        return await self.channels.stop(bot_id, channel_type)

    def channel_status(self, bot_id: str, channel_type: str) -> ChannelStatus:
        return self.channels.status(bot_id, channel_type)

    async def run_job_now(self, job_id: str) -> JobExecution:
        return await self.scheduler.run_job_now(job_id)

    async def list_executions(self, job_id: str, limit: int = 20) -> list[JobExecution]:
        return await self.scheduler.list_executions(job_id, limit)

    async def list_conversations(self, bot_id: str, limit: int = 100) -> list[Conversation]:
        return await self.memory.list_conversations(bot_id, limit)

    async def history(
        self, bot_id: str, channel_id: str, user_id: str, limit: int = 50
    ) -> list[ChatMessage]:
        conversation = await self.conversation_repo.get_by_key(bot_id, channel_id, user_id)
        if conversation is None:
            return []
        return await self.memory.get_history(conversation.id, limit)

    async def health_check(self) -> dict[str, bool]:
        return {
            "scheduler": await self.scheduler.health_check(),
            "channels": all(
                info.status != ChannelStatus.ERROR for info in self.channels.list_running()
            ),
        }
