"""Channel orchestrator: runs adapters per (bot, channel type) and routes their traffic."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from octo_bot.channels.base import ChannelAdapter
from octo_bot.channels.models import (
    ChannelConfiguration,
    ChannelError,
    IncomingMessage,
    OutgoingMessage,
)
from octo_bot.channels.registry import ChannelRegistry
from octo_bot.core.agent_directory import AgentDirectory
from octo_bot.core.keyed_lock import KeyedLock
from octo_bot.core.types import ChannelStatus
from octo_bot.errors import (
    ConfigurationMissingError,
    NotFoundError,
    UpstreamFailureError,
)
from octo_bot.log import bound_context, get_logger
from octo_bot.storage.bot_repo import BotRepository
from octo_bot.storage.database import utcnow

logger = get_logger(__name__)

DEFAULT_APOLOGY = "Sorry, I encountered an error processing your message. Please try again later."
STOP_GRACE_SECONDS = 10.0

ChannelKey = tuple[str, str]


@dataclass
class RunningChannel:
    bot_id: str
    channel_type: str
    adapter: ChannelAdapter
    started_at: datetime
    drain_task: Optional[asyncio.Task] = None
    tasks: set[asyncio.Task] = field(default_factory=set)

    @property
    def status(self) -> ChannelStatus:
        return self.adapter.status


@dataclass(frozen=True)
class RunningChannelInfo:
    bot_id: str
    channel_type: str
    status: ChannelStatus
    started_at: datetime


def _info(running: RunningChannel) -> RunningChannelInfo:
    return RunningChannelInfo(
        bot_id=running.bot_id,
        channel_type=running.channel_type,
        status=running.status,
        started_at=running.started_at,
    )


class ChannelOrchestrator:
    """Owns every running channel adapter; at most one per (bot, channel type).

    Each adapter's event queue is drained by its own task and every inbound
    message is handled on a separate task, so a slow model call on one
    conversation never holds up another.
    """

    def __init__(
        self,
        bot_repo: BotRepository,
        channel_registry: ChannelRegistry,
        agents: AgentDirectory,
        apology_message: str = DEFAULT_APOLOGY,
        stop_grace_seconds: float = STOP_GRACE_SECONDS,
    ):
        self._bot_repo = bot_repo
        self._registry = channel_registry
        self._agents = agents
        self._apology_message = apology_message
        self._stop_grace_seconds = stop_grace_seconds
        self._channels: dict[ChannelKey, RunningChannel] = {}
        self._locks: KeyedLock[ChannelKey] = KeyedLock()

    @staticmethod
    def _key(bot_id: str, channel_type: str) -> ChannelKey:
        return bot_id, channel_type.lower()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self, bot_id: str, channel_type: str) -> RunningChannelInfo:
        """Start a channel; returns the existing entry if it is already running.

        A channel whose adapter reported an error is torn down and started afresh.
        """
        key = self._key(bot_id, channel_type)
        existing = self._channels.get(key)
        if existing is not None and existing.status != ChannelStatus.ERROR:
            return _info(existing)

        async with self._locks.hold(key):
            existing = self._channels.get(key)
            if existing is not None:
                if existing.status != ChannelStatus.ERROR:
                    return _info(existing)
                logger.info("channel_restarting", bot_id=bot_id, channel_type=key[1])
                del self._channels[key]
                await self._shutdown(existing)

            stored = await self._bot_repo.get_channel_config(bot_id, key[1])
            if stored is None:
                raise ConfigurationMissingError(
                    f"No settings stored for channel '{channel_type}' of bot '{bot_id}'"
                )
            factory = self._registry.resolve(key[1])
            config = ChannelConfiguration(bot_id=bot_id, channel_type=key[1], settings=dict(stored.settings))
            missing = factory.missing_settings(config)
            if missing:
                raise ConfigurationMissingError(
                    f"Channel '{channel_type}' of bot '{bot_id}' is missing settings: {', '.join(missing)}"
                )

            adapter = factory.create(config)
            problems = adapter.validate_configuration()
            if problems:
                raise ConfigurationMissingError("; ".join(problems))

            running = RunningChannel(
                bot_id=bot_id, channel_type=key[1], adapter=adapter, started_at=utcnow()
            )
            running.drain_task = asyncio.create_task(
                self._drain(running), name=f"channel-drain:{bot_id}:{key[1]}"
            )
            try:
                await adapter.start()
            except Exception as e:
                running.drain_task.cancel()
                await asyncio.gather(running.drain_task, return_exceptions=True)
                try:
                    await adapter.stop()
                except Exception as stop_error:
                    logger.warning(
                        "channel_stop_error",
                        bot_id=bot_id,
                        channel_type=key[1],
                        error=str(stop_error),
                    )
                adapter.status = ChannelStatus.ERROR
                logger.error("channel_start_failed", bot_id=bot_id, channel_type=key[1], error=str(e))
                raise UpstreamFailureError(key[1], f"failed to start: {e}") from e

            # Adapters that don't track their own connection state
            if adapter.status == ChannelStatus.STOPPED:
                adapter.status = ChannelStatus.CONNECTED
            self._channels[key] = running
            logger.info("channel_started", bot_id=bot_id, channel_type=key[1])
            return _info(running)

    async def stop(self, bot_id: str, channel_type: str) -> bool:
        """Stop and discard a running channel. Returns False if it was not running."""
        key = self._key(bot_id, channel_type)
        async with self._locks.hold(key):
            running = self._channels.pop(key, None)
            if running is None:
                return False
            await self._shutdown(running)
        logger.info("channel_stopped", bot_id=bot_id, channel_type=key[1])
        return True

    async def _shutdown(self, running: RunningChannel) -> None:
        # Stop intake, let in-flight replies finish, then disconnect
        if running.drain_task is not None:
            running.drain_task.cancel()
            await asyncio.gather(running.drain_task, return_exceptions=True)
        if running.tasks:
            _, pending = await asyncio.wait(set(running.tasks), timeout=self._stop_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    "channel_messages_abandoned",
                    bot_id=running.bot_id,
                    channel_type=running.channel_type,
                    count=len(pending),
                )
                await asyncio.gather(*pending, return_exceptions=True)
        try:
            await running.adapter.stop()
        except Exception as e:
            logger.error(
                "channel_stop_error",
                bot_id=running.bot_id,
                channel_type=running.channel_type,
                error=str(e),
            )
        running.adapter.status = ChannelStatus.STOPPED

    async def stop_all(self) -> None:
        for bot_id, channel_type in list(self._channels):
            await self.stop(bot_id, channel_type)

    # ── Queries ──────────────────────────────────────────────────────

    def is_running(self, bot_id: str, channel_type: str) -> bool:
        return self._key(bot_id, channel_type) in self._channels

    def status(self, bot_id: str, channel_type: str) -> ChannelStatus:
        running = self._channels.get(self._key(bot_id, channel_type))
        return running.status if running else ChannelStatus.STOPPED

    def list_running(self, bot_id: Optional[str] = None) -> list[RunningChannelInfo]:
        return [
            _info(running)
            for (owner, _), running in self._channels.items()
            if bot_id is None or owner == bot_id
        ]

    async def send(self, bot_id: str, channel_type: str, message: OutgoingMessage) -> None:
        """Send an outbound message through a running channel."""
        running = self._channels.get(self._key(bot_id, channel_type))
        if running is None:
            raise NotFoundError(f"Channel '{channel_type}' of bot '{bot_id}' is not running")
        await running.adapter.send(message)

    # ── Inbound traffic ──────────────────────────────────────────────

    async def _drain(self, running: RunningChannel) -> None:
        adapter = running.adapter
        while True:
            event = await adapter.events.get()
            match event:
                case IncomingMessage():
                    task = asyncio.create_task(self._handle_message(running, event))
                    running.tasks.add(task)
                    task.add_done_callback(running.tasks.discard)
                case ChannelError():
                    adapter.status = ChannelStatus.ERROR
                    logger.error(
                        "channel_error",
                        bot_id=running.bot_id,
                        channel_type=running.channel_type,
                        error=event.message,
                    )

    async def _handle_message(self, running: RunningChannel, message: IncomingMessage) -> None:
        adapter = running.adapter
        with bound_context(
            bot_id=running.bot_id,
            channel_type=running.channel_type,
            channel_id=message.channel_id,
        ):
            logger.info("channel_message_received", user_id=message.user_id)
            try:
                await adapter.send_typing_indicator(message.channel_id)
            except Exception as e:
                logger.debug("typing_indicator_failed", error=str(e))

            try:
                response = await self._agents.process(running.bot_id, message)
                if not response.strip():
                    logger.warning("empty_response")
                    return
                await adapter.send(
                    OutgoingMessage(
                        channel_id=message.channel_id,
                        user_id=message.user_id,
                        content=response,
                    )
                )
            except Exception as e:
                logger.error("channel_message_failed", error=str(e), error_type=type(e).__name__)
                await self._send_apology(adapter, message)

    async def _send_apology(self, adapter: ChannelAdapter, message: IncomingMessage) -> None:
        try:
            await adapter.send(
                OutgoingMessage(
                    channel_id=message.channel_id,
                    user_id=message.user_id,
                    content=self._apology_message,
                )
            )
        except Exception as e:
            logger.warning("apology_send_failed", error=str(e))
