"""Discord channel adapter using discord.py v2+."""

from __future__ import annotations

import asyncio
import io
from datetime import datetime, timezone
from typing import Any

import discord
from discord.ext import commands

from octo_bot.channels.base import ChannelAdapter, split_message
from octo_bot.channels.models import (
    Attachment,
    ChannelConfiguration,
    IncomingMessage,
    OutgoingMessage,
)
from octo_bot.core.types import ChannelStatus
from octo_bot.log import get_logger

logger = get_logger(__name__)

DISCORD_MAX_LENGTH = 2000


class DiscordAdapter(ChannelAdapter):
    """Gateway-connected Discord bot."""

    channel_type = "discord"
    max_message_length = DISCORD_MAX_LENGTH

    def __init__(self, config: ChannelConfiguration):
        super().__init__(config)
        intents = discord.Intents.default()
        intents.message_content = True
        self._bot = commands.Bot(command_prefix="!", intents=intents)
        self._task: asyncio.Task[Any] | None = None
        self._ready = asyncio.Event()
        self._stopping = False

        @self._bot.event
        async def on_ready() -> None:
            logger.info("discord_bot_ready", user=str(self._bot.user), bot_id=self.bot_id)
            self.status = ChannelStatus.CONNECTED
            self._ready.set()

        @self._bot.event
        async def on_disconnect() -> None:
            if not self._stopping:
                self.status = ChannelStatus.RECONNECTING

        @self._bot.event
        async def on_resumed() -> None:
            self.status = ChannelStatus.CONNECTED

        @self._bot.event
        async def on_message(message: discord.Message) -> None:
            if message.author == self._bot.user or message.author.bot:
                return
            await self._on_discord_message(message)

    def validate_configuration(self) -> list[str]:
        problems = []
        if not self.config.get("token"):
            problems.append(f"Discord bot token not configured for bot '{self.bot_id}'")
        try:
            float(self.config.get("ready_timeout", "30"))
        except ValueError:
            problems.append("ready_timeout must be a number")
        return problems

    async def start(self) -> None:
        self.status = ChannelStatus.STARTING
        self._stopping = False
        self._task = asyncio.create_task(self._bot.start(self.config.get("token")))
        self._task.add_done_callback(self._on_client_exit)

        timeout = float(self.config.get("ready_timeout", "30"))
        ready = asyncio.create_task(self._ready.wait())
        done, _ = await asyncio.wait({ready, self._task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if ready not in done:
            ready.cancel()
        if self._task in done:
            # Login failed before the gateway became ready
            self._task.result()
        elif not self._ready.is_set():
            logger.warning("discord_ready_timeout", bot_id=self.bot_id)

        logger.info("discord_adapter_started", bot_id=self.bot_id)

    def _on_client_exit(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled() or self._stopping:
            return
        error = task.exception()
        self.report_error(str(error) if error else "Discord client exited", error)

    async def stop(self) -> None:
        self._stopping = True
        await self._bot.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("discord_client_exit_error", bot_id=self.bot_id, error=str(e))
            self._task = None
        self.status = ChannelStatus.STOPPED
        logger.info("discord_adapter_stopped", bot_id=self.bot_id)

    async def _resolve_channel(self, channel_id: str) -> discord.abc.Messageable:
        channel = self._bot.get_channel(int(channel_id))
        if channel is None:
            channel = await self._bot.fetch_channel(int(channel_id))
        if not isinstance(channel, (discord.TextChannel, discord.DMChannel, discord.Thread)):
            raise RuntimeError(f"Discord channel {channel_id} cannot receive messages")
        return channel

    async def send(self, message: OutgoingMessage) -> None:
        channel = await self._resolve_channel(message.channel_id)
        reference = (
            discord.MessageReference(message_id=int(message.reply_to_id), channel_id=int(message.channel_id))
            if message.reply_to_id
            else None
        )

        files = [discord.File(io.BytesIO(att.data), filename=att.filename) for att in message.attachments]
        chunks = split_message(message.content, self.max_message_length) if message.content else []

        if files:
            # First chunk travels with the files
            first = chunks.pop(0) if chunks else None
            await channel.send(content=first, files=files, reference=reference)
            reference = None

        for chunk in chunks:
            await channel.send(chunk, reference=reference)
            reference = None

    async def send_typing_indicator(self, channel_id: str) -> None:
        channel = self._bot.get_channel(int(channel_id))
        if channel is not None and hasattr(channel, "typing"):
            await channel.typing()  # type: ignore[union-attr]

    async def _on_discord_message(self, message: discord.Message) -> None:
        text = message.content or ""
        attachments: list[Attachment] = []

        for att in message.attachments:
            try:
                data = await att.read()
                attachments.append(
                    Attachment(
                        data=data,
                        media_type=att.content_type or "application/octet-stream",
                        filename=att.filename,
                    )
                )
            except Exception as e:
                logger.warning("discord_attachment_download_error", error=str(e))

        if not text and not attachments:
            return

        self.emit_message(
            IncomingMessage(
                channel_type=self.channel_type,
                channel_id=str(message.channel.id),
                user_id=str(message.author.id),
                user_name=message.author.display_name,
                content=text,
                timestamp=message.created_at or datetime.now(timezone.utc),
                reply_to_id=(
                    str(message.reference.message_id) if message.reference else None
                ),
                attachments=attachments,
            )
        )
