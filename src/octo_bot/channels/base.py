"""Abstract channel adapter and factory interfaces."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from octo_bot.channels.models import (
    ChannelConfiguration,
    ChannelError,
    ChannelEvent,
    ChannelSettingDefinition,
    IncomingMessage,
    OutgoingMessage,
)
from octo_bot.core.types import ChannelStatus
from octo_bot.log import get_logger

logger = get_logger(__name__)


class ChannelAdapter(ABC):
    """Base class for all channel transports.

    Inbound traffic is delivered by pushing ``IncomingMessage`` and
    ``ChannelError`` events onto ``events``; whoever owns the adapter drains
    that queue. The queue exists before ``start()`` so nothing is lost
    between connecting and the consumer attaching.
    """

    channel_type: str = ""
    max_message_length: int = 4000

    def __init__(self, config: ChannelConfiguration):
        self.config = config
        self.events: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self.status = ChannelStatus.STOPPED

    @property
    def bot_id(self) -> str:
        return self.config.bot_id

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and begin receiving messages."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Gracefully disconnect."""
        ...

    @abstractmethod
    async def send(self, message: OutgoingMessage) -> None:
        """Send a message to a specific chat/channel."""
        ...

    async def send_typing_indicator(self, channel_id: str) -> None:
        """Show typing/processing indicator where the platform has one."""

    def validate_configuration(self) -> list[str]:
        """Return human-readable problems with the adapter's settings."""
        return []

    def emit_message(self, message: IncomingMessage) -> None:
        self.events.put_nowait(message)

    def report_error(self, message: str, exception: BaseException | None = None) -> None:
        self.status = ChannelStatus.ERROR
        logger.error(
            "channel_adapter_error",
            bot_id=self.bot_id,
            channel_type=self.channel_type,
            error=message,
        )
        self.events.put_nowait(ChannelError(message=message, exception=exception))


class ChannelFactory(ABC):
    """Creates adapters for one channel type and describes its settings."""

    channel_type: str = ""
    display_name: str = ""
    settings: tuple[ChannelSettingDefinition, ...] = ()

    @abstractmethod
    def create(self, config: ChannelConfiguration) -> ChannelAdapter:
        ...

    def missing_settings(self, config: ChannelConfiguration) -> list[str]:
        return [s.key for s in self.settings if s.required and not config.get(s.key)]


def split_message(text: str, max_length: int = 4000) -> list[str]:
    """Split a message into chunks that fit within platform limits."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        # Prefer splitting at a newline
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos <= 0:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks
