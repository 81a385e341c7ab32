"""Channel factory registry and the built-in channel types."""

from __future__ import annotations

from octo_bot.channels.base import ChannelAdapter, ChannelFactory
from octo_bot.channels.models import ChannelConfiguration, ChannelSettingDefinition
from octo_bot.errors import UnknownChannelTypeError
from octo_bot.log import get_logger

logger = get_logger(__name__)


class TelegramChannelFactory(ChannelFactory):
    channel_type = "telegram"
    display_name = "Telegram"
    settings = (
        ChannelSettingDefinition(
            key="token",
            display_name="Bot Token",
            description="Token issued by @BotFather",
            required=True,
            secret=True,
        ),
    )

    def create(self, config: ChannelConfiguration) -> ChannelAdapter:
        # Imported lazily so the SDK is only loaded when the channel is used
        from octo_bot.channels.telegram import TelegramAdapter

        return TelegramAdapter(config)


class DiscordChannelFactory(ChannelFactory):
    channel_type = "discord"
    display_name = "Discord"
    settings = (
        ChannelSettingDefinition(
            key="token",
            display_name="Bot Token",
            description="Discord application bot token",
            required=True,
            secret=True,
        ),
        ChannelSettingDefinition(
            key="ready_timeout",
            display_name="Ready Timeout",
            description="Seconds to wait for the gateway to become ready",
            default="30",
        ),
    )

    def create(self, config: ChannelConfiguration) -> ChannelAdapter:
        from octo_bot.channels.discord_adapter import DiscordAdapter

        return DiscordAdapter(config)


class ChannelRegistry:
    """Channel factories keyed case-insensitively by channel type."""

    def __init__(self) -> None:
        self._factories: dict[str, ChannelFactory] = {}

    @classmethod
    def with_builtin_channels(cls) -> ChannelRegistry:
        registry = cls()
        registry.register(TelegramChannelFactory())
        registry.register(DiscordChannelFactory())
        return registry

    def register(self, factory: ChannelFactory) -> None:
        self._factories[factory.channel_type.lower()] = factory
        logger.debug("channel_factory_registered", channel_type=factory.channel_type)

    def get(self, channel_type: str) -> ChannelFactory | None:
        return self._factories.get(channel_type.lower())

    def resolve(self, channel_type: str) -> ChannelFactory:
        factory = self.get(channel_type)
        if factory is None:
            raise UnknownChannelTypeError(f"No channel factory registered for '{channel_type}'")
        return factory

    def channel_types(self) -> list[str]:
        return sorted(self._factories)
