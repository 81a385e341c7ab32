"""Unified message models shared by every channel type."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from octo_bot.core.types import MessageFormat


@dataclass(frozen=True, slots=True)
class Attachment:
    """Binary attachment (image, file, etc.)."""

    data: bytes
    media_type: str  # e.g. "image/jpeg", "text/plain"
    filename: str = "attachment"


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    channel_type: str
    channel_id: str
    user_id: str
    user_name: str
    content: str
    timestamp: datetime
    reply_to_id: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    channel_id: str
    content: str
    user_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    format: MessageFormat = MessageFormat.PLAIN


@dataclass(frozen=True, slots=True)
class ChannelError:
    """Adapter-level failure pushed onto the adapter's event queue."""

    message: str
    exception: Optional[BaseException] = None


ChannelEvent = IncomingMessage | ChannelError


@dataclass(frozen=True, slots=True)
class ChannelSettingDefinition:
    key: str
    display_name: str
    description: str = ""
    required: bool = False
    secret: bool = False
    default: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ChannelConfiguration:
    """Settings handed to a channel adapter at construction."""

    bot_id: str
    channel_type: str
    settings: dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str = "") -> str:
        return self.settings.get(key, default)
