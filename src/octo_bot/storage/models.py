"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from octo_bot.core.types import JobStatus, MessageRole


@dataclass(frozen=True)
class ModelConfiguration:
    """Immutable snapshot of a model provider configuration."""

    id: str
    provider: str
    name: str = ""
    model_id: Optional[str] = None
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096


@dataclass(frozen=True)
class PluginConfig:
    plugin_id: str
    enabled: bool = True
    settings: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChannelConfig:
    bot_id: str
    channel_type: str
    enabled: bool = True
    settings: dict[str, str] = field(default_factory=dict)


@dataclass
class BotInstance:
    id: str
    name: str
    system_prompt: str = ""
    description: str = ""
    enabled: bool = True
    default_model: Optional[ModelConfiguration] = None
    plugin_configs: list[PluginConfig] = field(default_factory=list)
    channel_configs: list[ChannelConfig] = field(default_factory=list)

    @property
    def enabled_plugins(self) -> list[PluginConfig]:
        return [p for p in self.plugin_configs if p.enabled]


@dataclass
class Conversation:
    id: str
    bot_id: str
    channel_id: str
    user_id: str
    created_at: datetime
    last_message_at: datetime
    title: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
    """One stored turn as seen by the conversation memory."""

    role: MessageRole
    content: str
    timestamp: datetime
    metadata: Optional[dict[str, Any]] = None


@dataclass
class ScheduledJob:
    id: str
    bot_id: str
    instructions: str
    cron_expression: str
    name: str = ""
    description: str = ""
    enabled: bool = True
    target_channel: Optional[str] = None
    target_chat_id: Optional[str] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_run_status: Optional[JobStatus] = None


@dataclass
class JobExecution:
    id: str
    job_id: str
    started_at: datetime
    status: JobStatus
    completed_at: Optional[datetime] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
