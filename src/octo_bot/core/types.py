"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ChannelStatus(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class MessageFormat(StrEnum):
    PLAIN = "plain"
    MARKDOWN = "markdown"
    HTML = "html"


class JobStatus(StrEnum):
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"


class PluginCapability(StrEnum):
    BASE = "base"
    CONFIGURABLE = "configurable"
    TESTABLE = "testable"


class SettingType(StrEnum):
    STRING = "string"
    SECRET = "secret"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"


# Channel types that never have a running adapter
API_CHANNEL = "api"
SCHEDULED_JOB_CHANNEL = "scheduled-job"
