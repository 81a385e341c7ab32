"""Exception hierarchy shared by the runtime, storage and channel layers."""

from __future__ import annotations


class OctoBotError(Exception):
    """Base exception for all octo-bot errors."""


class NotFoundError(OctoBotError):
    """A bot instance, conversation or scheduled job does not exist."""


# ── Configuration ────────────────────────────────────────────────────

class ConfigurationError(OctoBotError):
    """Base for configuration problems detected at construction time."""


class ConfigurationInvalidError(ConfigurationError):
    """Configuration exists but cannot be used (e.g. no default model)."""


class ConfigurationMissingError(ConfigurationError):
    """Required stored settings are absent (e.g. no channel settings)."""


# ── Runtime ──────────────────────────────────────────────────────────

class NotInitializedError(OctoBotError):
    """An agent was used before its initialization completed."""


class UnknownChannelTypeError(OctoBotError):
    """No channel factory is registered for the requested channel type."""


class UnknownPluginError(OctoBotError):
    """No plugin is registered under the requested id."""


class UpstreamFailureError(OctoBotError):
    """A model provider or channel SDK call failed."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class CronInvalidError(OctoBotError):
    """A cron expression could not be parsed."""


class TurnCancelledError(OctoBotError):
    """The caller's cancel signal fired while a turn was in flight."""
