"""Tool and plugin interfaces for model function calling."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from octo_bot.core.types import PluginCapability, SettingType


class Tool(ABC):
    """Base class for all model-callable functions."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique function name sent to the model provider."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description for the model."""
        ...

    @property
    @abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema dict describing accepted parameters."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> str:
        """Run the function and return a text result for the model."""
        ...

    def to_anthropic_dict(self) -> dict[str, Any]:
        """Serialize to the Anthropic API tool definition format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    def to_openai_dict(self) -> dict[str, Any]:
        """Serialize to the OpenAI chat-completions tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


Handler = Callable[..., Union[Awaitable[Any], Any]]


class FunctionTool(Tool):
    """A tool backed by a plain (sync or async) callable."""

    def __init__(
        self,
        name: str,
        description: str,
        handler: Handler,
        properties: Optional[dict[str, Any]] = None,
        required: Optional[list[str]] = None,
    ):
        self._name = name
        self._description = description
        self._handler = handler
        self._schema: dict[str, Any] = {
            "type": "object",
            "properties": properties or {},
            "required": required or [],
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._schema

    async def execute(self, **kwargs: Any) -> str:
        result = self._handler(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return str(result)


@dataclass(frozen=True)
class PluginSettingDefinition:
    key: str
    display_name: str
    description: str
    type: SettingType = SettingType.STRING
    required: bool = False
    default: Optional[str] = None


@dataclass(frozen=True)
class PluginMetadata:
    id: str
    name: str
    description: str
    version: str = "1.0.0"
    author: Optional[str] = None
    settings: tuple[PluginSettingDefinition, ...] = ()


class Plugin(ABC):
    """A named bundle of tools.

    Optional behaviour is declared through ``capabilities`` and checked with
    ``supports()``: CONFIGURABLE plugins accept per-bot settings through
    ``configure()``, TESTABLE plugins can verify their upstream connection.
    """

    capabilities: frozenset[PluginCapability] = frozenset({PluginCapability.BASE})

    @property
    @abstractmethod
    def metadata(self) -> PluginMetadata:
        ...

    @abstractmethod
    def get_functions(self, bot_id: str) -> list[Tool]:
        """Tools exposed to the given bot."""
        ...

    def supports(self, capability: PluginCapability) -> bool:
        return capability in self.capabilities

    def configure(self, bot_id: str, settings: dict[str, str]) -> None:
        raise NotImplementedError(f"Plugin '{self.metadata.id}' is not configurable")

    async def test_connection(self, bot_id: str) -> tuple[bool, str]:
        raise NotImplementedError(f"Plugin '{self.metadata.id}' is not testable")

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass
