"""Model client factory: maps a provider name to a chat client constructor."""

from __future__ import annotations

from typing import Callable

from octo_bot.ai.client import AnthropicChatClient, ChatClient, OpenAIChatClient
from octo_bot.ai.tool_runner import MAX_TOOL_ROUNDS
from octo_bot.errors import ConfigurationInvalidError
from octo_bot.log import get_logger
from octo_bot.storage.models import ModelConfiguration

logger = get_logger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "ollama": "llama3.2",
}
OLLAMA_DEFAULT_ENDPOINT = "http://localhost:11434/v1"

ClientBuilder = Callable[[ModelConfiguration, int], ChatClient]


def _model_id(config: ModelConfiguration) -> str:
    return config.model_id or DEFAULT_MODELS.get(config.provider.lower(), "")


def build_anthropic(config: ModelConfiguration, max_tool_rounds: int) -> ChatClient:
    if not config.api_key:
        raise ConfigurationInvalidError(f"Model config '{config.id}': Anthropic requires an API key")
    return AnthropicChatClient(
        api_key=config.api_key,
        model=_model_id(config),
        base_url=config.endpoint or None,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        max_tool_rounds=max_tool_rounds,
    )


def build_openai(config: ModelConfiguration, max_tool_rounds: int) -> ChatClient:
    if not config.api_key and not config.endpoint:
        raise ConfigurationInvalidError(f"Model config '{config.id}': OpenAI requires an API key")
    return OpenAIChatClient(
        api_key=config.api_key or "not-needed",
        model=_model_id(config),
        base_url=config.endpoint or None,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        max_tool_rounds=max_tool_rounds,
    )


def build_ollama(config: ModelConfiguration, max_tool_rounds: int) -> ChatClient:
    # Ollama ignores the key but the SDK insists on one
    return OpenAIChatClient(
        api_key=config.api_key or "ollama",
        model=_model_id(config),
        base_url=config.endpoint or OLLAMA_DEFAULT_ENDPOINT,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        max_tool_rounds=max_tool_rounds,
        provider_name="ollama",
    )


class ModelClientFactory:
    """Registry of provider builders, keyed case-insensitively."""

    def __init__(self, max_tool_rounds: int = MAX_TOOL_ROUNDS):
        self._max_tool_rounds = max_tool_rounds
        self._builders: dict[str, ClientBuilder] = {}

    @classmethod
    def with_builtin_providers(cls, max_tool_rounds: int = MAX_TOOL_ROUNDS) -> ModelClientFactory:
        factory = cls(max_tool_rounds)
        factory.register("anthropic", build_anthropic)
        factory.register("openai", build_openai)
        factory.register("ollama", build_ollama)
        return factory

    def register(self, provider: str, builder: ClientBuilder) -> None:
        self._builders[provider.lower()] = builder

    def providers(self) -> list[str]:
        return sorted(self._builders)

    def create_client(self, config: ModelConfiguration) -> ChatClient:
        builder = self._builders.get(config.provider.lower())
        if builder is None:
            raise ConfigurationInvalidError(
                f"Model provider '{config.provider}' is not registered "
                f"(known: {', '.join(self.providers())})"
            )
        client = builder(config, self._max_tool_rounds)
        logger.info(
            "model_client_created",
            model_config_id=config.id,
            provider=config.provider,
            model=client.model_name,
        )
        return client
