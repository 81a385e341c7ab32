"""Chat client abstraction with Anthropic and OpenAI-compatible backends."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncGenerator

import anthropic
import openai

from octo_bot.ai.tool_runner import (
    MAX_TOOL_ROUNDS,
    TOOL_LIMIT_MESSAGE,
    ToolCall,
    execute_tool_calls,
    parse_arguments,
    raise_if_cancelled,
)
from octo_bot.errors import UpstreamFailureError
from octo_bot.log import get_logger
from octo_bot.plugins.base import Tool

logger = get_logger(__name__)


@dataclass
class ChatResponse:
    """Unified final response from any backend."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class ChatClient(ABC):
    """A chat-capable model bound to one model configuration.

    ``messages`` are provider-neutral dicts with ``role`` in
    {"user", "assistant", "system"} and string ``content``. Tool calls requested
    by the model are executed against ``tools`` and fed back until the model
    produces a final text answer.
    """

    def __init__(
        self,
        model: str,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
    ):
        self.model_name = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._max_tool_rounds = max_tool_rounds

    @abstractmethod
    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[Tool],
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        ...

    @abstractmethod
    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[Tool],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[str, None]:
        """Yield text fragments as they arrive; runs tool rounds in between."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class AnthropicChatClient(ChatClient):
    """Anthropic Messages API backend using the official SDK."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        max_retries: int = 3,
        timeout: float = 120,
    ):
        super().__init__(model, max_tokens, temperature, max_tool_rounds)
        self._client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    def _request_kwargs(
        self, system: str, messages: list[dict[str, Any]], tool_defs: list[dict[str, Any]]
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model_name,
            "max_tokens": self._max_tokens,
            "messages": messages,
            "temperature": self._temperature,
        }
        if system:
            kwargs["system"] = system
        if tool_defs:
            kwargs["tools"] = tool_defs
        return kwargs

    @staticmethod
    def _to_api_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """The Messages API has no system role inside the conversation."""
        api_messages = []
        for msg in messages:
            if msg["role"] == "system":
                api_messages.append({"role": "user", "content": f"[System]\n{msg['content']}"})
            else:
                api_messages.append({"role": msg["role"], "content": msg["content"]})
        return api_messages

    @staticmethod
    def _assistant_content(content_blocks: list[Any]) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = []
        for block in content_blocks:
            if block.type == "text":
                content.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                content.append(
                    {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
                )
        return content

    async def _run_tools(
        self,
        api_messages: list[dict[str, Any]],
        content_blocks: list[Any],
        tools: list[Tool],
        cancel_event: asyncio.Event | None,
    ) -> None:
        tool_use_blocks = [b for b in content_blocks if b.type == "tool_use"]
        api_messages.append({"role": "assistant", "content": self._assistant_content(content_blocks)})
        results = await execute_tool_calls(
            {t.name: t for t in tools},
            [ToolCall(b.id, b.name, dict(b.input or {})) for b in tool_use_blocks],
            cancel_event,
        )
        api_messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": call_id, "content": result}
                    for call_id, result in results
                ],
            }
        )

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[Tool],
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        api_messages = self._to_api_messages(messages)
        tool_defs = [t.to_anthropic_dict() for t in tools]
        input_tokens = output_tokens = 0

        for round_no in range(self._max_tool_rounds):
            raise_if_cancelled(cancel_event)
            logger.debug("api_request", model=self.model_name, round=round_no)
            try:
                response = await self._client.messages.create(
                    **self._request_kwargs(system, api_messages, tool_defs)
                )
            except anthropic.APIError as e:
                raise UpstreamFailureError("anthropic", str(e)) from e

            input_tokens += response.usage.input_tokens
            output_tokens += response.usage.output_tokens
            logger.debug(
                "api_response",
                model=self.model_name,
                stop_reason=response.stop_reason,
                output_tokens=response.usage.output_tokens,
            )

            if not any(b.type == "tool_use" for b in response.content):
                text = "".join(b.text for b in response.content if b.type == "text")
                return ChatResponse(text=text, input_tokens=input_tokens, output_tokens=output_tokens)

            await self._run_tools(api_messages, response.content, tools, cancel_event)

        return ChatResponse(text=TOOL_LIMIT_MESSAGE, input_tokens=input_tokens, output_tokens=output_tokens)

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[Tool],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[str, None]:
        api_messages = self._to_api_messages(messages)
        tool_defs = [t.to_anthropic_dict() for t in tools]

        for _ in range(self._max_tool_rounds):
            raise_if_cancelled(cancel_event)
            try:
                async with self._client.messages.stream(
                    **self._request_kwargs(system, api_messages, tool_defs)
                ) as stream:
                    async for text in stream.text_stream:
                        raise_if_cancelled(cancel_event)
                        yield text
                    final = await stream.get_final_message()
            except anthropic.APIError as e:
                raise UpstreamFailureError("anthropic", str(e)) from e

            if not any(b.type == "tool_use" for b in final.content):
                return

            await self._run_tools(api_messages, final.content, tools, cancel_event)

        yield TOOL_LIMIT_MESSAGE

    async def close(self) -> None:
        await self._client.close()


class OpenAIChatClient(ChatClient):
    """OpenAI chat-completions backend; also serves OpenAI-compatible servers (Ollama)."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        max_retries: int = 3,
        timeout: float = 120,
        provider_name: str = "openai",
    ):
        super().__init__(model, max_tokens, temperature, max_tool_rounds)
        self._provider_name = provider_name
        self._client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    def _request_kwargs(
        self, messages: list[dict[str, Any]], tool_defs: list[dict[str, Any]]
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model_name,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        if tool_defs:
            kwargs["tools"] = tool_defs
        return kwargs

    @staticmethod
    def _to_api_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        api_messages: list[dict[str, Any]] = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend({"role": m["role"], "content": m["content"]} for m in messages)
        return api_messages

    async def _run_tools(
        self,
        api_messages: list[dict[str, Any]],
        content: str | None,
        calls: list[ToolCall],
        raw_arguments: dict[str, str],
        tools: list[Tool],
        cancel_event: asyncio.Event | None,
    ) -> None:
        api_messages.append(
            {
                "role": "assistant",
                "content": content,
                "tool_calls": [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": raw_arguments.get(c.id, "{}")},
                    }
                    for c in calls
                ],
            }
        )
        results = await execute_tool_calls({t.name: t for t in tools}, calls, cancel_event)
        for call_id, result in results:
            api_messages.append({"role": "tool", "tool_call_id": call_id, "content": result})

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[Tool],
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        api_messages = self._to_api_messages(system, messages)
        tool_defs = [t.to_openai_dict() for t in tools]
        input_tokens = output_tokens = 0

        for _ in range(self._max_tool_rounds):
            raise_if_cancelled(cancel_event)
            try:
                response = await self._client.chat.completions.create(
                    **self._request_kwargs(api_messages, tool_defs)
                )
            except openai.APIError as e:
                raise UpstreamFailureError(self._provider_name, str(e)) from e

            if response.usage:
                input_tokens += response.usage.prompt_tokens or 0
                output_tokens += response.usage.completion_tokens or 0

            message = response.choices[0].message
            if not message.tool_calls:
                return ChatResponse(
                    text=message.content or "",
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )

            raw = {tc.id: tc.function.arguments for tc in message.tool_calls}
            calls = [
                ToolCall(tc.id, tc.function.name, parse_arguments(tc.function.arguments))
                for tc in message.tool_calls
            ]
            await self._run_tools(api_messages, message.content, calls, raw, tools, cancel_event)

        return ChatResponse(text=TOOL_LIMIT_MESSAGE, input_tokens=input_tokens, output_tokens=output_tokens)

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[Tool],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[str, None]:
        api_messages = self._to_api_messages(system, messages)
        tool_defs = [t.to_openai_dict() for t in tools]

        for _ in range(self._max_tool_rounds):
            raise_if_cancelled(cancel_event)
            text_parts: list[str] = []
            # Tool call fragments arrive split across chunks, keyed by index
            pending: dict[int, dict[str, str]] = {}
            try:
                stream = await self._client.chat.completions.create(
                    **self._request_kwargs(api_messages, tool_defs), stream=True
                )
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    if delta.content:
                        raise_if_cancelled(cancel_event)
                        text_parts.append(delta.content)
                        yield delta.content
                    for tc in delta.tool_calls or []:
                        slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                        if tc.id:
                            slot["id"] = tc.id
                        if tc.function and tc.function.name:
                            slot["name"] += tc.function.name
                        if tc.function and tc.function.arguments:
                            slot["arguments"] += tc.function.arguments
            except openai.APIError as e:
                raise UpstreamFailureError(self._provider_name, str(e)) from e

            if not pending:
                return

            slots = [pending[i] for i in sorted(pending)]
            calls = [ToolCall(s["id"], s["name"], parse_arguments(s["arguments"])) for s in slots]
            raw = {s["id"]: s["arguments"] or "{}" for s in slots}
            await self._run_tools(
                api_messages, "".join(text_parts) or None, calls, raw, tools, cancel_event
            )

        yield TOOL_LIMIT_MESSAGE

    async def close(self) -> None:
        await self._client.close()
