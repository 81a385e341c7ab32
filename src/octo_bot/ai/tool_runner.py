"""Shared pieces of the function-calling loop: cancellation checks and tool execution."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar

from octo_bot.errors import TurnCancelledError
from octo_bot.log import get_logger
from octo_bot.plugins.base import Tool

logger = get_logger(__name__)

MAX_TOOL_ROUNDS = 10
TOOL_LIMIT_MESSAGE = "[Tool execution limit reached]"

T = TypeVar("T")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


def raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TurnCancelledError("Turn cancelled by caller")


async def await_or_cancel(awaitable: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await `awaitable`, abandoning it as soon as `cancel_event` is set.

    The abandoned call is cancelled and awaited before TurnCancelledError is
    raised, so nothing of it keeps running once this returns.
    """
    if cancel_event is None:
        return await awaitable
    work = asyncio.ensure_future(awaitable)
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        losers = [f for f in (work, cancelled) if not f.done()]
        for f in losers:
            f.cancel()
        if losers:
            await asyncio.gather(*losers, return_exceptions=True)
    if work.done() and not work.cancelled():
        return work.result()
    raise TurnCancelledError("Turn cancelled by caller")


def parse_arguments(raw: str | None) -> dict[str, Any]:
    """Decode a JSON arguments string; malformed input yields no arguments."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("tool_arguments_invalid", raw=raw[:200])
        return {}
    return value if isinstance(value, dict) else {}


async def execute_tool_calls(
    tools: dict[str, Tool],
    calls: list[ToolCall],
    cancel_event: asyncio.Event | None = None,
) -> list[tuple[str, str]]:
    """Execute tool calls concurrently. Returns (call_id, result_text) in call order.

    Tool failures are reported back to the model as text rather than raised.
    """
    raise_if_cancelled(cancel_event)

    async def _execute_one(call: ToolCall) -> tuple[str, str]:
        tool = tools.get(call.name)
        if tool is None:
            return call.id, f"Error: unknown tool '{call.name}'"
        try:
            logger.info("tool_execute", tool=call.name)
            result = await tool.execute(**call.arguments)
            return call.id, result
        except TypeError as e:
            return call.id, f"Error: invalid arguments for {call.name}: {e}"
        except Exception as e:
            logger.error("tool_execution_error", tool=call.name, error=str(e))
            return call.id, f"Error executing {call.name}: {e}"

    return list(await asyncio.gather(*(_execute_one(c) for c in calls)))
