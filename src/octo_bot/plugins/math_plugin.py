"""Arithmetic functions."""

from __future__ import annotations

import math
from typing import Any

from octo_bot.plugins.base import FunctionTool, Plugin, PluginMetadata, Tool


def _number(description: str) -> dict[str, Any]:
    return {"type": "number", "description": description}


def _format(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(value)


def divide(a: float, b: float) -> str:
    if b == 0:
        return "Cannot divide by zero"
    return _format(a / b)


def square_root(n: float) -> str:
    if n < 0:
        return "Cannot calculate square root of negative number"
    return _format(math.sqrt(n))


class MathPlugin(Plugin):
    def __init__(self) -> None:
        pair = {"a": _number("The first number"), "b": _number("The second number")}
        self._tools: list[Tool] = [
            FunctionTool("Math_Add", "Adds two numbers together",
                         lambda a, b: _format(a + b), pair, ["a", "b"]),
            FunctionTool("Math_Subtract", "Subtracts the second number from the first",
                         lambda a, b: _format(a - b), pair, ["a", "b"]),
            FunctionTool("Math_Multiply", "Multiplies two numbers",
                         lambda a, b: _format(a * b), pair, ["a", "b"]),
            FunctionTool(
                "Math_Divide",
                "Divides the first number by the second",
                divide,
                {"a": _number("The dividend"), "b": _number("The divisor")},
                ["a", "b"],
            ),
            FunctionTool(
                "Math_SquareRoot",
                "Calculates the square root of a number",
                square_root,
                {"n": _number("The number")},
                ["n"],
            ),
            FunctionTool(
                "Math_Power",
                "Raises a number to a power",
                lambda base, exponent: _format(math.pow(base, exponent)),
                {"base": _number("The base number"), "exponent": _number("The exponent")},
                ["base", "exponent"],
            ),
            FunctionTool(
                "Math_Percentage",
                "Calculates the percentage of a number",
                lambda value, percent: _format(value * percent / 100),
                {"value": _number("The value"), "percent": _number("The percentage")},
                ["value", "percent"],
            ),
        ]

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            id="math",
            name="Math",
            description="Provides mathematical calculation functions",
        )

    def get_functions(self, bot_id: str) -> list[Tool]:
        return list(self._tools)
