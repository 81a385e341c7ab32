"""Date and time functions."""

from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from octo_bot.plugins.base import FunctionTool, Plugin, PluginMetadata, Tool


def current_datetime_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def current_datetime(timezone_id: str) -> str:
    try:
        tz = ZoneInfo(timezone_id)
    except (ZoneInfoNotFoundError, ValueError):
        return f"Unknown timezone: {timezone_id}"
    return f"{datetime.now(tz).strftime('%Y-%m-%d %H:%M:%S')} ({timezone_id})"


def day_of_week() -> str:
    return datetime.now(timezone.utc).strftime("%A")


def date_difference(start_date: str, end_date: str) -> str:
    try:
        start = date.fromisoformat(start_date)
        end = date.fromisoformat(end_date)
    except ValueError:
        return "Invalid date format. Please use yyyy-MM-dd"
    return f"{abs((end - start).days)} days"


class DateTimePlugin(Plugin):
    def __init__(self) -> None:
        self._tools: list[Tool] = [
            FunctionTool(
                "DateTime_GetCurrentDateTimeUtc",
                "Gets the current date and time in UTC",
                current_datetime_utc,
            ),
            FunctionTool(
                "DateTime_GetCurrentDateTime",
                "Gets the current date and time in a specific timezone",
                current_datetime,
                properties={
                    "timezone_id": {
                        "type": "string",
                        "description": "IANA timezone ID (e.g. 'America/New_York', 'Europe/London')",
                    }
                },
                required=["timezone_id"],
            ),
            FunctionTool(
                "DateTime_GetDayOfWeek",
                "Gets the current day of the week (UTC)",
                day_of_week,
            ),
            FunctionTool(
                "DateTime_CalculateDateDifference",
                "Calculates the number of days between two dates",
                date_difference,
                properties={
                    "start_date": {"type": "string", "description": "Start date in format yyyy-MM-dd"},
                    "end_date": {"type": "string", "description": "End date in format yyyy-MM-dd"},
                },
                required=["start_date", "end_date"],
            ),
        ]

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            id="datetime",
            name="Date & Time",
            description="Provides date and time related functions",
        )

    def get_functions(self, bot_id: str) -> list[Tool]:
        return list(self._tools)
