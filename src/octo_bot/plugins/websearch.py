"""Web search through the Brave Search API."""

from __future__ import annotations

from typing import Any

import httpx

from octo_bot.core.types import PluginCapability, SettingType
from octo_bot.log import get_logger
from octo_bot.plugins.base import (
    FunctionTool,
    Plugin,
    PluginMetadata,
    PluginSettingDefinition,
    Tool,
)

logger = get_logger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
MAX_RESULTS = 20


class WebSearchPlugin(Plugin):
    """Per-bot configurable search; each bot supplies its own API key."""

    capabilities = frozenset(
        {PluginCapability.BASE, PluginCapability.CONFIGURABLE, PluginCapability.TESTABLE}
    )

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._http_client = http_client
        self._api_keys: dict[str, str] = {}

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            id="websearch",
            name="Web Search",
            description="Provides web search capabilities",
            settings=(
                PluginSettingDefinition(
                    key="api_key",
                    display_name="API Key",
                    description="The Brave Search API key",
                    type=SettingType.SECRET,
                    required=True,
                ),
            ),
        )

    def configure(self, bot_id: str, settings: dict[str, str]) -> None:
        api_key = settings.get("api_key", "")
        if api_key:
            self._api_keys[bot_id] = api_key
        else:
            self._api_keys.pop(bot_id, None)
        logger.info("websearch_configured", bot_id=bot_id, has_key=bool(api_key))

    def get_functions(self, bot_id: str) -> list[Tool]:
        async def search(query: str, max_results: int = 5) -> str:
            return await self.search(bot_id, query, max_results)

        return [
            FunctionTool(
                "WebSearch_Search",
                "Searches the web for information",
                search,
                properties={
                    "query": {"type": "string", "description": "The search query"},
                    "max_results": {
                        "type": "integer",
                        "description": "Maximum number of results (default: 5)",
                    },
                },
                required=["query"],
            )
        ]

    async def initialize(self) -> None:
        self._get_http_client()

    async def shutdown(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    async def test_connection(self, bot_id: str) -> tuple[bool, str]:
        if bot_id not in self._api_keys:
            return False, "API key is not configured"
        try:
            await self._query(self._api_keys[bot_id], "test", 1)
        except httpx.HTTPError as e:
            return False, f"Connection failed: {e}"
        return True, "Connection successful"

    async def search(self, bot_id: str, query: str, max_results: int = 5) -> str:
        api_key = self._api_keys.get(bot_id)
        if not api_key:
            return "Web search is not configured. Please set the API key."

        count = max(1, min(int(max_results), MAX_RESULTS))
        try:
            results = await self._query(api_key, query, count)
        except httpx.HTTPError as e:
            logger.warning("websearch_failed", bot_id=bot_id, error=str(e))
            return f"Search failed: {e}"

        if not results:
            return "No results found."

        lines: list[str] = []
        for item in results[:count]:
            lines.append(f"**{item.get('title', '')}**")
            lines.append(item.get("description", ""))
            lines.append(f"URL: {item.get('url', '')}")
            lines.append("")
        return "\n".join(lines).strip()

    async def _query(self, api_key: str, query: str, count: int) -> list[dict[str, Any]]:
        response = await self._get_http_client().get(
            BRAVE_SEARCH_URL,
            params={"q": query, "count": count},
            headers={"X-Subscription-Token": api_key, "Accept": "application/json"},
        )
        response.raise_for_status()
        payload = response.json()
        return (payload.get("web") or {}).get("results") or []

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        return self._http_client
