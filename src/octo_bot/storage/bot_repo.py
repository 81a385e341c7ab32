"""Configuration store: bot instances with their model, plugin and channel configs."""

from __future__ import annotations

import json
from typing import Optional

from octo_bot.log import get_logger
from octo_bot.storage.database import Database
from octo_bot.storage.models import (
    BotInstance,
    ChannelConfig,
    ModelConfiguration,
    PluginConfig,
)

logger = get_logger(__name__)


class BotRepository:
    """Reads bot instances for the runtime and upserts them from configuration."""

    def __init__(self, db: Database):
        self._db = db

    async def get_bot_instance_with_configs(self, bot_id: str) -> Optional[BotInstance]:
        """Load a bot instance with its default model, plugin and channel configs."""
        cursor = await self._db.conn.execute(
            "SELECT * FROM bot_instances WHERE id = ?", (bot_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        default_model = None
        if row["default_model_id"]:
            default_model = await self.get_model_config(row["default_model_id"])

        cursor = await self._db.conn.execute(
            "SELECT * FROM plugin_configs WHERE bot_id = ? ORDER BY plugin_id", (bot_id,)
        )
        plugins = [
            PluginConfig(
                plugin_id=p["plugin_id"],
                enabled=bool(p["is_enabled"]),
                settings=json.loads(p["settings_json"] or "{}"),
            )
            for p in await cursor.fetchall()
        ]

        cursor = await self._db.conn.execute(
            "SELECT * FROM channel_configs WHERE bot_id = ? ORDER BY channel_type", (bot_id,)
        )
        channels = [self._row_to_channel(c) for c in await cursor.fetchall()]

        return BotInstance(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            system_prompt=row["system_prompt"],
            enabled=bool(row["is_active"]),
            default_model=default_model,
            plugin_configs=plugins,
            channel_configs=channels,
        )

    async def get_model_config(self, model_config_id: str) -> Optional[ModelConfiguration]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM model_configs WHERE id = ?", (model_config_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ModelConfiguration(
            id=row["id"],
            name=row["name"],
            provider=row["provider"],
            model_id=row["model_id"],
            api_key=row["api_key"],
            endpoint=row["endpoint"],
            temperature=row["temperature"],
            max_tokens=row["max_tokens"],
        )

    async def get_channel_config(self, bot_id: str, channel_type: str) -> Optional[ChannelConfig]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM channel_configs WHERE bot_id = ? AND channel_type = ?",
            (bot_id, channel_type),
        )
        row = await cursor.fetchone()
        return self._row_to_channel(row) if row else None

    async def upsert_model_config(self, config: ModelConfiguration) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO model_configs
                   (id, name, provider, model_id, api_key, endpoint, temperature, max_tokens)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     name = excluded.name,
                     provider = excluded.provider,
                     model_id = excluded.model_id,
                     api_key = excluded.api_key,
                     endpoint = excluded.endpoint,
                     temperature = excluded.temperature,
                     max_tokens = excluded.max_tokens,
                     updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')""",
                (
                    config.id,
                    config.name,
                    config.provider,
                    config.model_id,
                    config.api_key,
                    config.endpoint,
                    config.temperature,
                    config.max_tokens,
                ),
            )

    async def upsert_bot_instance(self, bot: BotInstance) -> None:
        """Create or replace a bot together with its plugin and channel configs."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO bot_instances
                   (id, name, description, system_prompt, default_model_id, is_active)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     name = excluded.name,
                     description = excluded.description,
                     system_prompt = excluded.system_prompt,
                     default_model_id = excluded.default_model_id,
                     is_active = excluded.is_active,
                     updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')""",
                (
                    bot.id,
                    bot.name,
                    bot.description,
                    bot.system_prompt,
                    bot.default_model.id if bot.default_model else None,
                    int(bot.enabled),
                ),
            )
            await conn.execute("DELETE FROM plugin_configs WHERE bot_id = ?", (bot.id,))
            await conn.executemany(
                """INSERT INTO plugin_configs (bot_id, plugin_id, is_enabled, settings_json)
                   VALUES (?, ?, ?, ?)""",
                [
                    (bot.id, p.plugin_id, int(p.enabled), json.dumps(p.settings))
                    for p in bot.plugin_configs
                ],
            )
            await conn.execute("DELETE FROM channel_configs WHERE bot_id = ?", (bot.id,))
            await conn.executemany(
                """INSERT INTO channel_configs (bot_id, channel_type, is_enabled, settings_json)
                   VALUES (?, ?, ?, ?)""",
                [
                    (bot.id, c.channel_type, int(c.enabled), json.dumps(c.settings))
                    for c in bot.channel_configs
                ],
            )
        logger.info("bot_instance_saved", bot_id=bot.id)

    @staticmethod
    def _row_to_channel(row) -> ChannelConfig:
        return ChannelConfig(
            bot_id=row["bot_id"],
            channel_type=row["channel_type"],
            enabled=bool(row["is_enabled"]),
            settings=json.loads(row["settings_json"] or "{}"),
        )
