"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator


class ModelConfigEntry(BaseModel):
    id: str
    name: str = ""
    provider: str = "anthropic"  # "anthropic" | "openai" | "ollama"
    model: Optional[str] = None
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096


class PluginEntry(BaseModel):
    id: str
    enabled: bool = True
    settings: dict[str, str] = Field(default_factory=dict)


class ChannelEntry(BaseModel):
    type: str
    enabled: bool = True
    settings: dict[str, str] = Field(default_factory=dict)


class BotConfig(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    system_prompt: str = ""
    model: Optional[str] = None  # id of a ModelConfigEntry
    enabled: bool = True
    plugins: list[PluginEntry] = Field(default_factory=list)
    channels: list[ChannelEntry] = Field(default_factory=list)


class JobConfig(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    bot: str
    instructions: str
    cron: str
    enabled: bool = True
    target_channel: Optional[str] = None
    target_chat_id: Optional[str] = None


class SchedulerConfig(BaseModel):
    poll_interval_seconds: float = 30.0
    max_concurrent_jobs: int = 5
    timezone: str = "UTC"
    shutdown_grace_seconds: float = 30.0


class AgentConfig(BaseModel):
    history_limit: int = 50
    max_tool_rounds: int = 10


class ChannelsConfig(BaseModel):
    apology_message: str = (
        "Sorry, I encountered an error processing your message. Please try again."
    )


class StorageConfig(BaseModel):
    db_path: str = "./data/octo_bot.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    models: list[ModelConfigEntry] = Field(default_factory=list)
    bots: list[BotConfig] = Field(default_factory=list)
    jobs: list[JobConfig] = Field(default_factory=list)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @model_validator(mode="after")
    def _check_references(self) -> AppConfig:
        model_ids = {m.id for m in self.models}
        bot_ids = {b.id for b in self.bots}
        for bot in self.bots:
            if bot.model and bot.model not in model_ids:
                raise ValueError(f"Bot '{bot.id}' references unknown model '{bot.model}'")
        for job in self.jobs:
            if job.bot not in bot_ids:
                raise ValueError(f"Job '{job.id}' references unknown bot '{job.bot}'")
        return self


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # First pass: extract data_dir for self-referencing
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    # Second pass: interpolate all env vars
    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
