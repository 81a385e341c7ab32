from __future__ import annotations

import pytest
import pytest_asyncio
from pydantic import ValidationError

from octo_bot.app import OctoBotApp, api_message
from octo_bot.config import AppConfig, load_config
from octo_bot.core.types import ChannelStatus, JobStatus, MessageRole
from octo_bot.errors import NotFoundError

CONFIG_YAML = """
data_dir: {data_dir}
storage:
  db_path: ${{data_dir}}/octo.db
models:
  - id: fake-model
    provider: fake
    api_key: ${{OCTO_TEST_KEY}}
bots:
  - id: helper
    system_prompt: You help.
    model: fake-model
    plugins:
      - id: math
    channels:
      - type: Telegram
        settings:
          token: abc
jobs:
  - id: digest
    bot: helper
    instructions: Write the digest
    cron: "0 8 * * *"
    target_channel: telegram
    target_chat_id: "100"
"""


def _write_config(tmp_path) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML.format(data_dir=tmp_path), encoding="utf-8")
    return str(path)


@pytest_asyncio.fixture
async def app(tmp_path, monkeypatch, client_factory, channel_registry):
    monkeypatch.setenv("OCTO_TEST_KEY", "sk-from-env")
    config = load_config(_write_config(tmp_path), env_path=tmp_path / "missing.env")
    application = OctoBotApp(
        config, client_factory=client_factory, channel_registry=channel_registry
    )
    await application.initialize()
    yield application
    await application.stop()


class TestLoadConfig:
    def test_interpolates_environment_and_data_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OCTO_TEST_KEY", "sk-from-env")
        config = load_config(_write_config(tmp_path), env_path=tmp_path / "missing.env")

        assert config.models[0].api_key == "sk-from-env"
        assert config.storage.db_path == f"{tmp_path}/octo.db"
        assert config.jobs[0].cron == "0 8 * * *"

    def test_reads_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OCTO_TEST_KEY", "unset")
        monkeypatch.delenv("OCTO_TEST_KEY")
        env = tmp_path / ".env"
        env.write_text("OCTO_TEST_KEY=sk-dotenv\n", encoding="utf-8")

        config = load_config(_write_config(tmp_path), env_path=env)

        assert config.models[0].api_key == "sk-dotenv"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_unknown_model_reference(self):
        with pytest.raises(ValidationError, match="unknown model"):
            AppConfig(bots=[{"id": "b", "model": "ghost"}])

    def test_unknown_bot_reference(self):
        with pytest.raises(ValidationError, match="unknown bot"):
            AppConfig(jobs=[{"id": "j", "bot": "ghost", "instructions": "x", "cron": "* * * * *"}])

    def test_defaults(self):
        config = AppConfig()
        assert config.agent.history_limit == 50
        assert config.scheduler.max_concurrent_jobs == 5


class TestOctoBotApp:
    async def test_initialize_syncs_configuration(self, app):
        bot = await app.bot_repo.get_bot_instance_with_configs("helper")
        assert bot.default_model.api_key == "sk-from-env"
        assert [p.plugin_id for p in bot.plugin_configs] == ["math"]
        assert [c.channel_type for c in bot.channel_configs] == ["telegram"]

        job = await app.job_repo.get("digest")
        assert job.next_run_at is not None
        assert job.next_run_at.minute == 0

    async def test_cron_change_reschedules_on_resync(self, app):
        before = (await app.job_repo.get("digest")).next_run_at
        await app.sync_config()
        assert (await app.job_repo.get("digest")).next_run_at == before

        app.config.jobs[0].cron = "30 9 * * *"
        await app.sync_config()

        job = await app.job_repo.get("digest")
        assert job.cron_expression == "30 9 * * *"
        assert (job.next_run_at.hour, job.next_run_at.minute) == (9, 30)

    async def test_resync_with_invalid_cron_pauses_job(self, app):
        app.config.jobs[0].cron = "not a cron"
        await app.sync_config()

        assert (await app.job_repo.get("digest")).next_run_at is None

    async def test_process_and_history(self, app, fake_provider):
        fake_provider.replies = ["4"]
        reply = await app.process("helper", api_message("2+2?", user_id="u1"))

        assert reply == "4"
        history = await app.history("helper", "api", "u1")
        assert [(m.role, m.content) for m in history] == [
            (MessageRole.USER, "2+2?"),
            (MessageRole.ASSISTANT, "4"),
        ]
        [conversation] = await app.list_conversations("helper")
        assert conversation.user_id == "u1"
        assert await app.history("helper", "api", "nobody") == []

    async def test_process_stream(self, app, fake_provider):
        fake_provider.chunks = ["a", "b"]
        chunks = [c async for c in app.process_stream("helper", api_message("go"))]
        assert chunks == ["a", "b"]
        assert [m.content for m in await app.history("helper", "api", "api")] == ["go", "ab"]

    async def test_unknown_bot(self, app):
        with pytest.raises(NotFoundError):
            await app.process("ghost", api_message("hi"))

    async def test_reload_bot_rebuilds_agent(self, app, fake_provider):
        await app.process("helper", api_message("hi"))
        assert await app.reload_bot("helper") is True
        await app.process("helper", api_message("hi again"))
        assert len(fake_provider.clients) == 2
        assert fake_provider.clients[0].closed

    async def test_start_brings_up_configured_channels(self, app, channel_factory):
        await app.start()

        assert app.channel_status("helper", "telegram") == ChannelStatus.CONNECTED
        assert len(channel_factory.adapters) == 1
        assert await app.health_check() == {"scheduler": True, "channels": True}

        assert await app.stop_channel("helper", "telegram") is True
        assert app.channel_status("helper", "telegram") == ChannelStatus.STOPPED

    async def test_run_job_now_delivers(self, app, channel_factory):
        await app.start_channel("helper", "telegram")

        execution = await app.run_job_now("digest")

        assert execution.status == JobStatus.SUCCESS
        assert [m.channel_id for m in channel_factory.adapters[0].sent] == ["100"]
        [recorded] = await app.list_executions("digest")
        assert recorded.id == execution.id
