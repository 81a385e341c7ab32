"""CLI entry point for octo-bot."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Awaitable, Callable, TypeVar

from octo_bot.app import OctoBotApp, api_message
from octo_bot.config import AppConfig, load_config
from octo_bot.errors import CronInvalidError, OctoBotError
from octo_bot.log import setup_logging
from octo_bot.services.scheduler import next_fire_time

T = TypeVar("T")


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="octo-bot",
        description="Multi-bot chat runtime with pluggable models, tools and channels",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_config_args(subparsers.add_parser("start", help="Start bots, channels and the job scheduler"))
    _add_config_args(subparsers.add_parser("config-check", help="Validate configuration"))
    _add_config_args(subparsers.add_parser("model-info", help="Show model configuration per bot"))

    chat_parser = subparsers.add_parser("chat", help="Send one message to a bot directly")
    _add_config_args(chat_parser)
    chat_parser.add_argument("bot", help="Bot id")
    chat_parser.add_argument("message", help="Message text")
    chat_parser.add_argument("--user", default="cli", help="User id for the conversation")
    chat_parser.add_argument("--stream", action="store_true", help="Print the reply as it streams")

    job_parser = subparsers.add_parser("run-job", help="Run a scheduled job immediately")
    _add_config_args(job_parser)
    job_parser.add_argument("job", help="Job id")

    history_parser = subparsers.add_parser("history", help="Show a conversation's recent messages")
    _add_config_args(history_parser)
    history_parser.add_argument("bot", help="Bot id")
    history_parser.add_argument("--channel", default="cli", help="Channel id")
    history_parser.add_argument("--user", default="cli", help="User id")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of messages")

    args = parser.parse_args()

    if args.command is None:
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    config = _load(args.config, args.env)

    match args.command:
        case "config-check":
            _check_config(config, args.config)
        case "model-info":
            _model_info(config)
        case "start":
            setup_logging(config.log_level, config.log_json)
            asyncio.run(_serve(config))
        case "chat":
            setup_logging("WARNING")
            _run_once(config, lambda app: _chat(app, args.bot, args.message, args.user, args.stream))
        case "run-job":
            setup_logging("WARNING")
            _run_once(config, lambda app: _run_job(app, args.job))
        case "history":
            setup_logging("WARNING")
            _run_once(
                config,
                lambda app: _history(app, args.bot, args.channel, args.user, args.limit),
            )


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and edit it", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config: AppConfig, config_path: str) -> None:
    """Validate configuration and print summary."""
    problems: list[str] = []
    print(f"Configuration valid: {config_path}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Models configured: {len(config.models)}")
    print(f"  Bots configured: {len(config.bots)}")
    for bot in config.bots:
        channels = ", ".join(c.type for c in bot.channels if c.enabled) or "(none)"
        state = "" if bot.enabled else " [disabled]"
        print(f"    - {bot.id}{state} model={bot.model or '(none)'} channels={channels}")
        if bot.enabled and not bot.model:
            problems.append(f"bot '{bot.id}' has no model")
    print(f"  Jobs configured: {len(config.jobs)}")
    for job in config.jobs:
        try:
            upcoming = next_fire_time(job.cron, tz=config.scheduler.timezone)
            print(f"    - {job.id} ({job.cron}) next: {upcoming.isoformat()}")
        except CronInvalidError as e:
            problems.append(str(e))
            print(f"    - {job.id} ({job.cron}) INVALID")

    if problems:
        for problem in problems:
            print(f"Warning: {problem}", file=sys.stderr)
        sys.exit(1)


def _model_info(config: AppConfig) -> None:
    """Show model information for each bot."""
    models = {m.id: m for m in config.models}
    print("Model Configuration")
    print("=" * 50)
    for bot in config.bots:
        print(f"\n  Bot: {bot.id}")
        model = models.get(bot.model) if bot.model else None
        if model is None:
            print("    Model   : (none)")
        else:
            print(f"    Provider: {model.provider}")
            print(f"    Model   : {model.model or '(provider default)'}")
            if model.endpoint:
                print(f"    Endpoint: {model.endpoint}")
            print(f"    Tokens  : {model.max_tokens}")
            print(f"    Temp    : {model.temperature}")
        plugins = [p.id for p in bot.plugins if p.enabled]
        print(f"    Plugins : {', '.join(plugins) if plugins else '(none)'}")
    print()


def _run_once(config: AppConfig, action: Callable[[OctoBotApp], Awaitable[T]]) -> T:
    """Initialize the app without starting channels or the poller, run one action."""

    async def _inner() -> T:
        app = OctoBotApp(config)
        try:
            await app.initialize()
            return await action(app)
        finally:
            await app.stop()

    try:
        return asyncio.run(_inner())
    except OctoBotError as e:
        print(f"Error ({type(e).__name__}): {e}", file=sys.stderr)
        sys.exit(1)


async def _chat(app: OctoBotApp, bot_id: str, text: str, user_id: str, stream: bool) -> None:
    message = api_message(text, user_id=user_id, channel_id="cli", user_name=user_id)
    if stream:
        async for chunk in app.process_stream(bot_id, message):
            print(chunk, end="", flush=True)
        print()
    else:
        print(await app.process(bot_id, message))


async def _run_job(app: OctoBotApp, job_id: str) -> None:
    execution = await app.run_job_now(job_id)
    print(f"Job {job_id}: {execution.status}")
    if execution.output:
        print(execution.output)
    if execution.error_message:
        print(f"Error: {execution.error_message}", file=sys.stderr)
        sys.exit(1)


async def _history(app: OctoBotApp, bot_id: str, channel_id: str, user_id: str, limit: int) -> None:
    messages = await app.history(bot_id, channel_id, user_id, limit)
    if not messages:
        print("No messages.")
        return
    for msg in messages:
        print(f"[{msg.timestamp.isoformat()}] {msg.role}: {msg.content}")


async def _serve(config: AppConfig) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(stop_event.set))

    app = OctoBotApp(config)
    try:
        await app.start()
        await stop_event.wait()
    finally:
        await app.stop()


if __name__ == "__main__":
    main()
