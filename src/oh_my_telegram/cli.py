import asyncio
import importlib.metadata
import logging
from pathlib import Path
from typing import NoReturn, Optional

import httpx
import typer

from .agents.opencode.client import OpenCodeClient, OpenCodeProtocolError
from .config import BotConfigError, ConfigError, load_config
from .integrations.telegram.adapter import TelegramAPIError, TelegramBotClient
from .integrations.telegram.poller import TelegramPollerFatalError
from .integrations.telegram.service import TelegramBotService
from .logging_utils import log_event, setup_rotating_logger

app = typer.Typer(add_completion=False)


def _version() -> str:
    try:
        return importlib.metadata.version("oh-my-telegram")
    except Exception:
        return "unknown"


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"oh-my-telegram {_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


def _raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _load(path: Optional[Path], config_path: Optional[Path]):
    try:
        return load_config(path or Path.cwd(), config_path=config_path)
    except ConfigError as exc:
        _raise_exit(str(exc), cause=exc)


@app.command("start")
def start(
    path: Optional[Path] = typer.Option(None, "--path", help="Directory to search for config"),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Explicit oh-my-telegram.yml path"
    ),
):
    """Start the Telegram bot (long polling)."""
    config = _load(path, config_path)
    try:
        config.validate()
    except BotConfigError as exc:
        _raise_exit(str(exc), cause=exc)
    bot_logger = setup_rotating_logger("oh-my-telegram", config.log, console=True)
    log_event(
        bot_logger,
        logging.INFO,
        "telegram.bot.starting",
        root=str(config.root),
        opencode_url=config.opencode.base_url,
        log_path=str(config.log.path),
    )

    async def _run() -> None:
        service = TelegramBotService(config, logger=bot_logger)
        try:
            await service.run_polling()
        except asyncio.CancelledError:
            await service.stop()
            raise

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        log_event(bot_logger, logging.INFO, "telegram.bot.interrupted")
    except TelegramPollerFatalError as exc:
        _raise_exit(f"Telegram bot stopped: {exc}", cause=exc)


@app.command("health")
def health(
    path: Optional[Path] = typer.Option(None, "--path", help="Directory to search for config"),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Explicit oh-my-telegram.yml path"
    ),
    timeout: float = typer.Option(5.0, "--timeout", help="Timeout (seconds)"),
):
    """Check Telegram API and OpenCode server connectivity."""
    config = _load(path, config_path)
    bot_token = config.bot_token
    if not bot_token:
        _raise_exit(f"missing bot token env '{config.bot_token_env}'")
    timeout_seconds = max(float(timeout), 0.1)

    async def _check_telegram() -> None:
        async with TelegramBotClient(bot_token) as bot:
            await asyncio.wait_for(bot.get_me(), timeout=timeout_seconds)

    async def _check_opencode() -> Optional[str]:
        async with OpenCodeClient(
            config.opencode.base_url, timeout=timeout_seconds
        ) as client:
            payload = await client.health()
        version = payload.get("version")
        return version if isinstance(version, str) else None

    try:
        asyncio.run(_check_telegram())
    except (TelegramAPIError, httpx.HTTPError, asyncio.TimeoutError) as exc:
        _raise_exit(f"Telegram health check failed: {exc}", cause=exc)
    try:
        version = asyncio.run(_check_opencode())
    except (httpx.HTTPError, OpenCodeProtocolError) as exc:
        _raise_exit(f"OpenCode health check failed: {exc}", cause=exc)
    typer.echo(f"Telegram: ok\nOpenCode: ok ({version or 'unknown version'})")
