from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from ...agents.opencode.client import OpenCodeClient, OpenCodeProtocolError
from ...config import BotConfig
from ...logging_utils import log_event
from .adapter import (
    TelegramAllowlist,
    TelegramBotClient,
    TelegramCallbackQuery,
    TelegramMessage,
    TelegramUpdate,
    allowlist_allows,
)
from .constants import (
    COMMAND_ALIASES,
    COMMAND_CD,
    COMMAND_HELP,
    COMMAND_LIST,
    COMMAND_NEW,
    COMMAND_RESET,
    COMMAND_RESET_CHILD,
    COMMAND_START,
    COMMAND_STATUS,
    COMMAND_SWITCH,
    REMOTE_PROBE_BACKOFF_INITIAL_SECONDS,
    REMOTE_PROBE_BACKOFF_MAX_SECONDS,
    UNAUTHORIZED_TEXT,
)
from .handlers.callbacks import CallbackHandlers
from .handlers.commands import ExecutionCommands, SessionCommands, WorkspaceCommands
from .interactions import InteractionNotifier
from .poller import TelegramPollerFatalError, TelegramUpdatePoller
from .progress import TaskNotifier
from .rendering import MarkdownRenderer
from .sessions import SessionTreeGateway
from .state import ChatSession, SessionRegistry

CommandHandler = Callable[[ChatSession, str], Awaitable[None]]


def parse_command(text: str) -> Optional[tuple[str, str]]:
    """Split "/name@bot args" into (name, args); None for plain text."""
    if not text.startswith("/"):
        return None
    head, _, args = text.partition(" ")
    name = head[1:].split("@", 1)[0]
    if not name:
        return None
    return name, args.strip()


class TelegramBotService(
    WorkspaceCommands, SessionCommands, ExecutionCommands, CallbackHandlers
):
    def __init__(
        self,
        config: BotConfig,
        *,
        logger: Optional[logging.Logger] = None,
        bot: Optional[TelegramBotClient] = None,
        client: Optional[OpenCodeClient] = None,
    ) -> None:
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        if bot is None:
            if not config.bot_token:
                raise ValueError(f"missing bot token env '{config.bot_token_env}'")
            bot = TelegramBotClient(
                config.bot_token,
                logger=self._logger,
                timeout=config.long_poll_request_timeout,
            )
        self._bot = bot
        self._client = client or OpenCodeClient(
            config.opencode.base_url, timeout=config.opencode.request_timeout_seconds
        )
        users = config.allowed_users or ["*"]
        self._allowlist = TelegramAllowlist.from_list(users)
        self._registry = SessionRegistry(
            session_prefix=config.opencode.session_prefix,
            default_agent=config.opencode.default_agent,
            working_directory=config.opencode.working_directory,
        )
        self._gateway = SessionTreeGateway(
            self._client,
            logger=self._logger,
            delete_delay_seconds=config.delete_delay_seconds,
            web_url=config.opencode.web_url,
        )
        self._notifier = InteractionNotifier(
            self._bot,
            self._client,
            logger=self._logger,
            poll_interval_seconds=config.interaction_poll_interval_seconds,
        )
        self._progress = TaskNotifier(
            self._bot, enabled=config.progress_enabled, logger=self._logger
        )
        self._renderer = MarkdownRenderer()
        self._poller = TelegramUpdatePoller(
            self._bot,
            self._dispatch_update,
            timeout_seconds=config.polling.timeout_seconds,
            request_timeout=config.long_poll_request_timeout,
            backoff_seconds=config.polling.backoff_seconds,
            allowed_updates=config.polling.allowed_updates,
            logger=self._logger,
        )
        self._commands: dict[str, CommandHandler] = {
            COMMAND_START: self._handle_start,
            COMMAND_HELP: self._handle_help,
            COMMAND_STATUS: self._handle_status,
            COMMAND_NEW: self._handle_new,
            COMMAND_LIST: self._handle_list,
            COMMAND_SWITCH: self._handle_switch,
            COMMAND_CD: self._handle_cd,
            COMMAND_RESET: self._handle_reset,
            COMMAND_RESET_CHILD: self._handle_reset_child,
        }
        self._tasks: set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._started_at = time.monotonic()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def poller(self) -> TelegramUpdatePoller:
        return self._poller

    def _menu_handlers(self) -> dict[str, CommandHandler]:
        return {
            COMMAND_HELP: self._handle_help,
            COMMAND_STATUS: self._handle_status,
            COMMAND_NEW: self._handle_new,
            COMMAND_LIST: self._handle_list,
            COMMAND_RESET: self._handle_reset,
        }

    async def run_polling(self) -> None:
        self._config.validate()
        if not self._config.allowed_users:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.allowlist.empty",
                detail="no allowed_users configured; anyone may use the bot",
            )
        await self._probe_remote_with_backoff()
        await self._delete_webhook()
        log_event(
            self._logger,
            logging.INFO,
            "telegram.bot.started",
            poll_timeout=self._config.polling.timeout_seconds,
            allowed_updates=list(self._config.polling.allowed_updates),
            allowed_users=len(self._config.allowed_users),
            default_agent=self._config.opencode.default_agent,
            working_directory=self._config.opencode.working_directory,
        )
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self._poll_task = asyncio.create_task(self._poller.run())
        try:
            await self._poll_task
        except asyncio.CancelledError:
            if not self._stopping:
                raise
        finally:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            await self._bot.close()
            await self._client.close()
        if self._poller.fatal_error is not None and not self._stopping:
            raise TelegramPollerFatalError(
                f"update loop stopped: {self._poller.fatal_error}"
            ) from self._poller.fatal_error
        log_event(self._logger, logging.INFO, "telegram.bot.stopped")

    async def stop(self) -> None:
        self._stopping = True
        self._poller.stop()
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=self._config.shutdown_grace_seconds)
        else:
            await asyncio.sleep(self._config.shutdown_grace_seconds)
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()

    async def _probe_remote_with_backoff(self) -> None:
        delay = REMOTE_PROBE_BACKOFF_INITIAL_SECONDS
        while True:
            try:
                await self._client.config(self._config.opencode.working_directory)
                return
            except (httpx.HTTPError, OpenCodeProtocolError, ValueError) as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "opencode.probe.failed",
                    base_url=self._config.opencode.base_url,
                    delay_seconds=round(delay, 2),
                    exc=exc,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, REMOTE_PROBE_BACKOFF_MAX_SECONDS)

    async def _delete_webhook(self) -> None:
        try:
            await self._bot.delete_webhook(
                drop_pending_updates=self._config.drop_pending_updates
            )
        except Exception as exc:
            log_event(
                self._logger, logging.WARNING, "telegram.webhook.delete_failed", exc=exc
            )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval_seconds)
            self.sweep_idle_sessions()

    def sweep_idle_sessions(self) -> list[int]:
        removed = self._registry.sweep_idle(self._config.idle_ttl_seconds)
        if removed:
            log_event(
                self._logger,
                logging.INFO,
                "telegram.session.swept",
                removed=len(removed),
                remaining=len(self._registry),
            )
        return removed

    def _spawn_task(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._log_task_result)
        return task

    def _log_task_result(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)  # type: ignore[arg-type]
        try:
            task.result()
        except asyncio.CancelledError:
            return
        except Exception as exc:
            log_event(self._logger, logging.WARNING, "telegram.task.failed", exc=exc)

    async def wait_idle(self) -> None:
        """Wait for spawned invocation tasks to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch_update(self, update: TelegramUpdate) -> None:
        chat_id = None
        user_id = None
        if update.message:
            chat_id = update.message.chat_id
            user_id = update.message.from_user_id
        elif update.callback:
            chat_id = update.callback.chat_id
            user_id = update.callback.from_user_id
        log_event(
            self._logger,
            logging.INFO,
            "telegram.update.received",
            update_id=update.update_id,
            chat_id=chat_id,
            user_id=user_id,
            has_message=bool(update.message),
            has_callback=bool(update.callback),
        )
        if not allowlist_allows(update, self._allowlist):
            await self._refuse(update)
            return
        if update.callback:
            await self._handle_callback(update.callback)
            return
        if update.message:
            await self._handle_message(update.message)

    async def _refuse(self, update: TelegramUpdate) -> None:
        chat_id: Optional[int] = None
        user_id: Optional[int] = None
        if update.message:
            chat_id = update.message.chat_id
            user_id = update.message.from_user_id
        elif update.callback:
            chat_id = update.callback.chat_id or update.callback.from_user_id
            user_id = update.callback.from_user_id
            await self._answer_callback(update.callback, None)
        log_event(
            self._logger,
            logging.INFO,
            "telegram.access.denied",
            chat_id=chat_id,
            user_id=user_id,
        )
        if chat_id is not None:
            await self._send_message(chat_id, UNAUTHORIZED_TEXT)

    async def _handle_message(self, message: TelegramMessage) -> None:
        text = (message.text or "").strip()
        if not text:
            return
        chat = self._registry.get_or_create(message.chat_id)
        command = parse_command(text)
        if command is not None:
            name, args = command
            name = COMMAND_ALIASES.get(name, name)
            handler = self._commands.get(name)
            if handler is not None:
                log_event(
                    self._logger,
                    logging.INFO,
                    "telegram.command",
                    chat_id=chat.chat_id,
                    command=name,
                )
                await handler(chat, args)
                return
            if name in self._config.opencode.agents and not args:
                await self._handle_persona_switch(chat, name)
                return
        await self._handle_text(chat, text)

    def _log_chat_event(self, chat: ChatSession, event: str, **fields: Any) -> None:
        log_event(self._logger, logging.INFO, event, chat_id=chat.chat_id, **fields)

    async def _send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: Optional[dict[str, Any]] = None,
        parse_mode: Optional[str] = None,
    ) -> None:
        await self._bot.send_message(
            chat_id, text, reply_markup=reply_markup, parse_mode=parse_mode
        )

    async def _send_failure(
        self, chat: ChatSession, what: str, exc: BaseException
    ) -> None:
        log_event(
            self._logger,
            logging.WARNING,
            "telegram.command.failed",
            chat_id=chat.chat_id,
            what=what,
            exc=exc,
        )
        detail = str(exc) or exc.__class__.__name__
        try:
            await self._send_message(chat.chat_id, f"❌ {what}: {detail}")
        except Exception as send_exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.send_message.failed",
                chat_id=chat.chat_id,
                exc=send_exc,
            )

    async def _answer_callback(
        self, callback: Optional[TelegramCallbackQuery], text: Optional[str]
    ) -> None:
        if callback is None:
            return
        try:
            await self._bot.answer_callback_query(callback.callback_id, text=text)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "telegram.callback.answer_failed",
                callback_id=callback.callback_id,
                exc=exc,
            )

    async def _delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            await self._bot.delete_message(chat_id, message_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "telegram.message.delete_failed",
                chat_id=chat_id,
                message_id=message_id,
                exc=exc,
            )

    async def _edit_message(self, chat_id: int, message_id: int, text: str) -> None:
        try:
            await self._bot.edit_message_text(chat_id, message_id, text)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "telegram.message.edit_failed",
                chat_id=chat_id,
                message_id=message_id,
                exc=exc,
            )
