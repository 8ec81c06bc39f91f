from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from ...logging_utils import log_event
from .adapter import TelegramUpdate

DEFAULT_POLL_TIMEOUT_SECONDS = 30
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_ALLOWED_UPDATES = ("message", "callback_query")

UpdateHandler = Callable[[TelegramUpdate], Awaitable[Any]]
FatalHandler = Callable[[BaseException], Any]


class UpdateSource(Protocol):
    async def get_updates(
        self,
        *,
        offset: Optional[int],
        timeout: int,
        request_timeout: float,
        allowed_updates: Optional[Sequence[str]] = None,
    ) -> list[TelegramUpdate]: ...


class TelegramPollerFatalError(Exception):
    """Raised when the update loop died and cannot continue."""


class TelegramUpdatePoller:
    """Long-poll loop owning the update offset.

    Updates are handed to the handler one at a time in arrival order and the
    offset moves past each update once its handler settles, whether it returned
    or raised. Timeouts are retried immediately; other transport errors wait a
    fixed backoff first.
    """

    def __init__(
        self,
        bot: UpdateSource,
        handler: UpdateHandler,
        *,
        timeout_seconds: int = DEFAULT_POLL_TIMEOUT_SECONDS,
        request_timeout: Optional[float] = None,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        allowed_updates: Sequence[str] = DEFAULT_ALLOWED_UPDATES,
        logger: Optional[logging.Logger] = None,
        on_fatal: Optional[FatalHandler] = None,
    ) -> None:
        self._bot = bot
        self._handler = handler
        self._timeout_seconds = timeout_seconds
        self._request_timeout = (
            request_timeout if request_timeout is not None else timeout_seconds + 5.0
        )
        if self._request_timeout <= timeout_seconds:
            raise ValueError("request timeout must exceed the long-poll timeout")
        self._backoff_seconds = backoff_seconds
        self._allowed_updates = list(allowed_updates)
        self._logger = logger or logging.getLogger(__name__)
        self._on_fatal = on_fatal
        self._offset: Optional[int] = None
        self._running = False
        self.fatal_error: Optional[BaseException] = None

    @property
    def offset(self) -> Optional[int]:
        return self._offset

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        self._running = True
        try:
            while self._running:
                await self.poll_once()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._running = False
            self.fatal_error = exc
            log_event(self._logger, logging.ERROR, "telegram.poll.fatal", exc=exc)
            if self._on_fatal is not None:
                self._on_fatal(exc)

    async def poll_once(self) -> int:
        """Fetch one batch and dispatch it; returns the number of updates handled."""
        try:
            updates = await self._bot.get_updates(
                offset=self._offset,
                timeout=self._timeout_seconds,
                request_timeout=self._request_timeout,
                allowed_updates=self._allowed_updates,
            )
        except httpx.TimeoutException:
            return 0
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.poll.failed",
                offset=self._offset,
                exc=exc,
            )
            await asyncio.sleep(self._backoff_seconds)
            return 0
        handled = 0
        for update in updates:
            try:
                await self._handler(update)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "telegram.update.failed",
                    update_id=update.update_id,
                    exc=exc,
                )
            self._offset = update.update_id + 1
            handled += 1
        return handled
