from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from ...logging_utils import log_event
from .interactions import Messenger


def format_elapsed(seconds: float) -> str:
    total = max(int(seconds), 0)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def format_uptime(seconds: float) -> str:
    total = max(int(seconds), 0)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class TaskStatus:
    """One status message per invocation, edited in place as it progresses."""

    def __init__(
        self,
        bot: Messenger,
        chat_id: int,
        *,
        enabled: bool = True,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bot = bot
        self._chat_id = chat_id
        self._enabled = enabled
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._started_at = clock()
        self._message_id: Optional[int] = None
        self._last_text: Optional[str] = None

    @property
    def message_id(self) -> Optional[int]:
        return self._message_id

    def elapsed(self) -> float:
        return self._clock() - self._started_at

    async def set(self, text: str) -> None:
        if not self._enabled or text == self._last_text:
            return
        self._last_text = text
        try:
            if self._message_id is None:
                response: Any = await self._bot.send_message(self._chat_id, text)
                message_id = (
                    response.get("message_id") if isinstance(response, dict) else None
                )
                self._message_id = message_id if isinstance(message_id, int) else None
                return
            await self._bot.edit_message_text(self._chat_id, self._message_id, text)
        except Exception as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "telegram.progress.update_failed",
                chat_id=self._chat_id,
                message_id=self._message_id,
                exc=exc,
            )

    async def start(self, agent: str) -> None:
        await self.set(f"⏳ Working ({agent})…")

    async def complete(self) -> None:
        await self.set(f"✅ Done in {format_elapsed(self.elapsed())}")

    async def fail(self) -> None:
        await self.set(f"❌ Failed after {format_elapsed(self.elapsed())}")


class TaskNotifier:
    def __init__(
        self,
        bot: Messenger,
        *,
        enabled: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._bot = bot
        self._enabled = enabled
        self._logger = logger

    @property
    def enabled(self) -> bool:
        return self._enabled

    def create_task(self, chat_id: int) -> TaskStatus:
        return TaskStatus(
            self._bot, chat_id, enabled=self._enabled, logger=self._logger
        )
