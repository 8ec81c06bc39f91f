"""Telegram surface: long polling, rendering and chat handlers."""

from .poller import TelegramPollerFatalError, TelegramUpdatePoller
from .service import TelegramBotService

__all__ = ["TelegramBotService", "TelegramPollerFatalError", "TelegramUpdatePoller"]
