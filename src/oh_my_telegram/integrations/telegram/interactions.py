"""Surfaces pending permission and question requests of a running invocation.

While an agent invocation is in flight the notifier polls the remote pending
permission and question lists, forwards every request that belongs to the chat's
session exactly once, and keeps the per-request answer accumulator for multi
question forms until the final answer is submitted or the request is rejected.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ...agents.opencode.client import OpenCodeClient
from ...agents.opencode.runtime import (
    PERMISSION_REPLIES,
    PendingPermission,
    PendingQuestionRequest,
    format_permission_summary,
    parse_pending_permission,
    parse_pending_question,
)
from ...logging_utils import log_event
from .adapter import build_permission_keyboard, build_question_keyboard
from .constants import SELECTION_EXPIRED_TEXT
from .state import ChatSession

DEFAULT_POLL_INTERVAL_SECONDS = 2.0

_DECISION_LABELS = {
    "once": "✅ Allowed once",
    "always": "♾️ Always allowed",
    "reject": "🚫 Rejected",
}


class Messenger(Protocol):
    async def send_message(
        self, chat_id: int, text: str, **kwargs: Any
    ) -> dict[str, Any]: ...

    async def edit_message_text(
        self, chat_id: int, message_id: int, text: str, **kwargs: Any
    ) -> Any: ...


@dataclass
class QuestionProgress:
    request: PendingQuestionRequest
    chat_id: int
    directory: Optional[str]
    index: int = 0
    answers: list[list[str]] = field(default_factory=list)
    message_id: Optional[int] = None

    @property
    def total(self) -> int:
        return len(self.request.questions)


@dataclass(frozen=True)
class AnswerOutcome:
    toast: str
    submitted: bool = False
    expired: bool = False


def format_question_prompt(progress: QuestionProgress) -> str:
    question = progress.request.questions[progress.index]
    lines = [f"❓ Question {progress.index + 1}/{progress.total}"]
    if question.header:
        lines.append(question.header)
    if question.question:
        lines.append(question.question)
    for option in question.options:
        if option.description:
            lines.append(f"• {option.label}: {option.description}")
        else:
            lines.append(f"• {option.label}")
    return "\n".join(lines)


class InteractionNotifier:
    def __init__(
        self,
        bot: Messenger,
        client: OpenCodeClient,
        *,
        logger: Optional[logging.Logger] = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._bot = bot
        self._client = client
        self._logger = logger or logging.getLogger(__name__)
        self._poll_interval_seconds = poll_interval_seconds
        # Seen ids are never pruned; a long-lived process grows these slowly.
        self._seen_permissions: set[str] = set()
        self._seen_questions: set[str] = set()
        self._questions: dict[str, QuestionProgress] = {}
        self._lock = asyncio.Lock()

    def pending_question(self, request_id: str) -> Optional[QuestionProgress]:
        return self._questions.get(request_id)

    async def watch(self, chat: ChatSession, stop: asyncio.Event) -> None:
        """Poll until stop is set; cancellation-safe."""
        while not stop.is_set():
            await self.poll_and_notify(chat)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def poll_and_notify(self, chat: ChatSession) -> int:
        session_id = chat.remote_session_id
        if not session_id:
            return 0
        async with self._lock:
            sent = 0
            sent += await self._notify_permissions(chat, session_id)
            sent += await self._notify_questions(chat, session_id)
            return sent

    async def _notify_permissions(self, chat: ChatSession, session_id: str) -> int:
        try:
            raw = await self._client.list_permissions(chat.working_directory)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "opencode.permission.list_failed",
                chat_id=chat.chat_id,
                exc=exc,
            )
            return 0
        sent = 0
        for item in raw:
            permission = parse_pending_permission(item)
            if permission is None or permission.session_id != session_id:
                continue
            if permission.request_id in self._seen_permissions:
                continue
            # Unsent requests stay unseen so the next tick retries them.
            if not await self._send_permission(chat, permission):
                continue
            self._seen_permissions.add(permission.request_id)
            sent += 1
        return sent

    async def _send_permission(
        self, chat: ChatSession, permission: PendingPermission
    ) -> bool:
        text = "\n".join(["🔐 Permission requested", *format_permission_summary(permission)])
        try:
            await self._bot.send_message(
                chat.chat_id,
                text,
                reply_markup=build_permission_keyboard(permission.request_id),
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.permission.notify_failed",
                chat_id=chat.chat_id,
                request_id=permission.request_id,
                exc=exc,
            )
            return False
        log_event(
            self._logger,
            logging.INFO,
            "telegram.permission.notified",
            chat_id=chat.chat_id,
            request_id=permission.request_id,
            permission=permission.permission,
        )
        return True

    async def _notify_questions(self, chat: ChatSession, session_id: str) -> int:
        try:
            raw = await self._client.list_questions(chat.working_directory)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "opencode.question.list_failed",
                chat_id=chat.chat_id,
                exc=exc,
            )
            return 0
        sent = 0
        for item in raw:
            request = parse_pending_question(item)
            if request is None or request.session_id != session_id:
                continue
            if request.request_id in self._seen_questions:
                continue
            progress = QuestionProgress(
                request=request,
                chat_id=chat.chat_id,
                directory=chat.working_directory,
            )
            if not await self._send_question(progress):
                continue
            self._seen_questions.add(request.request_id)
            self._questions[request.request_id] = progress
            sent += 1
        return sent

    async def _send_question(self, progress: QuestionProgress) -> bool:
        question = progress.request.questions[progress.index]
        try:
            keyboard = build_question_keyboard(
                progress.request.request_id,
                progress.index,
                [option.label for option in question.options],
            )
            response = await self._bot.send_message(
                progress.chat_id,
                format_question_prompt(progress),
                reply_markup=keyboard,
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.question.notify_failed",
                chat_id=progress.chat_id,
                request_id=progress.request.request_id,
                question_index=progress.index,
                exc=exc,
            )
            return False
        message_id = response.get("message_id") if isinstance(response, dict) else None
        progress.message_id = message_id if isinstance(message_id, int) else None
        log_event(
            self._logger,
            logging.INFO,
            "telegram.question.notified",
            chat_id=progress.chat_id,
            request_id=progress.request.request_id,
            question_index=progress.index,
            total=progress.total,
        )
        return True

    async def handle_permission_reply(
        self, chat: ChatSession, request_id: str, decision: str
    ) -> str:
        if decision not in PERMISSION_REPLIES:
            raise ValueError(f"unsupported permission reply: {decision}")
        await self._client.respond_permission(
            request_id=request_id,
            reply=decision,
            directory=chat.working_directory,
        )
        log_event(
            self._logger,
            logging.INFO,
            "opencode.permission.replied",
            chat_id=chat.chat_id,
            request_id=request_id,
            reply=decision,
        )
        return _DECISION_LABELS[decision]

    async def handle_question_answer(
        self,
        chat: ChatSession,
        request_id: str,
        question_index: int,
        option_index: int,
    ) -> AnswerOutcome:
        async with self._lock:
            progress = self._questions.get(request_id)
            if progress is None or progress.index != question_index:
                return AnswerOutcome(toast=SELECTION_EXPIRED_TEXT, expired=True)
            options = progress.request.questions[question_index].options
            if option_index >= len(options):
                return AnswerOutcome(toast=SELECTION_EXPIRED_TEXT, expired=True)
            label = options[option_index].label
            del progress.answers[question_index:]
            progress.answers.append([label])
            if progress.index + 1 < progress.total:
                await self._mark_answered(progress, label)
                progress.index += 1
                if await self._send_question(progress):
                    return AnswerOutcome(toast=f"Selected: {label}")
                # Start the request over on the next poll.
                self._questions.pop(request_id, None)
                self._seen_questions.discard(request_id)
                return AnswerOutcome(toast="Failed to send next question", expired=True)
            # The accumulator survives a failed reply so the answer can be re-sent.
            await self._client.reply_question(
                request_id=request_id,
                answers=progress.answers,
                directory=progress.directory,
            )
            await self._mark_answered(progress, label)
            self._questions.pop(request_id, None)
        log_event(
            self._logger,
            logging.INFO,
            "opencode.question.replied",
            chat_id=chat.chat_id,
            request_id=request_id,
            answers=len(progress.answers),
        )
        await self._safe_send(chat.chat_id, "✅ Answers submitted.")
        return AnswerOutcome(toast=f"Selected: {label}", submitted=True)

    async def handle_question_reject(self, chat: ChatSession, request_id: str) -> bool:
        async with self._lock:
            progress = self._questions.get(request_id)
            if progress is None:
                return False
            await self._client.reject_question(
                request_id=request_id, directory=progress.directory
            )
            self._questions.pop(request_id, None)
        log_event(
            self._logger,
            logging.INFO,
            "opencode.question.rejected",
            chat_id=chat.chat_id,
            request_id=request_id,
            answered=len(progress.answers),
        )
        if progress.message_id is not None:
            await self._safe_edit(
                progress.chat_id, progress.message_id, "🚫 Question rejected."
            )
        return True

    async def _mark_answered(self, progress: QuestionProgress, label: str) -> None:
        if progress.message_id is None:
            return
        text = f"{format_question_prompt(progress)}\n\n✅ {label}"
        await self._safe_edit(progress.chat_id, progress.message_id, text)

    async def _safe_edit(self, chat_id: int, message_id: int, text: str) -> None:
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

    async def _safe_send(self, chat_id: int, text: str) -> None:
        try:
            await self._bot.send_message(chat_id, text)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.send_message.failed",
                chat_id=chat_id,
                exc=exc,
            )
