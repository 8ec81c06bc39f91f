from __future__ import annotations

import logging

from ....logging_utils import log_event
from ..adapter import (
    AgentCallback,
    MenuCallback,
    PermissionCallback,
    QuestionAnswerCallback,
    QuestionRejectCallback,
    TelegramCallbackQuery,
    parse_callback_data,
)
from ..constants import PERMISSION_ACTION_RETRY, SELECTION_EXPIRED_TEXT
from ..state import ChatSession


class CallbackHandlers:
    async def _handle_callback(self, callback: TelegramCallbackQuery) -> None:
        chat_id = callback.chat_id if callback.chat_id is not None else callback.from_user_id
        payload = parse_callback_data(callback.data)
        if chat_id is None or payload is None:
            log_event(
                self._logger,
                logging.INFO,
                "telegram.callback.unsupported",
                chat_id=chat_id,
                data=callback.data,
            )
            await self._answer_callback(callback, "Unsupported action")
            return
        chat = self._registry.get_or_create(chat_id)
        if isinstance(payload, PermissionCallback):
            await self._handle_permission_callback(chat, callback, payload)
        elif isinstance(payload, QuestionAnswerCallback):
            await self._handle_question_answer_callback(chat, callback, payload)
        elif isinstance(payload, QuestionRejectCallback):
            await self._handle_question_reject_callback(chat, callback, payload)
        elif isinstance(payload, AgentCallback):
            await self._handle_agent_callback(chat, callback, payload)
        elif isinstance(payload, MenuCallback):
            await self._handle_menu_callback(chat, callback, payload)

    async def _handle_permission_callback(
        self,
        chat: ChatSession,
        callback: TelegramCallbackQuery,
        payload: PermissionCallback,
    ) -> None:
        if payload.decision == PERMISSION_ACTION_RETRY:
            await self._answer_callback(callback, "Retrying…")
            await self._retry_last_message(chat)
            return
        try:
            label = await self._notifier.handle_permission_reply(
                chat, payload.request_id, payload.decision
            )
        except Exception as exc:
            await self._answer_callback(callback, "Failed")
            await self._send_failure(chat, "Failed to reply to permission", exc)
            return
        await self._answer_callback(callback, label)
        if callback.message_id is not None:
            await self._edit_message(chat.chat_id, callback.message_id, label)

    async def _handle_question_answer_callback(
        self,
        chat: ChatSession,
        callback: TelegramCallbackQuery,
        payload: QuestionAnswerCallback,
    ) -> None:
        try:
            outcome = await self._notifier.handle_question_answer(
                chat,
                payload.request_id,
                payload.question_index,
                payload.option_index,
            )
        except Exception as exc:
            await self._answer_callback(callback, "Failed")
            await self._send_failure(chat, "Failed to submit answers", exc)
            return
        await self._answer_callback(callback, outcome.toast)

    async def _handle_question_reject_callback(
        self,
        chat: ChatSession,
        callback: TelegramCallbackQuery,
        payload: QuestionRejectCallback,
    ) -> None:
        try:
            rejected = await self._notifier.handle_question_reject(
                chat, payload.request_id
            )
        except Exception as exc:
            await self._answer_callback(callback, "Failed")
            await self._send_failure(chat, "Failed to reject question", exc)
            return
        await self._answer_callback(
            callback, "Rejected" if rejected else SELECTION_EXPIRED_TEXT
        )

    async def _handle_agent_callback(
        self,
        chat: ChatSession,
        callback: TelegramCallbackQuery,
        payload: AgentCallback,
    ) -> None:
        await self._answer_callback(callback, None)
        if callback.message_id is not None:
            await self._delete_message(chat.chat_id, callback.message_id)
        if payload.agent not in self._config.opencode.agents:
            await self._send_message(chat.chat_id, f"⚠️ Unknown agent: {payload.agent}")
            return
        await self._handle_persona_switch(chat, payload.agent)

    async def _handle_menu_callback(
        self,
        chat: ChatSession,
        callback: TelegramCallbackQuery,
        payload: MenuCallback,
    ) -> None:
        await self._answer_callback(callback, None)
        handler = self._menu_handlers().get(payload.action)
        if handler is None:
            log_event(
                self._logger,
                logging.INFO,
                "telegram.callback.unknown_menu_action",
                chat_id=chat.chat_id,
                action=payload.action,
            )
            return
        if callback.message_id is not None:
            await self._delete_message(chat.chat_id, callback.message_id)
        await handler(chat, "")
