from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Union

import httpx

from ...logging_utils import log_event
from .constants import (
    CALLBACK_AGENT,
    CALLBACK_LEGACY_ACTION,
    CALLBACK_MENU,
    CALLBACK_PERMISSION,
    CALLBACK_QUESTION,
    MAX_CALLBACK_DATA_BYTES,
    PERMISSION_ACTIONS,
    QUESTION_ACTION_ANSWER,
    QUESTION_ACTION_REJECT,
)

TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


class TelegramAPIError(Exception):
    """Raised when the Bot API rejects a call or answers with garbage."""


@dataclass(frozen=True)
class TelegramMessage:
    update_id: int
    message_id: int
    chat_id: int
    thread_id: Optional[int]
    from_user_id: Optional[int]
    text: Optional[str]
    date: Optional[int]
    is_topic_message: bool = False
    from_username: Optional[str] = None


@dataclass(frozen=True)
class TelegramCallbackQuery:
    update_id: int
    callback_id: str
    from_user_id: Optional[int]
    data: Optional[str]
    message_id: Optional[int]
    chat_id: Optional[int]
    thread_id: Optional[int] = None


@dataclass(frozen=True)
class TelegramUpdate:
    update_id: int
    message: Optional[TelegramMessage] = None
    callback: Optional[TelegramCallbackQuery] = None


@dataclass(frozen=True)
class TelegramAllowlist:
    allowed_users: frozenset[str]

    @classmethod
    def from_list(cls, users: Iterable[str]) -> "TelegramAllowlist":
        return cls(allowed_users=frozenset(str(user).strip() for user in users))

    @property
    def allow_all(self) -> bool:
        return "*" in self.allowed_users

    def allows(self, user_id: Optional[int]) -> bool:
        if self.allow_all:
            return True
        if user_id is None:
            return False
        return str(user_id) in self.allowed_users


def allowlist_allows(update: TelegramUpdate, allowlist: TelegramAllowlist) -> bool:
    if update.message is not None:
        return allowlist.allows(update.message.from_user_id)
    if update.callback is not None:
        return allowlist.allows(update.callback.from_user_id)
    return False


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def parse_update(payload: Any) -> Optional[TelegramUpdate]:
    if not isinstance(payload, dict):
        return None
    update_id = _coerce_int(payload.get("update_id"))
    if update_id is None:
        return None
    message = _parse_message(update_id, payload.get("message"))
    callback = _parse_callback(update_id, payload.get("callback_query"))
    return TelegramUpdate(update_id=update_id, message=message, callback=callback)


def _parse_message(update_id: int, raw: Any) -> Optional[TelegramMessage]:
    if not isinstance(raw, dict):
        return None
    chat = raw.get("chat") if isinstance(raw.get("chat"), dict) else {}
    chat_id = _coerce_int(chat.get("id"))
    message_id = _coerce_int(raw.get("message_id"))
    if chat_id is None or message_id is None:
        return None
    sender = raw.get("from") if isinstance(raw.get("from"), dict) else {}
    text = raw.get("text")
    username = sender.get("username")
    return TelegramMessage(
        update_id=update_id,
        message_id=message_id,
        chat_id=chat_id,
        thread_id=_coerce_int(raw.get("message_thread_id")),
        from_user_id=_coerce_int(sender.get("id")),
        text=text if isinstance(text, str) else None,
        date=_coerce_int(raw.get("date")),
        is_topic_message=bool(raw.get("is_topic_message", False)),
        from_username=username if isinstance(username, str) else None,
    )


def _parse_callback(update_id: int, raw: Any) -> Optional[TelegramCallbackQuery]:
    if not isinstance(raw, dict):
        return None
    callback_id = raw.get("id")
    if not isinstance(callback_id, str):
        return None
    sender = raw.get("from") if isinstance(raw.get("from"), dict) else {}
    message = raw.get("message") if isinstance(raw.get("message"), dict) else {}
    chat = message.get("chat") if isinstance(message.get("chat"), dict) else {}
    data = raw.get("data")
    return TelegramCallbackQuery(
        update_id=update_id,
        callback_id=callback_id,
        from_user_id=_coerce_int(sender.get("id")),
        data=data if isinstance(data, str) else None,
        message_id=_coerce_int(message.get("message_id")),
        chat_id=_coerce_int(chat.get("id")),
        thread_id=_coerce_int(message.get("message_thread_id")),
    )


# Callback payloads: "{kind}:{action}:{id}[:{sub}:{sub}]"


@dataclass(frozen=True)
class PermissionCallback:
    request_id: str
    decision: str


@dataclass(frozen=True)
class QuestionAnswerCallback:
    request_id: str
    question_index: int
    option_index: int


@dataclass(frozen=True)
class QuestionRejectCallback:
    request_id: str


@dataclass(frozen=True)
class AgentCallback:
    agent: str


@dataclass(frozen=True)
class MenuCallback:
    action: str


CallbackPayload = Union[
    PermissionCallback,
    QuestionAnswerCallback,
    QuestionRejectCallback,
    AgentCallback,
    MenuCallback,
]


def _encode(kind: str, action: str, ident: Optional[str] = None, *sub: int) -> str:
    if ":" in action or (ident is not None and (":" in ident or not ident)):
        raise ValueError("callback fields must be non-empty and free of ':'")
    parts = [kind, action]
    if ident is not None:
        parts.append(ident)
        parts.extend(str(index) for index in sub)
    data = ":".join(parts)
    if len(data.encode("utf-8")) > MAX_CALLBACK_DATA_BYTES:
        raise ValueError("callback_data exceeds Telegram limit")
    return data


def encode_permission_callback(request_id: str, decision: str) -> str:
    if decision not in PERMISSION_ACTIONS:
        raise ValueError(f"unknown permission action: {decision}")
    return _encode(CALLBACK_PERMISSION, decision, request_id)


def encode_question_answer_callback(
    request_id: str, question_index: int, option_index: int
) -> str:
    return _encode(
        CALLBACK_QUESTION,
        QUESTION_ACTION_ANSWER,
        request_id,
        question_index,
        option_index,
    )


def encode_question_reject_callback(request_id: str) -> str:
    return _encode(CALLBACK_QUESTION, QUESTION_ACTION_REJECT, request_id)


def encode_agent_callback(agent: str) -> str:
    return _encode(CALLBACK_AGENT, "set", agent)


def encode_menu_callback(action: str) -> str:
    return _encode(CALLBACK_MENU, action)


def encode_callback_payload(payload: CallbackPayload) -> str:
    if isinstance(payload, PermissionCallback):
        return encode_permission_callback(payload.request_id, payload.decision)
    if isinstance(payload, QuestionAnswerCallback):
        return encode_question_answer_callback(
            payload.request_id, payload.question_index, payload.option_index
        )
    if isinstance(payload, QuestionRejectCallback):
        return encode_question_reject_callback(payload.request_id)
    if isinstance(payload, AgentCallback):
        return encode_agent_callback(payload.agent)
    return encode_menu_callback(payload.action)


def parse_callback_data(data: Optional[str]) -> Optional[CallbackPayload]:
    if not data:
        return None
    parts = data.split(":")
    if len(parts) < 2 or not all(parts[:2]):
        return None
    kind, action = parts[0], parts[1]
    rest = parts[2:]
    if kind == CALLBACK_PERMISSION:
        if action not in PERMISSION_ACTIONS or len(rest) != 1 or not rest[0]:
            return None
        return PermissionCallback(request_id=rest[0], decision=action)
    if kind == CALLBACK_QUESTION:
        if action == QUESTION_ACTION_REJECT and len(rest) == 1 and rest[0]:
            return QuestionRejectCallback(request_id=rest[0])
        if action == QUESTION_ACTION_ANSWER and len(rest) == 3 and rest[0]:
            try:
                question_index = int(rest[1])
                option_index = int(rest[2])
            except ValueError:
                return None
            if question_index < 0 or option_index < 0:
                return None
            return QuestionAnswerCallback(
                request_id=rest[0],
                question_index=question_index,
                option_index=option_index,
            )
        return None
    if kind == CALLBACK_AGENT:
        # Legacy two-part form: "agent:<name>".
        if not rest:
            return AgentCallback(agent=action)
        if action == "set" and len(rest) == 1 and rest[0]:
            return AgentCallback(agent=rest[0])
        return None
    if kind in (CALLBACK_MENU, CALLBACK_LEGACY_ACTION) and not rest:
        return MenuCallback(action=action)
    return None


@dataclass(frozen=True)
class InlineButton:
    text: str
    callback_data: str


def build_inline_keyboard(rows: Sequence[Sequence[InlineButton]]) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                {"text": button.text, "callback_data": button.callback_data}
                for button in row
            ]
            for row in rows
        ]
    }


def build_permission_keyboard(request_id: str) -> dict[str, Any]:
    return build_inline_keyboard(
        [
            [
                InlineButton("✅ Allow once", encode_permission_callback(request_id, "once")),
                InlineButton(
                    "♾️ Always allow", encode_permission_callback(request_id, "always")
                ),
            ],
            [
                InlineButton("🚫 Reject", encode_permission_callback(request_id, "reject")),
                InlineButton("🔁 Retry", encode_permission_callback(request_id, "retry")),
            ],
        ]
    )


def build_question_keyboard(
    request_id: str, question_index: int, option_labels: Sequence[str]
) -> dict[str, Any]:
    rows = [
        [
            InlineButton(
                label,
                encode_question_answer_callback(request_id, question_index, index),
            )
        ]
        for index, label in enumerate(option_labels)
    ]
    rows.append(
        [InlineButton("🚫 Reject", encode_question_reject_callback(request_id))]
    )
    return build_inline_keyboard(rows)


class TelegramBotClient:
    """Minimal Bot API client over httpx."""

    def __init__(
        self,
        bot_token: str,
        *,
        logger: Optional[logging.Logger] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        base_url: str = TELEGRAM_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/bot{bot_token}",
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "TelegramBotClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        payload: Optional[dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        body = {key: value for key, value in (payload or {}).items() if value is not None}
        response = await self._client.post(
            f"/{method}",
            json=body,
            timeout=timeout if timeout is not None else self._timeout,
        )
        try:
            data = response.json()
        except ValueError as exc:
            response.raise_for_status()
            raise TelegramAPIError(f"{method}: non-JSON response") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TelegramAPIError(
                f"{method} failed: {description or response.status_code}"
            )
        return data.get("result")

    async def get_me(self) -> Any:
        return await self._request("getMe")

    async def get_updates(
        self,
        *,
        offset: Optional[int],
        timeout: int,
        request_timeout: float,
        allowed_updates: Optional[Sequence[str]] = None,
    ) -> list[TelegramUpdate]:
        result = await self._request(
            "getUpdates",
            {
                "offset": offset,
                "timeout": timeout,
                "allowed_updates": list(allowed_updates) if allowed_updates else None,
            },
            timeout=request_timeout,
        )
        if not isinstance(result, list):
            raise TelegramAPIError("getUpdates returned a non-list result")
        updates: list[TelegramUpdate] = []
        for raw in result:
            update = parse_update(raw)
            if update is None:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "telegram.update.unparsed",
                    update_id=raw.get("update_id") if isinstance(raw, dict) else None,
                )
                continue
            updates.append(update)
        return updates

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        message_thread_id: Optional[int] = None,
        reply_to_message_id: Optional[int] = None,
        parse_mode: Optional[str] = None,
        disable_web_page_preview: bool = True,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        result = await self._request(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": text,
                "message_thread_id": message_thread_id,
                "reply_to_message_id": reply_to_message_id,
                "parse_mode": parse_mode,
                "disable_web_page_preview": disable_web_page_preview,
                "reply_markup": reply_markup,
            },
        )
        return result if isinstance(result, dict) else {}

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        reply_markup: Optional[dict[str, Any]] = None,
        parse_mode: Optional[str] = None,
        disable_web_page_preview: bool = True,
    ) -> Any:
        return await self._request(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "reply_markup": reply_markup,
                "parse_mode": parse_mode,
                "disable_web_page_preview": disable_web_page_preview,
            },
        )

    async def delete_message(self, chat_id: int, message_id: int) -> Any:
        return await self._request(
            "deleteMessage", {"chat_id": chat_id, "message_id": message_id}
        )

    async def answer_callback_query(
        self,
        callback_query_id: str,
        *,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> Any:
        return await self._request(
            "answerCallbackQuery",
            {
                "callback_query_id": callback_query_id,
                "text": text,
                "show_alert": show_alert or None,
            },
        )

    async def delete_webhook(self, *, drop_pending_updates: bool = False) -> Any:
        return await self._request(
            "deleteWebhook", {"drop_pending_updates": drop_pending_updates}
        )
