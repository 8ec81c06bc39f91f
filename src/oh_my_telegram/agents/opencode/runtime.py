from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

NO_TEXT_RESPONSE = "[No text response from agent]"

PERMISSION_REPLY_ONCE = "once"
PERMISSION_REPLY_ALWAYS = "always"
PERMISSION_REPLY_REJECT = "reject"
PERMISSION_REPLIES = (
    PERMISSION_REPLY_ONCE,
    PERMISSION_REPLY_ALWAYS,
    PERMISSION_REPLY_REJECT,
)


@dataclass(frozen=True)
class OpenCodeMessageResult:
    text: str
    error: Optional[str] = None


@dataclass(frozen=True)
class PendingPermission:
    request_id: str
    session_id: str
    permission: str
    patterns: list[str] = field(default_factory=list)
    always: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: Optional[str] = None


@dataclass(frozen=True)
class Question:
    header: str
    question: str
    options: list[QuestionOption]
    multiple: bool = False


@dataclass(frozen=True)
class PendingQuestionRequest:
    request_id: str
    session_id: str
    questions: list[Question]


def parse_message_response(payload: Any) -> OpenCodeMessageResult:
    """Collect the text parts of a prompt response, joined by newlines."""
    if not isinstance(payload, dict):
        return OpenCodeMessageResult(text="")
    info = payload.get("info")
    error = _extract_error_text(info)
    parts_raw = payload.get("parts")
    text_parts: list[str] = []
    if isinstance(parts_raw, list):
        for part in parts_raw:
            if not isinstance(part, dict):
                continue
            if part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                text_parts.append(text)
    return OpenCodeMessageResult(text="\n".join(text_parts), error=error)


def _extract_error_text(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict):
            message = data.get("message")
            if isinstance(message, str) and message:
                return message
        for key in ("message", "detail", "name"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(error, str) and error:
        return error
    return None


def _first_str(payload: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _str_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, str)]


def parse_pending_permission(payload: Any) -> Optional[PendingPermission]:
    if not isinstance(payload, dict):
        return None
    request_id = _first_str(payload, "id", "requestID", "requestId")
    session_id = _first_str(payload, "sessionID", "sessionId")
    if not request_id or not session_id:
        return None
    metadata = payload.get("metadata")
    return PendingPermission(
        request_id=request_id,
        session_id=session_id,
        permission=_first_str(payload, "permission", "type", "title") or "unknown",
        patterns=_str_list(payload.get("patterns")),
        always=_str_list(payload.get("always")),
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )


def _parse_option(raw: Any) -> Optional[QuestionOption]:
    if isinstance(raw, str):
        label = raw.strip()
        return QuestionOption(label=label) if label else None
    if isinstance(raw, dict):
        label = _first_str(raw, "label", "text", "value")
        if not label:
            return None
        return QuestionOption(
            label=label.strip(), description=_first_str(raw, "description")
        )
    return None


def _parse_question(raw: Any) -> Optional[Question]:
    if isinstance(raw, str):
        return Question(header="", question=raw, options=[])
    if not isinstance(raw, dict):
        return None
    options_raw = raw.get("options")
    options: list[QuestionOption] = []
    if isinstance(options_raw, list):
        for item in options_raw:
            option = _parse_option(item)
            if option is not None:
                options.append(option)
    return Question(
        header=_first_str(raw, "header") or "",
        question=_first_str(raw, "question", "text") or "",
        options=options,
        multiple=bool(raw.get("multiple", False)),
    )


def parse_pending_question(payload: Any) -> Optional[PendingQuestionRequest]:
    if not isinstance(payload, dict):
        return None
    request_id = _first_str(payload, "id", "requestID", "requestId")
    session_id = _first_str(payload, "sessionID", "sessionId")
    if not request_id or not session_id:
        return None
    questions: list[Question] = []
    raw_questions = payload.get("questions")
    if isinstance(raw_questions, list):
        for item in raw_questions:
            question = _parse_question(item)
            if question is not None:
                questions.append(question)
    if not questions:
        return None
    return PendingQuestionRequest(
        request_id=request_id, session_id=session_id, questions=questions
    )


def format_permission_summary(permission: PendingPermission) -> list[str]:
    lines = [f"Permission: {permission.permission}"]
    if permission.patterns:
        lines.append("Patterns:")
        lines.extend(f"- {pattern}" for pattern in permission.patterns[:10])
        if len(permission.patterns) > 10:
            lines.append("- ...")
    for key in ("command", "filepath", "path", "url"):
        value = permission.metadata.get(key)
        if isinstance(value, str) and value:
            lines.append(f"{key.capitalize()}: {value}")
    return lines
