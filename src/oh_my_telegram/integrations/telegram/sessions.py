from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

from ...agents.opencode.client import OpenCodeClient
from ...agents.opencode.runtime import (
    NO_TEXT_RESPONSE,
    parse_message_response,
)
from ...logging_utils import log_event
from .constants import DELETE_DELAY_SECONDS, SESSION_LIST_LIMIT
from .state import ChatSession


class SessionTreeError(Exception):
    """Raised for session-tree operations that cannot proceed."""


@dataclass(frozen=True)
class SessionSummary:
    id: str
    title: Optional[str]
    updated: Optional[float]
    project_id: Optional[str]
    parent_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SessionSummary":
        timing = payload.get("time") if isinstance(payload.get("time"), dict) else {}
        updated = timing.get("updated", payload.get("updated"))
        title = payload.get("title")
        project_id = payload.get("projectID")
        parent_id = payload.get("parentID")
        return cls(
            id=str(payload.get("id")),
            title=title if isinstance(title, str) else None,
            updated=float(updated) if isinstance(updated, (int, float)) else None,
            project_id=project_id if isinstance(project_id, str) else None,
            parent_id=parent_id if isinstance(parent_id, str) and parent_id else None,
        )


@dataclass(frozen=True)
class ResetGroupResult:
    deleted_count: int
    root_session_id: Optional[str]
    new_session_id: str


@dataclass(frozen=True)
class ResetChildResult:
    deleted_session_id: str
    parent_session_id: str


def _recency_key(summary: SessionSummary) -> float:
    return summary.updated if summary.updated is not None else float("-inf")


def title_matches(title: Optional[str], key: str) -> bool:
    # Prefix ownership is a heuristic: "telegram-4" also claims "telegram-42-...".
    return bool(title) and title.startswith(key)  # type: ignore[union-attr]


class SessionTreeGateway:
    """Maps chats onto trees of remote OpenCode sessions.

    A chat owns every root session whose title starts with its session key.
    Requests are scoped to the chat's working directory, which acts as the
    per-chat binding on the shared client.
    """

    def __init__(
        self,
        client: OpenCodeClient,
        *,
        logger: Optional[logging.Logger] = None,
        delete_delay_seconds: float = DELETE_DELAY_SECONDS,
        list_limit: int = SESSION_LIST_LIMIT,
        web_url: Optional[str] = None,
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger(__name__)
        self._delete_delay_seconds = delete_delay_seconds
        self._list_limit = list_limit
        self._web_url = (web_url or "").rstrip("/")

    def session_web_url(self, session_id: str, project_id: Optional[str] = None) -> str:
        project = quote(project_id or "global", safe="")
        return f"{self._web_url}/{project}/session/{quote(session_id, safe='')}"

    async def ensure_session(self, chat: ChatSession) -> str:
        if chat.remote_session_id:
            return chat.remote_session_id
        candidates = await self.list_for_chat(chat, recent_first=True)
        if candidates:
            chosen = candidates[0].id
            log_event(
                self._logger,
                logging.INFO,
                "opencode.session.reused",
                chat_id=chat.chat_id,
                session_id=chosen,
                candidates=len(candidates),
            )
        else:
            created = await self._client.create_session(
                title=chat.session_key, directory=chat.working_directory
            )
            chosen = str(created["id"])
            log_event(
                self._logger,
                logging.INFO,
                "opencode.session.created",
                chat_id=chat.chat_id,
                session_id=chosen,
                title=chat.session_key,
            )
        self.bind(chat, chosen)
        return chosen

    def bind(self, chat: ChatSession, session_id: Optional[str]) -> None:
        chat.remote_session_id = session_id

    async def list_for_chat(
        self, chat: ChatSession, *, recent_first: bool = False
    ) -> list[SessionSummary]:
        sessions = await self._client.list_sessions(
            chat.working_directory,
            roots=True,
            search=chat.session_key,
            limit=self._list_limit,
        )
        owned = [
            SessionSummary.from_payload(item)
            for item in sessions
            if item.get("id") and title_matches(item.get("title"), chat.session_key)
        ]
        if recent_first:
            owned.sort(key=_recency_key, reverse=True)
        return owned

    async def get_session(self, chat: ChatSession, session_id: str) -> SessionSummary:
        payload = await self._client.get_session(
            session_id, directory=chat.working_directory
        )
        return SessionSummary.from_payload(payload)

    async def create_session(self, chat: ChatSession) -> SessionSummary:
        title = f"{chat.session_key}-{int(time.time())}"
        payload = await self._client.create_session(
            title=title, directory=chat.working_directory
        )
        summary = SessionSummary.from_payload(payload)
        self.bind(chat, summary.id)
        log_event(
            self._logger,
            logging.INFO,
            "opencode.session.created",
            chat_id=chat.chat_id,
            session_id=summary.id,
            title=title,
        )
        return summary

    async def switch_session(self, chat: ChatSession, session_id: str) -> SessionSummary:
        try:
            summary = await self.get_session(chat, session_id)
        except Exception as exc:
            raise SessionTreeError(f"Session {session_id} not found") from exc
        self.bind(chat, summary.id)
        return summary

    async def prompt(
        self, chat: ChatSession, message: str, *, agent: Optional[str] = None
    ) -> str:
        session_id = await self.ensure_session(chat)
        payload = await self._client.send_message(
            session_id,
            message=message,
            agent=agent,
            directory=chat.working_directory,
        )
        result = parse_message_response(payload)
        if result.error and not result.text:
            raise SessionTreeError(f"Prompt failed: {result.error}")
        return result.text or NO_TEXT_RESPONSE

    async def find_root(self, chat: ChatSession, session_id: str) -> str:
        seen: set[str] = set()
        current = await self.get_session(chat, session_id)
        while current.parent_id:
            if current.id in seen:
                raise SessionTreeError(f"Session {current.id} has a parent cycle")
            seen.add(current.id)
            current = await self.get_session(chat, current.parent_id)
        return current.id

    async def collect_deletion_order(self, chat: ChatSession, root_id: str) -> list[str]:
        """Post-order walk of the tree under root_id: children before parents."""
        arena: list[str] = [root_id]
        index_of: dict[str, int] = {root_id: 0}
        visited: set[int] = set()
        order: list[str] = []
        stack: list[tuple[int, bool]] = [(0, False)]
        while stack:
            index, expanded = stack.pop()
            if expanded:
                order.append(arena[index])
                continue
            if index in visited:
                continue
            visited.add(index)
            stack.append((index, True))
            children = await self._client.session_children(
                arena[index], directory=chat.working_directory
            )
            for child in reversed(children):
                child_id = child.get("id")
                if not isinstance(child_id, str) or not child_id:
                    continue
                if child_id in index_of:
                    continue
                index_of[child_id] = len(arena)
                arena.append(child_id)
                stack.append((index_of[child_id], False))
        return order

    async def reset_group(self, chat: ChatSession) -> ResetGroupResult:
        session_id = chat.remote_session_id or await self.ensure_session(chat)
        root_id = await self.find_root(chat, session_id)
        order = await self.collect_deletion_order(chat, root_id)
        deleted = 0
        for node_id in order:
            try:
                await self._client.delete_session(
                    node_id, directory=chat.working_directory
                )
                deleted += 1
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "opencode.session.delete_failed",
                    chat_id=chat.chat_id,
                    session_id=node_id,
                    exc=exc,
                )
            if self._delete_delay_seconds > 0:
                await asyncio.sleep(self._delete_delay_seconds)
        self.bind(chat, None)
        created = await self._client.create_session(
            title=chat.session_key, directory=chat.working_directory
        )
        new_session_id = str(created["id"])
        self.bind(chat, new_session_id)
        log_event(
            self._logger,
            logging.INFO,
            "opencode.session.group_reset",
            chat_id=chat.chat_id,
            root_session_id=root_id,
            deleted=deleted,
            planned=len(order),
            new_session_id=new_session_id,
        )
        return ResetGroupResult(
            deleted_count=deleted,
            root_session_id=root_id,
            new_session_id=new_session_id,
        )

    async def reset_child(self, chat: ChatSession) -> ResetChildResult:
        session_id = chat.remote_session_id
        if not session_id:
            raise SessionTreeError("No active session")
        info = await self.get_session(chat, session_id)
        if not info.parent_id:
            raise SessionTreeError(
                "Current session is a root session; use /reset to delete the entire group."
            )
        await self._client.delete_session(session_id, directory=chat.working_directory)
        self.bind(chat, info.parent_id)
        log_event(
            self._logger,
            logging.INFO,
            "opencode.session.child_reset",
            chat_id=chat.chat_id,
            session_id=session_id,
            parent_session_id=info.parent_id,
        )
        return ResetChildResult(
            deleted_session_id=session_id, parent_session_id=info.parent_id
        )
