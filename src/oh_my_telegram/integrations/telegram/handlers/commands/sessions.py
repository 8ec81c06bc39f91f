from __future__ import annotations

import time
from datetime import datetime
from typing import Optional

from ...constants import BUSY_TEXT
from ...progress import format_uptime
from ...sessions import SessionSummary, SessionTreeError
from ...state import ChatSession


def format_updated(updated: Optional[float]) -> str:
    if updated is None:
        return "Unknown"
    # Remote timestamps are epoch milliseconds.
    seconds = updated / 1000 if updated > 1e11 else updated
    try:
        return datetime.fromtimestamp(seconds).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError):
        return "Unknown"


def format_session_list(
    sessions: list[SessionSummary], current_id: Optional[str]
) -> list[str]:
    lines: list[str] = []
    for index, session in enumerate(sessions, start=1):
        marker = " (current)" if session.id == current_id else ""
        lines.append(
            "\n".join(
                [
                    f"{index}. {session.id}{marker}",
                    f"   {session.title or 'Untitled'}",
                    f"   Updated: {format_updated(session.updated)}",
                ]
            )
        )
    return lines


class SessionCommands:
    async def _handle_new(self, chat: ChatSession, _args: str) -> None:
        try:
            summary = await self._gateway.create_session(chat)
        except Exception as exc:
            await self._send_failure(chat, "Failed to create session", exc)
            return
        url = self._gateway.session_web_url(summary.id, summary.project_id)
        await self._send_message(
            chat.chat_id,
            "\n".join(
                [
                    "✅ New session created",
                    "",
                    f"Session ID: {summary.id}",
                    "",
                    "View in opencode web:",
                    url,
                    "",
                    "Starting fresh conversation.",
                ]
            ),
        )

    async def _handle_list(self, chat: ChatSession, _args: str) -> None:
        try:
            sessions = await self._gateway.list_for_chat(chat, recent_first=True)
        except Exception as exc:
            await self._send_failure(chat, "Failed to list sessions", exc)
            return
        if not sessions:
            await self._send_message(
                chat.chat_id, "Sessions\n\nNo sessions found. Use /new to create one."
            )
            return
        body = "\n\n".join(format_session_list(sessions, chat.remote_session_id))
        await self._send_message(
            chat.chat_id,
            "\n".join(
                [
                    f"Sessions ({len(sessions)} total)",
                    "",
                    body,
                    "",
                    "Use /switch <number> to switch sessions",
                    f"View in opencode web: {self._config.opencode.web_url}/",
                ]
            ),
        )

    async def _handle_switch(self, chat: ChatSession, args: str) -> None:
        arg = args.strip()
        if not arg:
            await self._send_message(
                chat.chat_id,
                "⚠️ Usage: /switch <number>\n\nUse /list to see available sessions.",
            )
            return
        try:
            number = int(arg)
        except ValueError:
            await self._send_message(
                chat.chat_id,
                "⚠️ Invalid number. Use /switch <number>\n\nExample: /switch 1",
            )
            return
        try:
            sessions = await self._gateway.list_for_chat(chat, recent_first=True)
            if number < 1 or number > len(sessions):
                available = f"1-{len(sessions)}" if sessions else "none"
                await self._send_message(
                    chat.chat_id,
                    "\n".join(
                        [
                            f"⚠️ Invalid session number: {number}",
                            "",
                            f"Available sessions: {available}",
                            "Use /list to see all sessions.",
                        ]
                    ),
                )
                return
            target = sessions[number - 1]
            await self._gateway.switch_session(chat, target.id)
        except Exception as exc:
            await self._send_failure(chat, "Failed to switch session", exc)
            return
        self._log_chat_event(chat, "telegram.session.switched", session_id=target.id)
        await self._send_message(
            chat.chat_id,
            "\n".join(
                [
                    "Switched to session",
                    "",
                    f"Number: {number}",
                    f"Title: {target.title or 'Untitled'}",
                    f"Session ID: {target.id}",
                    "",
                    "View in opencode web:",
                    self._gateway.session_web_url(target.id, target.project_id),
                ]
            ),
        )

    async def _handle_reset(self, chat: ChatSession, _args: str) -> None:
        if self._registry.is_in_flight(chat.chat_id):
            await self._send_message(chat.chat_id, BUSY_TEXT)
            return
        try:
            result = await self._gateway.reset_group(chat)
        except Exception as exc:
            await self._send_failure(chat, "Failed to reset session group", exc)
            return
        await self._send_message(
            chat.chat_id,
            "\n".join(
                [
                    "✅ Session group reset",
                    "",
                    f"Root session: {result.root_session_id or 'none'}",
                    f"Deleted sessions: {result.deleted_count}",
                    f"New session: {result.new_session_id}",
                    "",
                    "Starting fresh conversation.",
                ]
            ),
        )

    async def _handle_reset_child(self, chat: ChatSession, _args: str) -> None:
        if self._registry.is_in_flight(chat.chat_id):
            await self._send_message(chat.chat_id, BUSY_TEXT)
            return
        try:
            result = await self._gateway.reset_child(chat)
        except SessionTreeError as exc:
            await self._send_message(chat.chat_id, f"⚠️ {exc}")
            return
        except Exception as exc:
            await self._send_failure(chat, "Failed to reset child session", exc)
            return
        await self._send_message(
            chat.chat_id,
            "\n".join(
                [
                    "✅ Child session deleted",
                    "",
                    f"Deleted: {result.deleted_session_id}",
                    f"Back to parent: {result.parent_session_id}",
                ]
            ),
        )

    async def _remote_health_text(self) -> str:
        try:
            payload = await self._client.health()
        except Exception as exc:
            return f"❌ Unreachable ({exc.__class__.__name__})"
        if payload.get("healthy") is False:
            return "⚠️ Unhealthy"
        version = payload.get("version")
        return f"✅ Connected ({version})" if version else "✅ Connected"

    async def _handle_status(self, chat: ChatSession, _args: str) -> None:
        gateway_status = await self._remote_health_text()
        uptime = format_uptime(time.monotonic() - self._started_at)
        await self._send_message(
            chat.chat_id,
            "\n".join(
                [
                    "📊 Bot Status",
                    "",
                    f"Session: {chat.remote_session_id or 'none'}",
                    f"Agent: {chat.current_agent}",
                    f"Working Dir: {chat.working_directory}",
                    f"Gateway: {gateway_status}",
                    f"Uptime: {uptime}",
                    f"Active chats: {len(self._registry)}",
                    "",
                    f"Chat created: {format_updated(chat.created_at)}",
                    f"Last activity: {format_updated(chat.last_activity)}",
                ]
            ),
        )
