from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from .....logging_utils import log_event
from ...adapter import TelegramAPIError
from ...constants import BUSY_TEXT, EMPTY_MESSAGE_TEXT, PARSE_MODE_HTML
from ...state import ChatSession

_PERSONA_RE = re.compile(r"^/(\w+)\s+")


def _compact_preview(text: str, limit: int = 50) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return compact[: limit - 3] + "..."


class ExecutionCommands:
    def _parse_persona(self, text: str) -> tuple[Optional[str], str]:
        match = _PERSONA_RE.match(text)
        if not match or match.group(1) not in self._config.opencode.agents:
            return None, text
        return match.group(1), text[match.end() :]

    def _with_directory_context(self, chat: ChatSession, text: str) -> str:
        if chat.working_directory == self._registry.default_working_directory:
            return text
        return f"[Working in: {chat.working_directory}]\n\n{text}"

    async def _handle_persona_switch(self, chat: ChatSession, agent: str) -> None:
        chat.current_agent = agent
        self._log_chat_event(chat, "telegram.agent.switched", agent=agent)
        await self._send_message(
            chat.chat_id,
            f"✅ Agent switched to: {agent}\n\nSend me a message to use the {agent} agent.",
        )

    async def _handle_text(self, chat: ChatSession, text: str) -> None:
        agent, content = self._parse_persona(text)
        if not content.strip():
            await self._send_message(chat.chat_id, EMPTY_MESSAGE_TEXT)
            return
        await self._begin_invocation(chat, content, agent=agent)

    async def _begin_invocation(
        self, chat: ChatSession, content: str, *, agent: Optional[str] = None
    ) -> bool:
        if not self._registry.try_begin(chat.chat_id):
            self._log_chat_event(chat, "telegram.invocation.busy")
            await self._send_message(chat.chat_id, BUSY_TEXT)
            return False
        if agent:
            chat.current_agent = agent
            self._log_chat_event(chat, "telegram.agent.switched", agent=agent)
        chat.last_user_message = content
        self._log_chat_event(
            chat,
            "telegram.invocation.started",
            agent=chat.current_agent,
            preview=_compact_preview(content),
        )
        try:
            self._spawn_task(self._run_invocation(chat, content))
        except Exception:
            self._registry.finish(chat.chat_id)
            raise
        return True

    async def _retry_last_message(self, chat: ChatSession) -> None:
        if not chat.last_user_message:
            await self._send_message(chat.chat_id, "⚠️ Nothing to retry yet.")
            return
        await self._begin_invocation(chat, chat.last_user_message)

    async def _run_invocation(self, chat: ChatSession, content: str) -> None:
        agent = chat.current_agent
        status = self._progress.create_task(chat.chat_id)
        stop = asyncio.Event()
        watcher: Optional[asyncio.Task] = None
        try:
            await status.start(agent)
            await self._gateway.ensure_session(chat)
            watcher = asyncio.create_task(self._notifier.watch(chat, stop))
            response = await self._gateway.prompt(
                chat, self._with_directory_context(chat, content), agent=agent
            )
            await status.complete()
            sent = await self._send_rendered(chat.chat_id, response)
            self._log_chat_event(
                chat,
                "telegram.invocation.completed",
                agent=agent,
                chunks=sent,
                chars=len(response),
            )
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.invocation.failed",
                chat_id=chat.chat_id,
                agent=agent,
                exc=exc,
            )
            await status.fail()
            await self._send_failure(chat, "Error", exc)
        finally:
            stop.set()
            if watcher is not None:
                await asyncio.gather(watcher, return_exceptions=True)
            self._registry.finish(chat.chat_id)

    async def _send_rendered(self, chat_id: int, markdown: str) -> int:
        sent = 0
        for chunk in self._renderer.render(markdown):
            if chunk.blank:
                continue
            try:
                await self._bot.send_message(
                    chat_id, chunk.text, parse_mode=PARSE_MODE_HTML
                )
            except TelegramAPIError as exc:
                # Markup rejected: fall back to the raw slice as plain text.
                log_event(
                    self._logger,
                    logging.WARNING,
                    "telegram.render.rejected",
                    chat_id=chat_id,
                    exc=exc,
                )
                await self._bot.send_message(chat_id, chunk.raw)
            sent += 1
        return sent
