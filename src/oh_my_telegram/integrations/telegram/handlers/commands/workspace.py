from __future__ import annotations

import os
from typing import Any, Optional

from ...adapter import (
    InlineButton,
    build_inline_keyboard,
    encode_agent_callback,
    encode_menu_callback,
)
from ...constants import DEFAULT_AGENT_LABELS
from ...state import ChatSession

_MENU_LABELS = (
    ("help", "ℹ️ Help"),
    ("status", "📊 Status"),
    ("new", "🆕 New"),
    ("list", "📋 List"),
    ("reset", "🔄 Reset"),
)

_COMMAND_LINES = [
    "/status - Show session status",
    "/new - Create new session",
    "/list - List all sessions",
    "/switch <number> - Switch to session by number",
    "/cd [path] - Show/change working directory",
    "/reset - Delete the session group and start fresh",
    "/reset-child - Delete the current child session",
]


def agent_button_label(agent: str) -> str:
    emoji, _description = DEFAULT_AGENT_LABELS.get(agent, ("🤖", ""))
    return f"{emoji} {agent.capitalize()}"


def resolve_directory(current: str, path: str) -> str:
    expanded = os.path.expanduser(path.strip())
    if not os.path.isabs(expanded):
        expanded = os.path.join(current, expanded)
    return os.path.normpath(expanded)


class WorkspaceCommands:
    def _start_keyboard(self) -> Optional[dict[str, Any]]:
        if not self._config.keyboard_enabled:
            return None
        rows = self._config.keyboard_rows
        if rows:
            return {"inline_keyboard": rows}
        buttons = [
            InlineButton(agent_button_label(agent), encode_agent_callback(agent))
            for agent in self._config.opencode.agents
        ]
        buttons.extend(
            InlineButton(label, encode_menu_callback(action))
            for action, label in _MENU_LABELS
        )
        return build_inline_keyboard(
            [buttons[index : index + 3] for index in range(0, len(buttons), 3)]
        )

    def _start_text(self) -> str:
        lines = ["🤖 oh-my-telegram - OpenCode on Telegram", "", "Commands:"]
        lines.extend(
            f"/{agent} [message] - Use {agent} agent"
            for agent in self._config.opencode.agents
        )
        lines.extend(_COMMAND_LINES)
        lines.extend(
            [
                "",
                f"Web UI: {self._config.opencode.web_url}/",
                "",
                "Or just send a message to use the default agent.",
            ]
        )
        return "\n".join(lines)

    def _help_text(self) -> str:
        lines = [
            "📖 Help",
            "",
            "Send any message to execute OpenCode agents.",
            "",
            "Available agents:",
        ]
        for agent in self._config.opencode.agents:
            _emoji, description = DEFAULT_AGENT_LABELS.get(agent, ("", ""))
            lines.append(f"• {agent} - {description}" if description else f"• {agent}")
        lines.extend(["", "Commands:", *_COMMAND_LINES])
        lines.extend(
            [
                "",
                "Web UI:",
                f"opencode web: {self._config.opencode.web_url}/",
                "",
                "Example:",
                f"/{self._config.opencode.agents[0]} explain this code",
                "refactor this function",
            ]
        )
        return "\n".join(lines)

    async def _handle_start(self, chat: ChatSession, _args: str) -> None:
        await self._send_message(
            chat.chat_id, self._start_text(), reply_markup=self._start_keyboard()
        )

    async def _handle_help(self, chat: ChatSession, _args: str) -> None:
        await self._send_message(chat.chat_id, self._help_text())

    async def _handle_cd(self, chat: ChatSession, args: str) -> None:
        if not args.strip():
            await self._send_message(
                chat.chat_id,
                "\n".join(
                    [
                        "📁 Current Working Directory",
                        "",
                        chat.working_directory,
                        "",
                        "Use /cd <path> to change directory.",
                    ]
                ),
            )
            return
        new_path = resolve_directory(chat.working_directory, args)
        chat.working_directory = new_path
        # Sessions are scoped per directory; the next message resolves a new one.
        self._gateway.bind(chat, None)
        self._log_chat_event(
            chat, "telegram.workspace.changed", working_directory=new_path
        )
        await self._send_message(
            chat.chat_id,
            "\n".join(
                [
                    "✅ Working directory changed",
                    "",
                    f"New path: {new_path}",
                    "",
                    "All subsequent operations will use this directory.",
                ]
            ),
        )
