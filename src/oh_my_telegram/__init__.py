"""Relay Telegram chats to OpenCode agent sessions."""

__version__ = "0.3.0"
