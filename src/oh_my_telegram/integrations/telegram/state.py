from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

Clock = Callable[[], float]

IDLE_TTL_SECONDS = 60 * 60


def session_key(prefix: str, chat_id: int) -> str:
    """Deterministic title prefix identifying the remote sessions of a chat."""
    return f"{prefix}-{chat_id}"


@dataclass
class ChatSession:
    chat_id: int
    session_key: str
    current_agent: str
    working_directory: str
    created_at: float
    last_activity: float
    remote_session_id: Optional[str] = None
    last_user_message: Optional[str] = None

    def touch(self, now: float) -> None:
        self.last_activity = now


class SessionRegistry:
    """In-memory chat state: one ChatSession per chat plus in-flight markers.

    Nothing here is persisted; a swept or restarted chat re-discovers its remote
    session by title prefix.
    """

    def __init__(
        self,
        *,
        session_prefix: str,
        default_agent: str,
        working_directory: str,
        clock: Clock = time.time,
    ) -> None:
        self._session_prefix = session_prefix
        self._default_agent = default_agent
        self._working_directory = working_directory
        self._clock = clock
        self._sessions: dict[int, ChatSession] = {}
        self._in_flight: set[int] = set()

    @property
    def default_working_directory(self) -> str:
        return self._working_directory

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._sessions

    def get(self, chat_id: int) -> Optional[ChatSession]:
        return self._sessions.get(chat_id)

    def sessions(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def get_or_create(self, chat_id: int) -> ChatSession:
        now = self._clock()
        session = self._sessions.get(chat_id)
        if session is None:
            session = ChatSession(
                chat_id=chat_id,
                session_key=session_key(self._session_prefix, chat_id),
                current_agent=self._default_agent,
                working_directory=self._working_directory,
                created_at=now,
                last_activity=now,
            )
            self._sessions[chat_id] = session
        session.touch(now)
        return session

    def sweep_idle(self, max_age_seconds: float = IDLE_TTL_SECONDS) -> list[int]:
        """Drop chats idle for longer than max_age_seconds; returns their ids.

        Chats with an invocation in flight are kept.
        """
        now = self._clock()
        removed: list[int] = []
        for chat_id, session in list(self._sessions.items()):
            if chat_id in self._in_flight:
                continue
            if now - session.last_activity > max_age_seconds:
                del self._sessions[chat_id]
                removed.append(chat_id)
        return removed

    def is_in_flight(self, chat_id: int) -> bool:
        return chat_id in self._in_flight

    def try_begin(self, chat_id: int) -> bool:
        """Mark an invocation as in flight; False when one already is."""
        if chat_id in self._in_flight:
            return False
        self._in_flight.add(chat_id)
        return True

    def finish(self, chat_id: int) -> None:
        self._in_flight.discard(chat_id)
