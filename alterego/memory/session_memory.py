"""Short-term conversational memory: one bounded message history per chat session."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

log = logging.getLogger(__name__)

MAX_MESSAGES_PER_SESSION = 20
GROUP_CHAT_TYPES = frozenset({"group", "supergroup"})


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionKind(str, Enum):
    PRIVATE = "private"
    GROUP = "group"


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    content: str
    timestamp: int
    sender_id: int | None = None
    sender_name: str | None = None


@dataclass
class Session:
    """History for one private user/chat pair or one whole group chat.

    Private sessions carry the user identity; group sessions attribute each
    user message to its sender instead.
    """

    key: str
    kind: SessionKind
    chat_id: int
    messages: deque[ConversationMessage]
    created_at: int
    updated_at: int
    user_id: int | None = None
    user_name: str = ""

    @property
    def is_group(self) -> bool:
        return self.kind is SessionKind.GROUP


def private_session_key(user_id: int, chat_id: int) -> str:
    return f"{user_id}@{chat_id}"


def group_session_key(chat_id: int) -> str:
    return f"group@{chat_id}"


def is_group_chat(chat_type: str | None) -> bool:
    return (chat_type or "") in GROUP_CHAT_TYPES


def to_prompt_messages(session: Session) -> list[dict[str, str]]:
    """Render a session as role/content pairs for the completion API."""
    out: list[dict[str, str]] = []
    for msg in session.messages:
        content = msg.content
        if session.is_group and msg.role == "user":
            content = f"[{msg.sender_name or 'User'}]: {content}"
        out.append({"role": msg.role, "content": content})
    return out


@dataclass
class SessionStore:
    capacity: int = MAX_MESSAGES_PER_SESSION
    now_ms: Callable[[], int] = _now_ms
    _sessions: dict[str, Session] = field(default_factory=dict)
    # The map is also read from the health server thread.
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _create(self, key: str, kind: SessionKind, chat_id: int, user_id: int | None, user_name: str) -> Session:
        now = self.now_ms()
        session = Session(
            key=key,
            kind=kind,
            chat_id=chat_id,
            messages=deque(maxlen=self.capacity),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            user_name=user_name,
        )
        self._sessions[key] = session
        return session

    def get_session(
        self,
        key: str,
        *,
        kind: SessionKind,
        chat_id: int,
        user_id: int | None = None,
        user_name: str = "",
    ) -> Session:
        """Return the session stored under ``key``, creating it on first use."""
        with self._lock:
            session = self._sessions.get(key)
            created = session is None
            if session is None:
                session = self._create(key, kind, chat_id, user_id, user_name)
        if created:
            if kind is SessionKind.GROUP:
                log.info("[MEMORY] Created new group chat session for group %s", chat_id)
            else:
                log.info("[MEMORY] Created new private chat session for %s (%s)", user_name, user_id)
        return session

    def get_private_session(self, user_id: int, user_name: str, chat_id: int) -> Session:
        return self.get_session(
            private_session_key(user_id, chat_id),
            kind=SessionKind.PRIVATE,
            chat_id=chat_id,
            user_id=user_id,
            user_name=user_name,
        )

    def get_group_session(self, chat_id: int) -> Session:
        return self.get_session(group_session_key(chat_id), kind=SessionKind.GROUP, chat_id=chat_id)

    def session_for(self, *, chat_type: str | None, chat_id: int, user_id: int, user_name: str) -> Session:
        """Groups share one session across members; private chats are per user and chat."""
        if is_group_chat(chat_type):
            return self.get_group_session(chat_id)
        return self.get_private_session(user_id, user_name, chat_id)

    def append_user_message(
        self,
        session: Session,
        content: str,
        *,
        sender_id: int | None = None,
        sender_name: str | None = None,
    ) -> Session:
        now = self.now_ms()
        if session.is_group:
            msg = ConversationMessage("user", content, now, sender_id=sender_id or 0, sender_name=sender_name or "User")
        else:
            msg = ConversationMessage("user", content, now)
        session.messages.append(msg)
        session.updated_at = now
        log.debug("[MEMORY] Added user message to %s. Total: %d", session.key, len(session.messages))
        return session

    def append_assistant_message(self, session: Session, content: str) -> Session:
        now = self.now_ms()
        session.messages.append(ConversationMessage("assistant", content, now))
        session.updated_at = now
        log.debug("[MEMORY] Added assistant message to %s. Total: %d", session.key, len(session.messages))
        return session

    def to_prompt_messages(self, session: Session) -> list[dict[str, str]]:
        return to_prompt_messages(session)

    def clear(self, session: Session) -> Session:
        session.messages.clear()
        session.updated_at = self.now_ms()
        return session

    def stats(self) -> dict[str, int]:
        with self._lock:
            sessions = list(self._sessions.values())
        return {
            "sessions_count": len(sessions),
            "total_messages": sum(len(s.messages) for s in sessions),
        }

    def prune_idle(self, max_idle_ms: int) -> int:
        cutoff = self.now_ms() - max_idle_ms
        with self._lock:
            stale = [key for key, session in self._sessions.items() if session.updated_at < cutoff]
            for key in stale:
                del self._sessions[key]
        if stale:
            log.info("[MEMORY] Cleaned up %d idle chat sessions", len(stale))
        return len(stale)
