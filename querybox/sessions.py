"""
Chat Session Store.

Keys
────
aiChatSessions   list[ChatSession]  only sessions with at least one message
aiChatActiveId   str                id of the active session

Every message mutation bumps ``updated_at`` and re-derives the title unless
the user renamed the session. Persistence is best effort: a failed write is
logged and the in-memory state stays authoritative. Streamed content updates
are written at most once per ``save_interval``; ``flush`` writes what is left.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

from querybox.models import DEFAULT_CHAT_TITLE, ChatMessage, ChatRole, ChatSession, WebResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from querybox.store import LocalStore

logger = logging.getLogger(__name__)

SESSIONS_KEY = "aiChatSessions"
ACTIVE_KEY = "aiChatActiveId"

TITLE_MAX_CHARS = 60


def derive_title(messages: Iterable[ChatMessage]) -> str:
    """Title from the first line of the first non-empty user message.

    Examples:
        >>> derive_title([ChatMessage(role=ChatRole.USER, content="\\nHello there\\nmore")])
        'Hello there'
        >>> derive_title([])
        'New Chat'
    """
    for message in messages:
        if message.role is not ChatRole.USER or not message.content.strip():
            continue
        line = next(ln.strip() for ln in message.content.splitlines() if ln.strip())
        if len(line) <= TITLE_MAX_CHARS:
            return line
        return line[:TITLE_MAX_CHARS - 3] + "…"
    return DEFAULT_CHAT_TITLE


class ChatSessionStore:
    """In-memory chat sessions mirrored to the Local Store.

    Mutating methods take an optional ``session_id``; without one they act on
    the active session.
    """

    def __init__(self, store: LocalStore, save_interval: float = 1.0) -> None:
        self.store = store
        self.save_interval = save_interval
        self._last_save = 0.0
        self._dirty = False
        self._sessions: dict[str, ChatSession] = {}
        self._active_id: Optional[str] = None
        self._load()

    # ── Persistence ────────────────────────────────────────────────────────

    def _load(self) -> None:
        raw = self.store.get(SESSIONS_KEY)
        for item in raw if isinstance(raw, list) else []:
            try:
                session = ChatSession.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping corrupt chat session: %s", exc)
                continue
            self._sessions[session.id] = session

        active = self.store.get(ACTIVE_KEY)
        if isinstance(active, str) and active in self._sessions:
            self._active_id = active
        elif self._sessions:
            self._active_id = self.sessions[0].id
        else:
            self.create()
        logger.info("Loaded %d chat session(s)", len(self._sessions))

    def _save(self) -> None:
        self._last_save = time.monotonic()
        self._dirty = False
        payload = [s.model_dump(mode="json") for s in self.sessions if s.messages]
        try:
            self.store.set(SESSIONS_KEY, payload)
            if self._active_id:
                self.store.set(ACTIVE_KEY, self._active_id)
        except sqlite3.Error as exc:
            logger.warning("Could not persist chat sessions: %s", exc)

    def _touch(self, session: ChatSession, throttle: bool = False) -> None:
        session.updated_at = datetime.now(timezone.utc)
        if not session.custom_title:
            session.title = derive_title(session.messages)
        if throttle and time.monotonic() - self._last_save < self.save_interval:
            self._dirty = True
            return
        self._save()

    def flush(self) -> None:
        """Write any throttled changes now."""
        if self._dirty:
            self._save()

    # ── Sessions ───────────────────────────────────────────────────────────

    @property
    def sessions(self) -> list[ChatSession]:
        """All sessions, pinned first, then most recently updated."""
        return sorted(
            self._sessions.values(),
            key=lambda s: (not s.pinned, -s.updated_at.timestamp()),
        )

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def active(self) -> ChatSession:
        if self._active_id not in self._sessions:
            return self.create()
        return self._sessions[self._active_id]

    def get(self, session_id: Optional[str] = None) -> ChatSession:
        """Return the session with *session_id* (default: active).

        Raises:
            KeyError: If no such session exists.
        """
        if session_id is None:
            return self.active
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown chat session: {session_id}") from None

    def create(self) -> ChatSession:
        """Start an empty session and make it active."""
        session = ChatSession()
        self._sessions[session.id] = session
        self._active_id = session.id
        self._save()
        logger.debug("Created chat session %s", session.id)
        return session

    def select(self, session_id: str) -> ChatSession:
        session = self.get(session_id)
        self._active_id = session.id
        self._save()
        return session

    def delete(self, session_id: str) -> bool:
        """Delete a session. Deleting the active one activates the next, or a new one."""
        if self._sessions.pop(session_id, None) is None:
            return False
        if self._active_id == session_id:
            remaining = self.sessions
            if remaining:
                self._active_id = remaining[0].id
            else:
                self.create()
        self._save()
        logger.info("Deleted chat session %s", session_id)
        return True

    def toggle_pin(self, session_id: str) -> bool:
        session = self.get(session_id)
        session.pinned = not session.pinned
        self._save()
        return session.pinned

    def rename(self, session_id: str, title: str) -> ChatSession:
        """Set an explicit title; a blank or placeholder title re-enables derivation."""
        session = self.get(session_id)
        title = title.strip()
        session.custom_title = bool(title) and title != DEFAULT_CHAT_TITLE
        session.title = title if session.custom_title else derive_title(session.messages)
        self._save()
        return session

    def set_web(self, session_id: str, enabled: bool) -> None:
        self.get(session_id).web = enabled
        self._save()

    # ── Messages ───────────────────────────────────────────────────────────

    def find(self, message_id: str, session_id: Optional[str] = None) -> Optional[ChatMessage]:
        return next((m for m in self.get(session_id).messages if m.id == message_id), None)

    def _message(self, message_id: str, session_id: Optional[str]) -> ChatMessage:
        message = self.find(message_id, session_id)
        if message is None:
            raise KeyError(f"Unknown chat message: {message_id}")
        return message

    def append(self, message: ChatMessage, session_id: Optional[str] = None) -> ChatMessage:
        session = self.get(session_id)
        session.messages.append(message)
        self._touch(session)
        return message

    def update_content(self, message_id: str, delta: str, session_id: Optional[str] = None) -> ChatMessage:
        """Append *delta* to a message's content. Content never shrinks."""
        message = self._message(message_id, session_id)
        message.content += delta
        self._touch(self.get(session_id), throttle=True)
        return message

    def attach_panels(
        self,
        message_id: str,
        results: list[WebResult],
        session_id: Optional[str] = None,
    ) -> ChatMessage:
        message = self._message(message_id, session_id)
        message.panels = list(results)
        self._touch(self.get(session_id))
        return message

    def truncate_before(self, message_id: str, session_id: Optional[str] = None) -> list[ChatMessage]:
        """Drop *message_id* and everything after it. Returns the removed messages."""
        session = self.get(session_id)
        index = next((i for i, m in enumerate(session.messages) if m.id == message_id), None)
        if index is None:
            raise KeyError(f"Unknown chat message: {message_id}")
        removed = session.messages[index:]
        session.messages = session.messages[:index]
        self._touch(session)
        return removed
