"""
Pydantic models shared across the querybox core.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

#: Title given to sessions until a user message names them.
DEFAULT_CHAT_TITLE = "New Chat"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return an opaque unique token for sessions and messages."""
    return str(uuid.uuid4())


# ── Suggestions ────────────────────────────────────────────────────────────────


class CandidateKind(str, Enum):
    """What selecting a suggestion does: navigate, or run a search."""

    URL = "url"
    SEARCH_TERM = "search"


class CandidateSource(str, Enum):
    """The stream a suggestion candidate came from."""

    TYPED = "typed"
    RECENT = "recent"
    HISTORY = "history"
    POPULAR = "popular"
    REMOTE = "remote"


class SuggestionCandidate(BaseModel):
    """A single entry in the suggestion list.

    ``score`` is derived during ranking and never persisted.
    """

    kind: CandidateKind
    text: str
    url: Optional[str] = None
    source: CandidateSource
    score: float = 0.0

    @model_validator(mode="after")
    def _url_iff_url_kind(self) -> SuggestionCandidate:
        if self.kind is CandidateKind.URL and not self.url:
            raise ValueError("URL candidates must carry a non-empty url")
        if self.kind is CandidateKind.SEARCH_TERM and self.url:
            raise ValueError("search-term candidates must not carry a url")
        return self

    @property
    def is_url(self) -> bool:
        return self.kind is CandidateKind.URL

    @property
    def key(self) -> str:
        """Normalised identity used for dedup and usage statistics."""
        if self.is_url:
            return f"url:{(self.url or '').lower()}"
        return f"text:{self.text.lower()}"


class UsageStat(BaseModel):
    """Selection frequency for one candidate key."""

    count: int = 0
    #: Unix timestamp (seconds) of the most recent selection.
    last_used_at: float = 0.0


class HistoryLink(BaseModel):
    """A cached browsing-history entry."""

    title: str = ""
    url: str
    ts: float = 0.0


# ── Web search ─────────────────────────────────────────────────────────────────


class WebResult(BaseModel):
    """A single web source fetched to augment a prompt."""

    title: str
    url: str
    snippet: str = ""


# ── Chat ───────────────────────────────────────────────────────────────────────


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatMessage(BaseModel):
    """One message in a chat transcript.

    Assistant content grows while streaming; user content only changes through
    edit-and-resubmit.
    """

    id: str = Field(default_factory=new_id)
    role: ChatRole
    content: str = ""
    #: Web citations attached after a successful augmented answer.
    panels: Optional[list[WebResult]] = None


class ChatSession(BaseModel):
    """An ordered chat transcript with its bookkeeping."""

    id: str = Field(default_factory=new_id)
    title: str = DEFAULT_CHAT_TITLE
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    pinned: bool = False
    #: True once the user renamed the session; derived titles stop updating.
    custom_title: bool = False
    #: Web-augmentation flag used when this session resubmits an edit.
    web: bool = False
    messages: list[ChatMessage] = Field(default_factory=list)
