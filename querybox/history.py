"""
Suggestion data kept in the Local Store.

Keys
────
recentSearches       list[str]             newest first, at most 10
historyLinks         list[{title,url,ts}]  newest first, unique by url, at most 100
suggestionStats      {key: UsageStat}      keyed by candidate key (url:/text:)
suggestionBlocklist  list[str]             "host:<domain>" or "text:<phrase>"
speedDials           {group: [{title,url}]}  user bookmarks, read-only here

Malformed persisted values read back as empty.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from pydantic import ValidationError

from querybox.categorizer import hostname
from querybox.models import HistoryLink, SuggestionCandidate, UsageStat

if TYPE_CHECKING:
    from querybox.store import LocalStore

logger = logging.getLogger(__name__)

RECENTS_KEY = "recentSearches"
HISTORY_KEY = "historyLinks"
STATS_KEY = "suggestionStats"
BLOCKLIST_KEY = "suggestionBlocklist"
SPEED_DIALS_KEY = "speedDials"

MAX_RECENTS = 10
MAX_HISTORY = 100


def _as_list(value: object) -> list:
    return value if isinstance(value, list) else []


# ── Recent searches ────────────────────────────────────────────────────────


def get_recent_searches(store: LocalStore) -> list[str]:
    """Return persisted recent searches, newest first."""
    return [str(s) for s in _as_list(store.get(RECENTS_KEY)) if s]


def add_recent_search(store: LocalStore, query: str) -> list[str]:
    """Move *query* to the front of the recents list and persist it."""
    recents = [query] + [s for s in get_recent_searches(store) if s != query]
    recents = recents[:MAX_RECENTS]
    store.set(RECENTS_KEY, recents)
    return recents


def remove_recent_search(store: LocalStore, query: str) -> None:
    """Drop every recent search equal to *query*, ignoring case."""
    target = query.lower()
    recents = [s for s in get_recent_searches(store) if s.lower() != target]
    store.set(RECENTS_KEY, recents)


# ── Browsing history ───────────────────────────────────────────────────────


def get_history_links(store: LocalStore) -> list[HistoryLink]:
    """Return cached browsing-history entries, newest first."""
    links: list[HistoryLink] = []
    for raw in _as_list(store.get(HISTORY_KEY)):
        try:
            links.append(HistoryLink.model_validate(raw))
        except ValidationError as exc:
            logger.warning("Skipping corrupt history link %r: %s", raw, exc)
    return links


def add_history_link(store: LocalStore, title: str, url: str) -> HistoryLink:
    """Record a visit to *url*, replacing any earlier entry for it."""
    item = HistoryLink(title=title or url, url=url, ts=time.time())
    rest = [link for link in get_history_links(store) if link.url != url]
    links = [item, *rest][:MAX_HISTORY]
    store.set(HISTORY_KEY, [link.model_dump() for link in links])
    return item


def remove_history_link(store: LocalStore, url: str) -> None:
    links = [link for link in get_history_links(store) if link.url != url]
    store.set(HISTORY_KEY, [link.model_dump() for link in links])


# ── Usage statistics ───────────────────────────────────────────────────────


def get_usage_stats(store: LocalStore) -> dict[str, UsageStat]:
    """Return usage statistics keyed by candidate key."""
    raw = store.get(STATS_KEY)
    if not isinstance(raw, dict):
        return {}
    stats: dict[str, UsageStat] = {}
    for key, value in raw.items():
        try:
            stats[key] = UsageStat.model_validate(value)
        except ValidationError:
            logger.warning("Skipping corrupt usage stat for key=%r", key)
    return stats


def record_usage(store: LocalStore, key: str, now: float | None = None) -> UsageStat:
    """Increment the selection count for *key* and stamp it with *now*."""
    stats = get_usage_stats(store)
    current = stats.get(key, UsageStat())
    updated = UsageStat(
        count=current.count + 1,
        last_used_at=time.time() if now is None else now,
    )
    stats[key] = updated
    store.set(STATS_KEY, {k: v.model_dump() for k, v in stats.items()})
    return updated


def remove_usage(store: LocalStore, key: str) -> bool:
    """Forget the statistics for *key*. Returns True if any existed."""
    stats = get_usage_stats(store)
    if key not in stats:
        return False
    del stats[key]
    store.set(STATS_KEY, {k: v.model_dump() for k, v in stats.items()})
    return True


# ── Blocklist ──────────────────────────────────────────────────────────────


def blocklist_key(candidate: SuggestionCandidate) -> str:
    """Return the blocklist entry that hides *candidate*.

    URL candidates are hidden by host, search terms by their trimmed,
    lowercased text.
    """
    if candidate.is_url:
        return f"host:{hostname(candidate.url or '')}"
    return f"text:{candidate.text.strip().lower()}"


def get_blocklist(store: LocalStore) -> set[str]:
    return {str(entry) for entry in _as_list(store.get(BLOCKLIST_KEY)) if entry}


def add_to_blocklist(store: LocalStore, candidate: SuggestionCandidate) -> str:
    """Persist a blocklist entry for *candidate* and return it."""
    entry = blocklist_key(candidate)
    entries = get_blocklist(store)
    entries.add(entry)
    store.set(BLOCKLIST_KEY, sorted(entries))
    logger.info("Blocked suggestion entry=%r", entry)
    return entry


# ── Speed dials ────────────────────────────────────────────────────────────


def get_speed_dials(store: LocalStore) -> list[tuple[str, str]]:
    """Return ``(title, url)`` pairs for every bookmarked speed dial."""
    raw = store.get(SPEED_DIALS_KEY)
    if not isinstance(raw, dict):
        return []
    dials: list[tuple[str, str]] = []
    for group in raw.values():
        for tile in _as_list(group):
            if isinstance(tile, dict) and tile.get("url"):
                url = str(tile["url"])
                dials.append((str(tile.get("title") or hostname(url) or url), url))
    return dials
