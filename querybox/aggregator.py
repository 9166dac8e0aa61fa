"""Suggestion aggregation and ranking.

Responsibilities:
- Source candidates from each stream (typed echo, recents, history, curated, remote)
- Gate them on prefix match and minimum length
- Deduplicate by normalised key, first occurrence wins
- Drop blocklisted candidates
- Score, sort, cap (optionally interleaving URLs and search terms)
- Pick the inline "ghost" completion

Scoring (higher wins)
─────────────────────
base        URL 1000, search term 900
closeness   URL: host == q +200, host prefix +150, title prefix +110, path prefix +70
            search term: text == q +130, prefix +100
source      popular +20, recent +10, history −20 (+80 in the active workspace)
usage       12·log10(count+1) + max(0, 36 − hours since last use)

Everything here is a pure function of its inputs so ranking is deterministic
for a fixed store snapshot, remote response and clock.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Optional

from querybox.categorizer import classify_url, hostname, url_path
from querybox.history import blocklist_key
from querybox.models import (
    CandidateKind,
    CandidateSource,
    HistoryLink,
    SuggestionCandidate,
    UsageStat,
)

logger = logging.getLogger(__name__)

#: Output cap when the compact list is requested.
SMALL_CAP = 7
#: Output cap otherwise.
SOFT_CAP = 48

#: Curated URLs offered when the query prefixes their title or host.
POPULAR_SITES: list[tuple[str, str]] = [
    ("youtube.com", "https://www.youtube.com"),
    ("gmail.com", "https://mail.google.com"),
    ("github.com", "https://github.com"),
    ("reddit.com", "https://www.reddit.com"),
    ("twitter.com", "https://twitter.com"),
    ("x.com", "https://x.com"),
    ("facebook.com", "https://facebook.com"),
    ("google.com", "https://www.google.com"),
    ("drive.google.com", "https://drive.google.com"),
    ("docs.google.com", "https://docs.google.com"),
    ("calendar.google.com", "https://calendar.google.com"),
    ("amazon.com", "https://www.amazon.com"),
    ("netflix.com", "https://www.netflix.com"),
    ("stackoverflow.com", "https://stackoverflow.com"),
    ("openai.com", "https://openai.com"),
    ("wikipedia.org", "https://wikipedia.org"),
]

_MAX_POPULAR = 8
_MAX_RECENT = 8
_MAX_HISTORY = 20

_BASE_SCORE = {CandidateKind.URL: 1000.0, CandidateKind.SEARCH_TERM: 900.0}
_SOURCE_BONUS = {
    CandidateSource.POPULAR: 20.0,
    CandidateSource.RECENT: 10.0,
    CandidateSource.HISTORY: -20.0,
}
_WORKSPACE_BONUS = 80.0
_FREQUENCY_WEIGHT = 12.0
_RECENCY_WINDOW_HOURS = 36.0


def min_length(query: str) -> int:
    """Shortest candidate text worth showing for *query*.

    Examples:
        >>> min_length("g")
        3
        >>> min_length("git")
        4
    """
    return max(3, len(query.strip()) + 1)


# ── Candidate sourcing ─────────────────────────────────────────────────────────


def _matches_url(text: str, url: str, q: str) -> bool:
    return text.lower().startswith(q) or hostname(url).startswith(q)


def typed_candidates(query: str) -> list[SuggestionCandidate]:
    """Echo the literal query as a search term when it is long enough.

    The echo is held to the same minimum length as every other candidate,
    so a query never clears it on its own (``"git"`` needs 4 characters).
    """
    text = query.strip()
    if not text or len(text) < min_length(query):
        return []
    return [SuggestionCandidate(
        kind=CandidateKind.SEARCH_TERM, text=text, source=CandidateSource.TYPED,
    )]


def recent_candidates(recents: Iterable[str], query: str) -> list[SuggestionCandidate]:
    """Recent searches with *query* as a case-insensitive prefix."""
    q = query.strip().lower()
    n = min_length(query)
    matches = [s for s in recents if s.lower().startswith(q) and len(s) >= n]
    return [
        SuggestionCandidate(kind=CandidateKind.SEARCH_TERM, text=s, source=CandidateSource.RECENT)
        for s in matches[:_MAX_RECENT]
    ]


def history_candidates(links: Iterable[HistoryLink], query: str) -> list[SuggestionCandidate]:
    """History entries whose title or host has *query* as a prefix."""
    q = query.strip().lower()
    n = min_length(query)
    out: list[SuggestionCandidate] = []
    for link in links:
        text = link.title or link.url
        if not link.url or len(text) < n or not _matches_url(link.title, link.url, q):
            continue
        out.append(SuggestionCandidate(
            kind=CandidateKind.URL, text=text, url=link.url, source=CandidateSource.HISTORY,
        ))
        if len(out) >= _MAX_HISTORY:
            break
    return out


def popular_candidates(
    sites: Iterable[tuple[str, str]],
    query: str,
) -> list[SuggestionCandidate]:
    """Curated ``(title, url)`` pairs whose title or host has *query* as a prefix."""
    q = query.strip().lower()
    seen: set[str] = set()
    out: list[SuggestionCandidate] = []
    for title, url in sites:
        if not url or not _matches_url(title, url, q):
            continue
        key = url.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(SuggestionCandidate(
            kind=CandidateKind.URL, text=title or url, url=url, source=CandidateSource.POPULAR,
        ))
        if len(out) >= _MAX_POPULAR:
            break
    return out


def remote_candidates(completions: Iterable[str], query: str) -> list[SuggestionCandidate]:
    """Remote completions that extend *query*."""
    q = query.strip().lower()
    n = min_length(query)
    return [
        SuggestionCandidate(kind=CandidateKind.SEARCH_TERM, text=s, source=CandidateSource.REMOTE)
        for s in completions
        if s.lower().startswith(q) and len(s) >= n
    ]


# ── Filtering ──────────────────────────────────────────────────────────────────


def deduplicate(candidates: Iterable[SuggestionCandidate]) -> list[SuggestionCandidate]:
    """Drop candidates whose normalised key was already seen; first one wins."""
    seen: set[str] = set()
    unique: list[SuggestionCandidate] = []
    for candidate in candidates:
        if candidate.key in seen:
            continue
        seen.add(candidate.key)
        unique.append(candidate)
    return unique


def is_relevant(candidate: SuggestionCandidate, query: str) -> bool:
    """Prefix and minimum-length gate applied to every merged candidate."""
    q = query.strip().lower()
    if not candidate.text.strip() or len(candidate.text) < min_length(query):
        return False
    if candidate.is_url:
        return _matches_url(candidate.text, candidate.url or "", q)
    return candidate.text.lower().startswith(q)


def filter_blocked(
    candidates: Iterable[SuggestionCandidate],
    blocklist: set[str],
) -> list[SuggestionCandidate]:
    """Remove every candidate hidden by a blocklist entry."""
    if not blocklist:
        return list(candidates)
    return [c for c in candidates if blocklist_key(c) not in blocklist]


# ── Scoring ────────────────────────────────────────────────────────────────────


def url_closeness(url: str, text: str, query: str) -> float:
    q = query.strip().lower()
    if not q:
        return 0.0
    host = hostname(url)
    if host == q:
        return 200.0
    if host.startswith(q):
        return 150.0
    if text.lower().startswith(q):
        return 110.0
    path = url_path(url)
    if path.startswith("/" + q) or path.startswith(q):
        return 70.0
    return 0.0


def text_closeness(text: str, query: str) -> float:
    q = query.strip().lower()
    if not q:
        return 0.0
    t = text.lower()
    if t == q:
        return 130.0
    if t.startswith(q):
        return 100.0
    return 0.0


def usage_bonus(stat: Optional[UsageStat], now: float) -> float:
    """Frequency plus linear 36-hour recency bonus for a selected candidate."""
    if stat is None:
        return 0.0
    frequency = math.log10(stat.count + 1) * _FREQUENCY_WEIGHT
    hours = max(0.0, (now - stat.last_used_at) / 3600.0)
    return frequency + max(0.0, _RECENCY_WINDOW_HOURS - hours)


def score(
    candidate: SuggestionCandidate,
    query: str,
    stats: Mapping[str, UsageStat],
    active_workspace: Optional[str],
    now: float,
) -> float:
    value = _BASE_SCORE[candidate.kind]
    if candidate.is_url:
        value += url_closeness(candidate.url or "", candidate.text, query)
    else:
        value += text_closeness(candidate.text, query)

    value += _SOURCE_BONUS.get(candidate.source, 0.0)
    if candidate.source is CandidateSource.HISTORY and active_workspace:
        workspace = classify_url(candidate.url or "")
        if workspace is not None and workspace.value == active_workspace:
            value += _WORKSPACE_BONUS

    return value + usage_bonus(stats.get(candidate.key), now)


def rank_candidates(
    candidates: Sequence[SuggestionCandidate],
    query: str,
    stats: Mapping[str, UsageStat],
    active_workspace: Optional[str],
    now: float,
) -> list[SuggestionCandidate]:
    """Score and sort: descending score, URLs before search terms on ties,
    then insertion order."""
    scored = [
        c.model_copy(update={"score": score(c, query, stats, active_workspace, now)})
        for c in candidates
    ]
    return sorted(scored, key=lambda c: (-c.score, 0 if c.is_url else 1))


# ── Capping ────────────────────────────────────────────────────────────────────


def interleave(ranked: Sequence[SuggestionCandidate], max_count: int) -> list[SuggestionCandidate]:
    """Alternate URL and search-term streams, then back-fill from leftovers.

    Examples:
        Ranked ``[u1, u2, u3, s1]`` with ``max_count=3`` gives ``[u1, s1, u2]``.
    """
    urls = [c for c in ranked if c.is_url]
    searches = [c for c in ranked if not c.is_url]
    out: list[SuggestionCandidate] = []
    i = j = 0
    while len(out) < max_count and (i < len(urls) or j < len(searches)):
        if i < len(urls):
            out.append(urls[i])
            i += 1
        if len(out) >= max_count:
            break
        if j < len(searches):
            out.append(searches[j])
            j += 1
    for rest in [*urls[i:], *searches[j:]]:
        if len(out) >= max_count:
            break
        out.append(rest)
    return out


def cap_results(
    ranked: Sequence[SuggestionCandidate],
    cap_small: bool,
    small_cap: int = SMALL_CAP,
    soft_cap: int = SOFT_CAP,
) -> list[SuggestionCandidate]:
    if cap_small:
        return interleave(ranked, small_cap)
    return list(ranked[:soft_cap])


# ── Ghost completion ───────────────────────────────────────────────────────────


def ghost_completion(query: str, ranked: Sequence[SuggestionCandidate]) -> Optional[str]:
    """Inline type-ahead text for *query*, or None.

    Uses the highest-ranked candidate whose title (or host, for URLs) strictly
    extends the query; the user's typed characters are kept as typed.

    Examples:
        Query ``"git"`` with a ranked ``"GitHub"`` title gives ``"gitHub"``.
    """
    typed = query.strip()
    q = typed.lower()
    if not q:
        return None
    for candidate in ranked:
        options = [candidate.text]
        if candidate.is_url:
            options.append(hostname(candidate.url or ""))
        for text in options:
            if len(text) > len(q) and text.lower().startswith(q):
                return typed + text[len(q):]
    return None


# ── Public pipeline ────────────────────────────────────────────────────────────


def aggregate(
    query: str,
    *,
    recents: Iterable[str] = (),
    history: Iterable[HistoryLink] = (),
    popular: Iterable[tuple[str, str]] = (),
    remote: Iterable[str] = (),
    blocklist: Optional[set[str]] = None,
    stats: Optional[Mapping[str, UsageStat]] = None,
    active_workspace: Optional[str] = None,
    allow_urls: bool = True,
    now: float = 0.0,
) -> list[SuggestionCandidate]:
    """Full pipeline: source → dedup → gate → blocklist → score → sort.

    Capping and edge placement are left to the caller.

    Returns:
        Every surviving candidate, most relevant first.
    """
    streams: list[SuggestionCandidate] = [
        *typed_candidates(query),
        *recent_candidates(recents, query),
    ]
    if allow_urls:
        streams += history_candidates(history, query)
        streams += popular_candidates(popular, query)
    streams += remote_candidates(remote, query)

    unique = [c for c in deduplicate(streams) if is_relevant(c, query)]
    visible = filter_blocked(unique, blocklist or set())
    ranked = rank_candidates(visible, query, stats or {}, active_workspace, now)

    logger.debug("Aggregated %d candidates (%d after blocklist) for %r",
                 len(unique), len(visible), query)
    return ranked
