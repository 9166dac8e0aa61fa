"""Suggestion engine for the query box.

Wraps the pure ranking pipeline in ``aggregator`` with the I/O around it:

- reads a Local Store snapshot (recents, history, usage stats, blocklist, speed dials)
- races one remote autocomplete call against an explicit timeout
- keeps at most one remote call in flight (a newer query cancels the older one)
- applies results monotonically: a late answer for an old query is dropped
- records selections and hides suggestions, best effort

Remote failures, timeouts and store errors never escape ``rank``/``suggest``;
the caller just gets a shorter, local-only list.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from querybox import history as hist
from querybox.aggregator import (
    POPULAR_SITES,
    SMALL_CAP,
    SOFT_CAP,
    aggregate,
    cap_results,
    deduplicate,
    filter_blocked,
    ghost_completion,
    history_candidates,
    recent_candidates,
)
from querybox.gateway import ProviderConfig
from querybox.models import HistoryLink, SuggestionCandidate, UsageStat

if TYPE_CHECKING:
    from config.settings import Settings
    from querybox.gateway import AutocompleteGateway
    from querybox.store import LocalStore

logger = logging.getLogger(__name__)

#: Size of the local-only list shown while the remote call is in flight.
_IMMEDIATE_CAP = 10


@dataclass
class SuggestMode:
    """Per-request suggestion options.

    Attributes:
        provider: Remote autocomplete provider to ask.
        allow_urls: Offer URL candidates (history and curated sites).
        cap_small: Return at most ``small_cap`` entries, URLs and search
            terms interleaved.
        edge_bias: Reverse the final list so the most relevant entry sits
            next to an input field placed below the list.
        active_workspace: Workspace category whose history gets a boost.
        immediate: Emit a local-only list before the remote answer arrives.
    """

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    allow_urls: bool = True
    cap_small: bool = False
    edge_bias: bool = False
    small_cap: int = SMALL_CAP
    soft_cap: int = SOFT_CAP
    active_workspace: Optional[str] = None
    immediate: bool = True

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> SuggestMode:
        values = {
            "provider": ProviderConfig.from_settings(settings),
            "cap_small": settings.cap_suggestions_small,
            "edge_bias": settings.suggestions_at_bottom,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class SuggestionResult:
    """A list ready for display, plus the inline completion."""

    query: str
    suggestions: list[SuggestionCandidate]
    ghost: Optional[str] = None
    #: False for the local-only list emitted before the remote answer.
    final: bool = True


@dataclass
class _Snapshot:
    recents: list[str] = field(default_factory=list)
    history: list[HistoryLink] = field(default_factory=list)
    stats: dict[str, UsageStat] = field(default_factory=dict)
    blocklist: set[str] = field(default_factory=set)
    popular: list[tuple[str, str]] = field(default_factory=list)


class SuggestionEngine:
    """Ranks query-box suggestions from local data and a remote provider.

    Args:
        store: Local Store holding recents, history, stats and blocklist.
        gateway: Remote autocomplete gateway.
        timeout: Overall remote budget in seconds; defaults to the gateway's.
    """

    def __init__(
        self,
        store: LocalStore,
        gateway: AutocompleteGateway,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.timeout = gateway.timeout if timeout is None else timeout
        self.latest: Optional[SuggestionResult] = None
        self._seq = 0
        self._remote: Optional[asyncio.Task] = None

    # ── Local data ─────────────────────────────────────────────────────────

    def _snapshot(self, mode: SuggestMode) -> _Snapshot:
        try:
            snap = _Snapshot(
                recents=hist.get_recent_searches(self.store),
                stats=hist.get_usage_stats(self.store),
                blocklist=hist.get_blocklist(self.store),
            )
            if mode.allow_urls:
                snap.history = hist.get_history_links(self.store)
                snap.popular = [*POPULAR_SITES, *hist.get_speed_dials(self.store)]
            return snap
        except sqlite3.Error as exc:
            logger.warning("Local store unavailable, ranking without it: %s", exc)
            popular = list(POPULAR_SITES) if mode.allow_urls else []
            return _Snapshot(popular=popular)

    # ── Remote ─────────────────────────────────────────────────────────────

    def cancel_pending(self) -> None:
        """Cancel the in-flight remote call, if any."""
        if self._remote is not None and not self._remote.done():
            self._remote.cancel()
        self._remote = None

    async def _fetch_remote(self, query: str, mode: SuggestMode) -> list[str]:
        if not query.strip():
            return []

        self.cancel_pending()
        task = asyncio.ensure_future(self.gateway.fetch_completions(query, mode.provider))
        self._remote = task
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        finally:
            if not task.done():
                task.cancel()
            if self._remote is task:
                self._remote = None

        if not done:
            logger.warning("Autocomplete timed out after %.3fs for %r", self.timeout, query)
            return []
        if task.cancelled():
            logger.debug("Autocomplete for %r superseded by a newer query", query)
            return []
        exc = task.exception()
        if exc is not None:
            logger.warning("Autocomplete failed for %r: %s", query, exc)
            return []
        return task.result()

    # ── Ranking ────────────────────────────────────────────────────────────

    async def _ranked(self, query: str, mode: SuggestMode) -> list[SuggestionCandidate]:
        remote = await self._fetch_remote(query, mode)
        snap = self._snapshot(mode)
        return aggregate(
            query,
            recents=snap.recents,
            history=snap.history,
            popular=snap.popular,
            remote=remote,
            blocklist=snap.blocklist,
            stats=snap.stats,
            active_workspace=mode.active_workspace,
            allow_urls=mode.allow_urls,
            now=time.time(),
        )

    @staticmethod
    def _shape(ranked: list[SuggestionCandidate], mode: SuggestMode) -> list[SuggestionCandidate]:
        capped = cap_results(ranked, mode.cap_small, mode.small_cap, mode.soft_cap)
        return capped[::-1] if mode.edge_bias else capped

    async def rank(self, query: str, mode: Optional[SuggestMode] = None) -> list[SuggestionCandidate]:
        """Return the ranked, deduplicated, capped suggestion list for *query*."""
        mode = mode or SuggestMode()
        return self._shape(await self._ranked(query, mode), mode)

    def ghost(self, query: str, ranked: list[SuggestionCandidate]) -> Optional[str]:
        """Inline completion for *query* from an uncapped, best-first list."""
        return ghost_completion(query, ranked)

    def _immediate(self, query: str, mode: SuggestMode) -> SuggestionResult:
        snap = self._snapshot(mode)
        local = deduplicate([
            *recent_candidates(snap.recents, query),
            *history_candidates(snap.history, query),
        ])
        visible = filter_blocked(local, snap.blocklist)
        limit = mode.small_cap if mode.cap_small else _IMMEDIATE_CAP
        shown = visible[:limit]
        return SuggestionResult(
            query=query,
            suggestions=shown[::-1] if mode.edge_bias else shown,
            final=False,
        )

    async def suggest(
        self,
        query: str,
        mode: Optional[SuggestMode],
        on_results: Callable[[SuggestionResult], None],
    ) -> Optional[SuggestionResult]:
        """Rank *query* and hand the result to *on_results* unless superseded.

        Each call takes a sequence number; results (immediate or final) are
        only delivered while that number is still the newest, so a slow answer
        for an older query can never overwrite a newer one.

        Returns:
            The delivered final result, or ``None`` if it was discarded.
        """
        mode = mode or SuggestMode()
        self._seq += 1
        seq = self._seq

        if mode.immediate:
            immediate = self._immediate(query, mode)
            if immediate.suggestions:
                on_results(immediate)

        ranked = await self._ranked(query, mode)
        if seq != self._seq:
            logger.debug("Discarding stale suggestions for %r", query)
            return None

        result = SuggestionResult(
            query=query,
            suggestions=self._shape(ranked, mode),
            ghost=ghost_completion(query, ranked),
        )
        self.latest = result
        on_results(result)
        return result

    # ── Mutations ──────────────────────────────────────────────────────────

    def record_selection(self, candidate: SuggestionCandidate) -> None:
        """Bump usage statistics and remember the text as a recent search."""
        try:
            hist.record_usage(self.store, candidate.key)
            hist.add_recent_search(self.store, candidate.text)
        except sqlite3.Error as exc:
            logger.warning("Could not record selection of %r: %s", candidate.key, exc)

    def hide(self, candidate: SuggestionCandidate) -> None:
        """Blocklist *candidate* and forget its usage statistics."""
        try:
            hist.add_to_blocklist(self.store, candidate)
            hist.remove_usage(self.store, candidate.key)
        except sqlite3.Error as exc:
            logger.warning("Could not hide %r: %s", candidate.key, exc)

    def remove_recent(self, text: str) -> None:
        try:
            hist.remove_recent_search(self.store, text)
        except sqlite3.Error as exc:
            logger.warning("Could not remove recent search %r: %s", text, exc)

    def remove_history(self, url: str) -> None:
        try:
            hist.remove_history_link(self.store, url)
        except sqlite3.Error as exc:
            logger.warning("Could not remove history link %r: %s", url, exc)

    def record_visit(self, title: str, url: str) -> None:
        """Add a navigated URL to the browsing-history cache."""
        try:
            hist.add_history_link(self.store, title, url)
        except sqlite3.Error as exc:
            logger.warning("Could not record visit to %r: %s", url, exc)
