"""
Tests for querybox/suggestions.py

The gateway is replaced by a small fake whose latency is set per query, so
ordering and timeouts can be driven deterministically.

Run with: pytest tests/test_suggestions.py
"""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import MagicMock

import pytest

import querybox.history as hist
from querybox.errors import ProviderError
from querybox.models import CandidateKind, CandidateSource, SuggestionCandidate
from querybox.store import LocalStore
from querybox.suggestions import SuggestionEngine, SuggestMode


class FakeGateway:
    """Stands in for ``AutocompleteGateway``: canned answers with a delay."""

    def __init__(self, answers: dict[str, list[str]], delays: dict[str, float] | None = None,
                 timeout: float = 1.0) -> None:
        self.answers = answers
        self.delays = delays or {}
        self.timeout = timeout
        self.calls: list[str] = []
        self.cancelled: list[str] = []

    async def fetch_completions(self, query, config):
        self.calls.append(query)
        try:
            await asyncio.sleep(self.delays.get(query, 0))
        except asyncio.CancelledError:
            self.cancelled.append(query)
            raise
        answer = self.answers.get(query)
        if isinstance(answer, Exception):
            raise answer
        return list(answer or [])


@pytest.fixture
def store(tmp_path, monkeypatch) -> LocalStore:
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test_suggestions.db"))
    return LocalStore()


@pytest.fixture
def git_store(store) -> LocalStore:
    hist.add_recent_search(store, "github actions")
    hist.add_history_link(store, "GitHub", "https://github.com")
    return store


def _term(text: str) -> SuggestionCandidate:
    return SuggestionCandidate(kind=CandidateKind.SEARCH_TERM, text=text, source=CandidateSource.REMOTE)


class TestRank:
    def test_merges_local_and_remote(self, git_store):
        engine = SuggestionEngine(git_store, FakeGateway({"git": ["git tutorial"]}))
        ranked = asyncio.run(engine.rank("git"))
        texts = [c.text for c in ranked]

        assert "git tutorial" in texts
        assert "github actions" in texts
        assert "git" not in texts
        assert ranked[0].is_url

    def test_repeated_calls_are_identical(self, git_store):
        engine = SuggestionEngine(git_store, FakeGateway({"git": ["git tutorial", "git log"]}))
        first = asyncio.run(engine.rank("git"))
        second = asyncio.run(engine.rank("git"))
        assert [c.key for c in first] == [c.key for c in second]

    def test_cap_small(self, store):
        engine = SuggestionEngine(store, FakeGateway({"py": [f"py{i:02d}x" for i in range(30)]}))
        ranked = asyncio.run(engine.rank("py", SuggestMode(cap_small=True)))
        assert len(ranked) == 7

    def test_edge_bias_reverses(self, git_store):
        engine = SuggestionEngine(git_store, FakeGateway({"git": ["git tutorial"]}))
        top = asyncio.run(engine.rank("git"))
        bottom = asyncio.run(engine.rank("git", SuggestMode(edge_bias=True)))
        assert [c.key for c in bottom] == [c.key for c in reversed(top)]

    def test_remote_timeout_degrades_to_local(self, git_store):
        gateway = FakeGateway({"git": ["git tutorial"]}, delays={"git": 1.0})
        engine = SuggestionEngine(git_store, gateway, timeout=0.05)
        ranked = asyncio.run(engine.rank("git"))
        texts = [c.text for c in ranked]

        assert "git tutorial" not in texts
        assert "github actions" in texts
        assert gateway.cancelled == ["git"]

    def test_remote_error_degrades_to_local(self, git_store):
        gateway = FakeGateway({"git": ProviderError("HTTP 500", status=500)})
        ranked = asyncio.run(SuggestionEngine(git_store, gateway).rank("git"))
        assert {c.text for c in ranked} >= {"github actions"}

    def test_blank_query_skips_remote(self, store):
        gateway = FakeGateway({})
        asyncio.run(SuggestionEngine(store, gateway).rank("   "))
        assert gateway.calls == []

    def test_store_failure_still_ranks_remote(self, store):
        broken = MagicMock(spec=LocalStore)
        broken.get.side_effect = sqlite3.OperationalError("disk I/O error")
        engine = SuggestionEngine(broken, FakeGateway({"git": ["git tutorial"]}))
        ranked = asyncio.run(engine.rank("git"))
        assert "git tutorial" in [c.text for c in ranked]


class TestMonotonicFreshness:
    def test_late_answer_for_old_query_is_dropped(self, store):
        gateway = FakeGateway(
            {"gi": ["gist"], "git": ["git tutorial"]},
            delays={"gi": 0.2, "git": 0.01},
        )
        engine = SuggestionEngine(store, gateway)
        shown: list[str] = []

        async def run():
            mode = SuggestMode(immediate=False)
            old = asyncio.ensure_future(engine.suggest("gi", mode, lambda r: shown.append(r.query)))
            await asyncio.sleep(0)
            new = asyncio.ensure_future(engine.suggest("git", mode, lambda r: shown.append(r.query)))
            return await old, await new

        old, new = asyncio.run(run())

        assert old is None
        assert new is not None and new.query == "git"
        assert shown == ["git"]
        assert engine.latest is new

    def test_newer_query_cancels_inflight_remote(self, store):
        gateway = FakeGateway({"gi": ["gist"], "git": []}, delays={"gi": 0.5})
        engine = SuggestionEngine(store, gateway)

        async def run():
            mode = SuggestMode(immediate=False)
            old = asyncio.ensure_future(engine.suggest("gi", mode, lambda r: None))
            await asyncio.sleep(0.01)
            await engine.suggest("git", mode, lambda r: None)
            await old

        asyncio.run(run())
        assert gateway.cancelled == ["gi"]

    def test_immediate_then_final(self, git_store):
        engine = SuggestionEngine(git_store, FakeGateway({"git": ["git tutorial"]}))
        results = []
        asyncio.run(engine.suggest("git", SuggestMode(), results.append))

        assert [r.final for r in results] == [False, True]
        assert "git tutorial" not in [c.text for c in results[0].suggestions]
        assert "git tutorial" in [c.text for c in results[1].suggestions]
        assert results[1].ghost == "gitHub"


class TestMutations:
    def test_record_selection_updates_stats_and_recents(self, store):
        engine = SuggestionEngine(store, FakeGateway({}))
        engine.record_selection(_term("git tutorial"))

        assert hist.get_usage_stats(store)["text:git tutorial"].count == 1
        assert hist.get_recent_searches(store) == ["git tutorial"]

    def test_hide_blocks_and_forgets(self, store):
        engine = SuggestionEngine(store, FakeGateway({"git": ["git tutorial"]}))
        candidate = _term("git tutorial")
        engine.record_selection(candidate)
        engine.hide(candidate)

        assert "text:git tutorial" in hist.get_blocklist(store)
        assert "text:git tutorial" not in hist.get_usage_stats(store)
        ranked = asyncio.run(engine.rank("git"))
        assert "git tutorial" not in [c.text for c in ranked]

    def test_store_errors_are_absorbed(self):
        broken = MagicMock(spec=LocalStore)
        broken.get.side_effect = sqlite3.OperationalError("locked")
        engine = SuggestionEngine(broken, FakeGateway({}))
        engine.record_selection(_term("git tutorial"))
        engine.hide(_term("git tutorial"))
        engine.remove_recent("git")
        engine.remove_history("https://github.com")
        engine.record_visit("GitHub", "https://github.com")

    def test_record_visit_feeds_history(self, store):
        engine = SuggestionEngine(store, FakeGateway({}))
        engine.record_visit("Python", "https://python.org")
        ranked = asyncio.run(engine.rank("pyt"))
        assert [c.url for c in ranked if c.is_url][0] == "https://python.org"
