"""
Tests for querybox/history.py

Uses a temporary SQLite file so the real Local Store is never touched.

Run with: pytest tests/test_history.py
"""

import pytest

import querybox.history as hist
from querybox.models import CandidateKind, CandidateSource, SuggestionCandidate
from querybox.store import LocalStore


@pytest.fixture
def store(tmp_path, monkeypatch) -> LocalStore:
    """Point DB_PATH to a fresh temp file for each test."""
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test_history.db"))
    return LocalStore()


def _url(url: str, text: str = "Title") -> SuggestionCandidate:
    return SuggestionCandidate(kind=CandidateKind.URL, text=text, url=url, source=CandidateSource.HISTORY)


def _term(text: str) -> SuggestionCandidate:
    return SuggestionCandidate(kind=CandidateKind.SEARCH_TERM, text=text, source=CandidateSource.REMOTE)


class TestRecentSearches:
    def test_empty_by_default(self, store):
        assert hist.get_recent_searches(store) == []

    def test_newest_first_without_duplicates(self, store):
        hist.add_recent_search(store, "python")
        hist.add_recent_search(store, "rust")
        hist.add_recent_search(store, "python")
        assert hist.get_recent_searches(store) == ["python", "rust"]

    def test_capped_at_ten(self, store):
        for i in range(15):
            hist.add_recent_search(store, f"query {i}")
        recents = hist.get_recent_searches(store)
        assert len(recents) == hist.MAX_RECENTS
        assert recents[0] == "query 14"

    def test_remove_ignores_case(self, store):
        hist.add_recent_search(store, "GitHub Actions")
        hist.remove_recent_search(store, "github actions")
        assert hist.get_recent_searches(store) == []

    def test_malformed_value_reads_as_empty(self, store):
        store.set(hist.RECENTS_KEY, {"not": "a list"})
        assert hist.get_recent_searches(store) == []


class TestHistoryLinks:
    def test_add_and_read_back(self, store):
        hist.add_history_link(store, "GitHub", "https://github.com")
        links = hist.get_history_links(store)
        assert [(l.title, l.url) for l in links] == [("GitHub", "https://github.com")]
        assert links[0].ts > 0

    def test_revisit_moves_to_front(self, store):
        hist.add_history_link(store, "GitHub", "https://github.com")
        hist.add_history_link(store, "Docs", "https://docs.python.org")
        hist.add_history_link(store, "GitHub", "https://github.com")
        assert [l.url for l in hist.get_history_links(store)] == [
            "https://github.com", "https://docs.python.org",
        ]

    def test_title_defaults_to_url(self, store):
        link = hist.add_history_link(store, "", "https://example.com")
        assert link.title == "https://example.com"

    def test_corrupt_entries_skipped(self, store):
        store.set(hist.HISTORY_KEY, [{"title": "ok", "url": "https://ok.test"}, {"title": "no url"}])
        assert [l.url for l in hist.get_history_links(store)] == ["https://ok.test"]

    def test_remove(self, store):
        hist.add_history_link(store, "GitHub", "https://github.com")
        hist.remove_history_link(store, "https://github.com")
        assert hist.get_history_links(store) == []


class TestUsageStats:
    def test_first_selection_creates_stat(self, store):
        stat = hist.record_usage(store, "text:python", now=1000.0)
        assert stat.count == 1
        assert stat.last_used_at == 1000.0

    def test_selection_increments_count(self, store):
        hist.record_usage(store, "text:python", now=1000.0)
        hist.record_usage(store, "text:python", now=2000.0)
        stat = hist.get_usage_stats(store)["text:python"]
        assert stat.count == 2
        assert stat.last_used_at == 2000.0

    def test_remove_usage(self, store):
        hist.record_usage(store, "text:python")
        assert hist.remove_usage(store, "text:python") is True
        assert hist.remove_usage(store, "text:python") is False
        assert hist.get_usage_stats(store) == {}


class TestBlocklist:
    def test_url_blocked_by_host(self):
        assert hist.blocklist_key(_url("https://www.GitHub.com/x")) == "host:github.com"

    def test_term_blocked_by_lowercased_text(self):
        assert hist.blocklist_key(_term("  Git Tutorial ")) == "text:git tutorial"

    def test_add_persists_entry(self, store):
        entry = hist.add_to_blocklist(store, _term("git tutorial"))
        assert entry == "text:git tutorial"
        assert hist.get_blocklist(store) == {"text:git tutorial"}

    def test_adding_twice_keeps_one_entry(self, store):
        hist.add_to_blocklist(store, _url("https://github.com"))
        hist.add_to_blocklist(store, _url("https://github.com/features", text="Features"))
        assert store.get(hist.BLOCKLIST_KEY) == ["host:github.com"]


class TestSpeedDials:
    def test_flattens_groups(self, store):
        store.set(hist.SPEED_DIALS_KEY, {
            "work": [{"title": "Jira", "url": "https://jira.example.com"}],
            "fun": [{"url": "https://www.youtube.com"}, {"title": "no url"}],
        })
        assert hist.get_speed_dials(store) == [
            ("Jira", "https://jira.example.com"),
            ("youtube.com", "https://www.youtube.com"),
        ]

    def test_missing_returns_empty(self, store):
        assert hist.get_speed_dials(store) == []
