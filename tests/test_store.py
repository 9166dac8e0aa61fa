"""
Tests for querybox/store.py

Uses a temporary SQLite file so the real Local Store is never touched.

Run with: pytest tests/test_store.py
"""

import sqlite3

import pytest

from querybox.store import LocalStore


@pytest.fixture
def store(tmp_path, monkeypatch) -> LocalStore:
    """Point DB_PATH to a fresh temp file for each test."""
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test_store.db"))
    return LocalStore()


class TestGetSet:
    def test_uses_db_path_env(self, store, tmp_path):
        assert store.path == tmp_path / "test_store.db"
        assert store.path.exists()

    def test_missing_key_returns_none(self, store):
        assert store.get("nope") is None

    def test_round_trips_json_values(self, store):
        store.set("recentSearches", ["github actions", "python"])
        assert store.get("recentSearches") == ["github actions", "python"]

    def test_set_replaces_value(self, store):
        store.set("k", {"a": 1})
        store.set("k", {"a": 2})
        assert store.get("k") == {"a": 2}

    def test_values_survive_a_new_instance(self, store):
        store.set("k", [1, 2, 3])
        assert LocalStore(store.path).get("k") == [1, 2, 3]

    def test_corrupt_value_reads_as_none(self, store):
        with sqlite3.connect(str(store.path)) as conn:
            conn.execute(
                "INSERT INTO kv (key, value, updated_at) VALUES ('bad', '{not json', 'now')"
            )
        assert store.get("bad") is None


class TestRemoveAndKeys:
    def test_remove_existing(self, store):
        store.set("k", 1)
        assert store.remove("k") is True
        assert store.get("k") is None

    def test_remove_missing(self, store):
        assert store.remove("k") is False

    def test_keys_filters_by_prefix(self, store):
        store.set("aiChatSessions", [])
        store.set("aiChatActiveId", "x")
        store.set("recentSearches", [])
        assert store.keys("aiChat") == ["aiChatActiveId", "aiChatSessions"]

    def test_keys_prefix_wildcards_are_literal(self, store):
        store.set("a_b", 1)
        store.set("axb", 2)
        assert store.keys("a_") == ["a_b"]
