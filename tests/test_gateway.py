"""Tests for querybox/gateway.py — provider URLs, response shapes, timeouts and cache."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from querybox.errors import GatewayTimeout, ProviderError
from querybox.gateway import (
    AutocompleteGateway,
    ProviderConfig,
    ResponseShape,
    completion_url,
    normalize_completions,
)


def _gateway(handler, timeout: float = 1.0, cache_ttl: float = 30.0) -> tuple[AutocompleteGateway, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AutocompleteGateway(client, timeout=timeout, cache_ttl=cache_ttl), client


def _fetch(handler, query: str, config: ProviderConfig, **kwargs):
    async def run():
        gateway, client = _gateway(handler, **kwargs)
        async with client:
            return await gateway.fetch_completions(query, config)
    return asyncio.run(run())


# ── URLs and shapes ────────────────────────────────────────────────────────────


class TestCompletionUrl:
    def test_duckduckgo_default(self):
        assert completion_url("git hub", ProviderConfig()) == "https://duckduckgo.com/ac/?q=git%20hub"

    def test_google(self):
        url = completion_url("git", ProviderConfig(name="google"))
        assert url.startswith("https://suggestqueries.google.com/")
        assert url.endswith("q=git")

    def test_searxng_uses_base(self):
        config = ProviderConfig(name="searxng", base_url="http://sx.local/")
        assert completion_url("git", config) == "http://sx.local/autocompleter?q=git"

    def test_custom_appends_query(self):
        config = ProviderConfig(name="custom", base_url="https://ac.test/?term=")
        assert completion_url("a&b", config) == "https://ac.test/?term=a%26b"

    def test_custom_without_base_falls_back(self):
        assert completion_url("git", ProviderConfig(name="custom")).startswith("https://duckduckgo.com/")

    def test_shapes(self):
        assert ProviderConfig().shape is ResponseShape.PHRASE_LIST
        assert ProviderConfig(name="brave").shape is ResponseShape.QUERY_SUGGESTIONS
        assert ProviderConfig(name="custom", mode="ddg").shape is ResponseShape.PHRASE_LIST


class TestNormalizeCompletions:
    def test_phrase_list(self):
        data = [{"phrase": "git tutorial"}, {"phrase": ""}, {"other": 1}]
        assert normalize_completions(data, ResponseShape.PHRASE_LIST) == ["git tutorial"]

    def test_query_suggestions(self):
        data = ["git", ["git log", "github", 3]]
        assert normalize_completions(data, ResponseShape.QUERY_SUGGESTIONS) == ["git log", "github"]

    def test_flat_list_accepted(self):
        assert normalize_completions(["a1", "a2"], ResponseShape.QUERY_SUGGESTIONS) == ["a1", "a2"]

    def test_non_list_is_empty(self):
        assert normalize_completions({"x": 1}, ResponseShape.QUERY_SUGGESTIONS) == []


# ── Fetching ───────────────────────────────────────────────────────────────────


class TestFetchCompletions:
    def test_duckduckgo_phrases(self):
        def handler(request):
            assert request.url.host == "duckduckgo.com"
            return httpx.Response(200, json=[{"phrase": "git tutorial"}, {"phrase": "github"}])

        assert _fetch(handler, "git", ProviderConfig()) == ["git tutorial", "github"]

    def test_non_ok_status_raises_provider_error(self):
        with pytest.raises(ProviderError) as exc_info:
            _fetch(lambda request: httpx.Response(503), "git", ProviderConfig())
        assert exc_info.value.status == 503

    def test_malformed_json_raises_provider_error(self):
        with pytest.raises(ProviderError):
            _fetch(lambda request: httpx.Response(200, content=b"<html>"), "git", ProviderConfig())

    def test_slow_provider_raises_timeout(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=[])

        with pytest.raises(GatewayTimeout):
            _fetch(handler, "git", ProviderConfig(), timeout=0.05)

    def test_timeout_is_a_timeout_error(self):
        assert issubclass(GatewayTimeout, TimeoutError)

    def test_searxng_falls_back_to_search_titles(self):
        def handler(request):
            if request.url.path == "/autocompleter":
                return httpx.Response(200, json=["git", []])
            assert request.url.params["format"] == "json"
            return httpx.Response(200, json={"results": [
                {"title": "Git - Book", "url": "https://git-scm.com/book"},
                {"url": "https://github.com"},
            ]})

        config = ProviderConfig(name="searxng", base_url="http://sx.local")
        assert _fetch(handler, "git", config) == ["Git - Book", "https://github.com"]


class TestCache:
    def test_success_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(200, json=[{"phrase": "git tutorial"}])

        async def run():
            gateway, client = _gateway(handler)
            async with client:
                first = await gateway.fetch_completions("git", ProviderConfig())
                second = await gateway.fetch_completions("GIT", ProviderConfig())
            return first, second

        first, second = asyncio.run(run())
        assert first == second == ["git tutorial"]
        assert len(calls) == 1

    def test_failure_is_not_cached(self):
        responses = [httpx.Response(500), httpx.Response(200, json=[{"phrase": "git log"}])]

        async def run():
            gateway, client = _gateway(lambda request: responses.pop(0))
            async with client:
                with pytest.raises(ProviderError):
                    await gateway.fetch_completions("git", ProviderConfig())
                return await gateway.fetch_completions("git", ProviderConfig())

        assert asyncio.run(run()) == ["git log"]

    def test_expired_entry_refetched(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(200, json=[])

        async def run():
            gateway, client = _gateway(handler, cache_ttl=0.0)
            async with client:
                await gateway.fetch_completions("git", ProviderConfig())
                await asyncio.sleep(0.01)
                await gateway.fetch_completions("git", ProviderConfig())

        asyncio.run(run())
        assert len(calls) == 2

    def test_expired_entries_pruned_on_write(self):
        async def run():
            gateway, client = _gateway(lambda request: httpx.Response(200, json=[]), cache_ttl=0.0)
            async with client:
                await gateway.fetch_completions("g", ProviderConfig())
                await asyncio.sleep(0.01)
                await gateway.fetch_completions("gi", ProviderConfig())
            return gateway

        gateway = asyncio.run(run())
        assert len(gateway._cache) == 1

    def test_size_cap_evicts_oldest(self):
        async def run():
            client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
            gateway = AutocompleteGateway(client, timeout=1.0, cache_size=2)
            async with client:
                for query in ("a", "ab", "abc"):
                    await gateway.fetch_completions(query, ProviderConfig())
            return gateway

        gateway = asyncio.run(run())
        assert [key.rsplit(":", 1)[-1] for key in gateway._cache] == ["ab", "abc"]
