"""Remote autocomplete gateway.

Fetches completion strings for a partial query from a pluggable provider and
normalises the provider-specific response into a flat ``list[str]``.

Response shapes
───────────────
phrase-list          ``[{"phrase": "git tutorial"}, ...]``      (DuckDuckGo)
query+suggestions    ``["git", ["git tutorial", ...]]``         (Google, Brave, SearXNG)

Every call races an explicit timeout. Failures surface as exactly one of
``GatewayTimeout`` or ``ProviderError``; a partial list is never returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import quote

import httpx

from querybox.errors import GatewayTimeout, ProviderError

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)


class ResponseShape(str, Enum):
    PHRASE_LIST = "phrase-list"
    QUERY_SUGGESTIONS = "query+suggestions"


#: URL templates for providers that need no configured base.
_PROVIDER_URLS: dict[str, str] = {
    "duckduckgo": "https://duckduckgo.com/ac/?q={q}",
    "google": "https://suggestqueries.google.com/complete/search?client=firefox&q={q}",
    "brave": "https://search.brave.com/api/suggest?q={q}",
}

#: Engines SearXNG is asked to use for its JSON search fallback.
SEARXNG_ENGINES = "duckduckgo,google,startpage,brave"
_SEARXNG_FALLBACK_LIMIT = 8


@dataclass
class ProviderConfig:
    """Which autocomplete provider to ask, and where.

    Attributes:
        name: ``duckduckgo`` | ``google`` | ``brave`` | ``searxng`` | ``custom``.
        base_url: SearXNG instance root, or for ``custom`` the URL prefix the
            encoded query is appended to (e.g. ``https://x.test/ac?q=``).
        mode: For ``custom`` only — ``"ddg"`` selects the phrase-list shape.
    """

    name: str = "duckduckgo"
    base_url: str = ""
    mode: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderConfig:
        name = settings.suggest_provider.lower()
        if name == "searxng":
            return cls(name=name, base_url=settings.searxng_base_url)
        if name == "custom":
            return cls(
                name=name,
                base_url=settings.suggest_custom_base_url,
                mode=settings.suggest_custom_mode.lower(),
            )
        return cls(name=name)

    @property
    def shape(self) -> ResponseShape:
        if self.name == "duckduckgo" or (self.name == "custom" and self.mode == "ddg"):
            return ResponseShape.PHRASE_LIST
        return ResponseShape.QUERY_SUGGESTIONS

    @property
    def cache_key(self) -> str:
        return f"{self.name}:{self.base_url.rstrip('/')}:{self.mode}"


def completion_url(query: str, config: ProviderConfig) -> str:
    """Build the autocomplete request URL for *query*.

    Unknown providers, and ``custom`` without a base, fall back to DuckDuckGo.
    """
    q = quote(query, safe="")
    if config.name == "searxng":
        return f"{config.base_url.rstrip('/')}/autocompleter?q={q}"
    if config.name == "custom" and config.base_url.strip():
        return f"{config.base_url.strip()}{q}"
    template = _PROVIDER_URLS.get(config.name, _PROVIDER_URLS["duckduckgo"])
    return template.format(q=q)


def normalize_completions(data: Any, shape: ResponseShape) -> list[str]:
    """Flatten a provider response into completion strings.

    Examples:
        >>> normalize_completions([{"phrase": "git tutorial"}], ResponseShape.PHRASE_LIST)
        ['git tutorial']
        >>> normalize_completions(["git", ["git log", "github"]], ResponseShape.QUERY_SUGGESTIONS)
        ['git log', 'github']
    """
    if not isinstance(data, list):
        return []

    if shape is ResponseShape.PHRASE_LIST:
        items = [x.get("phrase") if isinstance(x, dict) else None for x in data]
    elif len(data) > 1 and isinstance(data[1], list):
        items = data[1]
    else:
        items = data

    return [str(item) for item in items if isinstance(item, str) and item.strip()]


class AutocompleteGateway:
    """Provider-agnostic autocomplete client with a short-lived result cache.

    Args:
        client: Shared ``httpx.AsyncClient``.
        timeout: Budget in seconds for each remote round-trip.
        cache_ttl: Seconds a successful result list is reused.
        cache_size: Most entries kept; the oldest are evicted first.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 0.15,
        cache_ttl: float = 30.0,
        cache_size: int = 256,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.cache_size = cache_size
        self._cache: dict[str, tuple[float, list[str]]] = {}

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> AutocompleteGateway:
        return cls(client, timeout=settings.suggest_timeout, cache_ttl=settings.suggest_cache_ttl)

    # ── Cache ──────────────────────────────────────────────────────────────

    def _cache_get(self, key: str) -> Optional[list[str]]:
        hit = self._cache.get(key)
        if hit is None:
            return None
        stored_at, data = hit
        if time.monotonic() - stored_at > self.cache_ttl:
            del self._cache[key]
            return None
        return data

    def _cache_set(self, key: str, data: list[str]) -> None:
        now = time.monotonic()
        expired = [k for k, (stored_at, _) in self._cache.items() if now - stored_at > self.cache_ttl]
        for k in expired:
            del self._cache[k]
        self._cache.pop(key, None)
        self._cache[key] = (now, data)
        while len(self._cache) > self.cache_size:
            del self._cache[next(iter(self._cache))]

    def clear_cache(self) -> None:
        self._cache.clear()

    # ── Fetching ───────────────────────────────────────────────────────────

    async def _get_json(self, url: str, params: Optional[dict[str, str]] = None) -> Any:
        try:
            response = await asyncio.wait_for(
                self.client.get(
                    url,
                    params=params,
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                ),
                self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise GatewayTimeout(f"autocomplete exceeded {self.timeout:.3f}s: {url}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ProviderError(f"autocomplete request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"autocomplete returned HTTP {response.status_code}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"autocomplete returned malformed JSON: {exc}") from exc

    async def _searxng_search_titles(self, query: str, config: ProviderConfig) -> list[str]:
        data = await self._get_json(
            f"{config.base_url.rstrip('/')}/search",
            params={"format": "json", "engines": SEARXNG_ENGINES, "q": query},
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []
        titles = [
            str(r.get("title") or r.get("url") or "")
            for r in results[:_SEARXNG_FALLBACK_LIMIT]
            if isinstance(r, dict)
        ]
        return [t for t in titles if t]

    async def fetch_completions(self, query: str, config: ProviderConfig) -> list[str]:
        """Return completion strings for *query* from the configured provider.

        Raises:
            GatewayTimeout: If the provider did not answer within the budget.
            ProviderError: On transport errors, non-OK status or bad JSON.
        """
        cache_key = f"{config.cache_key}:{query.strip().lower()}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.debug("Autocomplete cache hit for %r", query)
            return list(cached)

        data = await self._get_json(completion_url(query, config))
        completions = normalize_completions(data, config.shape)

        if config.name == "searxng" and not completions:
            completions = await self._searxng_search_titles(query, config)

        self._cache_set(cache_key, completions)
        logger.debug("Autocomplete %s returned %d completions for %r",
                     config.name, len(completions), query)
        return list(completions)
