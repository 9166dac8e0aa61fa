"""Web search used to augment AI prompts.

Responsibilities:
- Query a primary web-search provider (SearXNG or Firecrawl) under its budget
- Fall back to the other provider when the primary errors, times out or
  finds nothing
- Normalise results to ``WebResult`` (title / url / snippet)
- Render results as the numbered context block injected into prompts

Both providers failing is not an error for the caller: the prompt simply goes
out without web context.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

import httpx

from querybox.errors import GatewayTimeout, ProviderError
from querybox.gateway import SEARXNG_ENGINES
from querybox.models import WebResult

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

#: System instruction sent alongside web context.
CITE_SOURCES_INSTRUCTION = (
    "You may use the following web results as context if relevant. "
    "Always cite URLs at the end under a Sources section as markdown links."
)


def format_context(results: list[WebResult]) -> str:
    """Render *results* as ``(n) title\\nurl\\nsnippet`` blocks.

    Examples:
        >>> format_context([WebResult(title="A", url="https://a.test", snippet="s")])
        '(1) A\\nhttps://a.test\\ns'
    """
    return "\n\n".join(
        f"({i}) {r.title}\n{r.url}\n{r.snippet}".strip()
        for i, r in enumerate(results, start=1)
    )


def _results_from(items: Any, snippet_keys: tuple[str, ...], limit: int) -> list[WebResult]:
    if not isinstance(items, list):
        return []
    results: list[WebResult] = []
    for item in items[:limit]:
        if not isinstance(item, dict) or not item.get("url"):
            continue
        snippet = next((str(item[k]) for k in snippet_keys if item.get(k)), "")
        results.append(WebResult(
            title=str(item.get("title") or item["url"]),
            url=str(item["url"]),
            snippet=snippet,
        ))
    return results


class WebSearcher:
    """Primary/secondary web search with per-provider timeouts.

    Args:
        client: Shared ``httpx.AsyncClient``.
        settings: Provider choice, base URLs, API key, budgets and result count.
    """

    PROVIDERS = ("searxng", "firecrawl")

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    @property
    def order(self) -> list[str]:
        """Providers in the order they are tried."""
        primary = self.settings.web_search_provider.lower()
        if primary not in self.PROVIDERS:
            primary = "searxng"
        return [primary] + [p for p in self.PROVIDERS if p != primary]

    async def _request(self, method: str, url: str, budget: float, **kwargs: Any) -> Any:
        try:
            response = await asyncio.wait_for(
                self.client.request(method, url, timeout=budget, **kwargs),
                budget,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise GatewayTimeout(f"web search exceeded {budget:.0f}s: {url}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"web search request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(f"web search returned HTTP {response.status_code}",
                                status=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"web search returned malformed JSON: {exc}") from exc

    async def _searxng(self, query: str, limit: int) -> list[WebResult]:
        base = self.settings.searxng_base_url.rstrip("/")
        data = await self._request(
            "GET",
            f"{base}/search",
            self.settings.searxng_timeout,
            params={"q": query, "format": "json", "engines": SEARXNG_ENGINES},
            headers={"Accept": "application/json"},
        )
        items = data.get("results") if isinstance(data, dict) else None
        return _results_from(items, ("content", "abstract"), limit)

    async def _firecrawl(self, query: str, limit: int) -> list[WebResult]:
        base = self.settings.firecrawl_base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if self.settings.firecrawl_api_key:
            headers["Authorization"] = f"Bearer {self.settings.firecrawl_api_key}"
        data = await self._request(
            "POST",
            f"{base}/v1/search",
            self.settings.firecrawl_timeout,
            json={"query": query, "limit": limit, "scrapeOptions": {"formats": ["markdown"]}},
            headers=headers,
        )
        items = data.get("data") if isinstance(data, dict) else None
        return _results_from(items, ("markdown", "description"), limit)

    async def search(self, query: str, limit: Optional[int] = None) -> list[WebResult]:
        """Return up to *limit* results for *query*, trying providers in order.

        Returns:
            The first non-empty result list, or ``[]`` if every provider failed.
        """
        query = query.strip()
        if not query:
            return []
        limit = limit or self.settings.web_results_count

        for provider in self.order:
            fetch = self._searxng if provider == "searxng" else self._firecrawl
            try:
                results = await fetch(query, limit)
            except (GatewayTimeout, ProviderError) as exc:
                logger.warning("Web search via %s failed for %r: %s", provider, query, exc)
                continue
            if results:
                logger.info("Web search via %s: %d results for %r", provider, len(results), query)
                return results
            logger.info("Web search via %s found nothing for %r", provider, query)

        return []
