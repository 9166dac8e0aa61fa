"""Chat-completion and model-discovery client.

Talks to OpenAI-compatible ``/chat/completions`` endpoints (OpenAI,
OpenRouter, LM Studio) over ``httpx`` and to Claude models through the
``anthropic`` SDK.

Response shapes
───────────────
JSON body     one object; text from ``choices[0].message.content``,
              ``message.content`` or ``content``. Yielded as a single chunk.
event stream  newline-framed lines, optional ``data:`` prefix, ``:`` comments.
              Each JSON fragment's delta is yielded in arrival order.
              ``[DONE]`` (bare or ``data: [DONE]``) ends the stream.

Flow
────
``stream_chat(model, messages)`` tries providers in attempt order: the local
server first when preferred, then the provider inferred from the model name,
then any other configured provider. A non-OK status moves on to the next
provider; once text has been yielded there is no retry.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NamedTuple, Optional

import anthropic
import httpx

from querybox.errors import ProviderError, RoutingError
from querybox.routing import Provider, choose_auto_model, infer_provider

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_LMSTUDIO_BASE_URL = "http://127.0.0.1:1234/v1"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

#: Fallback attempt order after the preferred/inferred providers.
_FALLBACK_ORDER = (Provider.OPENAI, Provider.OPENROUTER, Provider.LMSTUDIO)

#: Request failures. ``InvalidURL`` and ``StreamError`` are not ``httpx.HTTPError`` subclasses.
_TRANSPORT_ERRORS = (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError)


def normalize_base_url(url: str, suffix: str = "") -> str:
    """Return an LM Studio style base URL ending in ``/v1`` plus *suffix*.

    Examples:
        >>> normalize_base_url("http://localhost:1234/", "/models")
        'http://localhost:1234/v1/models'
    """
    base = (url or "").strip().rstrip("/") or DEFAULT_LMSTUDIO_BASE_URL
    if not base.endswith("/v1"):
        base += "/v1"
    return base + suffix


# ── Stream framing ─────────────────────────────────────────────────────────────


class StreamLine(NamedTuple):
    """One parsed line of an event stream."""

    done: bool
    delta: str


def extract_delta(obj: Any) -> str:
    """Pull the incremental text out of a streamed (or whole) JSON object."""
    if not isinstance(obj, dict):
        return ""
    candidates: list[Any] = [obj.get("delta")]
    choices = obj.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        candidates.append((first.get("delta") or {}).get("content"))
        candidates.append((first.get("message") or {}).get("content"))
    message = obj.get("message")
    if isinstance(message, dict):
        candidates.append(message.get("content"))
    candidates.append(obj.get("content"))
    return next((c for c in candidates if isinstance(c, str) and c), "")


def parse_stream_line(line: str) -> StreamLine:
    """Parse one line of an event stream.

    Examples:
        >>> parse_stream_line('data: {"choices":[{"delta":{"content":"Hi"}}]}')
        StreamLine(done=False, delta='Hi')
        >>> parse_stream_line("data: [DONE]")
        StreamLine(done=True, delta='')
    """
    s = line.strip()
    if not s or s.startswith(":") or s.lower().startswith("event:"):
        return StreamLine(False, "")
    if s.lower().startswith("data:"):
        s = s[5:].strip()
    if s == "[DONE]":
        return StreamLine(True, "")
    try:
        obj = json.loads(s)
    except ValueError:
        logger.debug("Skipping malformed stream line: %r", line)
        return StreamLine(False, "")
    return StreamLine(False, extract_delta(obj))


async def iter_deltas(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield non-empty deltas from *lines* until ``[DONE]`` or EOF."""
    async for line in lines:
        parsed = parse_stream_line(line)
        if parsed.done:
            return
        if parsed.delta:
            yield parsed.delta


def content_from_body(body: bytes) -> str:
    """Text of a non-streaming completion body, or ``""``."""
    try:
        return extract_delta(json.loads(body or b"{}"))
    except ValueError as exc:
        raise ProviderError(f"completion returned malformed JSON: {exc}") from exc


# ── Credentials ────────────────────────────────────────────────────────────────


@dataclass
class ProviderCredentials:
    """Keys and base URLs for every provider the client may call."""

    lmstudio_base_url: str = ""
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openrouter_api_key: str = ""
    openrouter_base_url: str = DEFAULT_OPENROUTER_BASE_URL
    anthropic_api_key: str = ""
    prefer_local: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderCredentials:
        return cls(
            lmstudio_base_url=settings.lmstudio_base_url,
            openai_api_key=settings.openai_api_key,
            openai_base_url=settings.openai_base_url or DEFAULT_OPENAI_BASE_URL,
            openrouter_api_key=settings.openrouter_api_key,
            openrouter_base_url=settings.openrouter_base_url or DEFAULT_OPENROUTER_BASE_URL,
            anthropic_api_key=settings.anthropic_api_key,
            prefer_local=settings.prefer_local,
        )

    def is_configured(self, provider: Provider) -> bool:
        return bool({
            Provider.LMSTUDIO: self.lmstudio_base_url,
            Provider.OPENAI: self.openai_api_key,
            Provider.OPENROUTER: self.openrouter_api_key,
            Provider.ANTHROPIC: self.anthropic_api_key,
        }[provider])

    def endpoint(self, provider: Provider, path: str) -> tuple[str, dict[str, str]]:
        """Return ``(url, headers)`` for *path* on an OpenAI-style provider."""
        if provider is Provider.OPENAI:
            return (
                self.openai_base_url.rstrip("/") + path,
                {"Authorization": f"Bearer {self.openai_api_key}"},
            )
        if provider is Provider.OPENROUTER:
            return (
                self.openrouter_base_url.rstrip("/") + path,
                {
                    "Authorization": f"Bearer {self.openrouter_api_key}",
                    "HTTP-Referer": "http://localhost",
                    "X-Title": "querybox",
                },
            )
        return normalize_base_url(self.lmstudio_base_url, path), {}


@dataclass
class DiscoveryResult:
    """Union of models offered by every configured provider."""

    models: list[str] = field(default_factory=list)
    #: provider name → ``{"ok": bool, "error": str | None}``
    status: dict[str, dict[str, Any]] = field(default_factory=dict)


def _model_ids(data: Any) -> list[str]:
    if isinstance(data, dict):
        data = data.get("data", data.get("models", []))
    if not isinstance(data, list):
        raise ProviderError("model list has an unexpected shape")
    ids = [m if isinstance(m, str) else (m.get("id") or m.get("name") or "")
           for m in data if isinstance(m, (str, dict))]
    return [str(i) for i in ids if i]


# ── Client ─────────────────────────────────────────────────────────────────────


class ChatClient:
    """Streams chat completions from whichever provider serves a model.

    The Anthropic client is lazy-initialised so that the class can be
    instantiated without an Anthropic key (or with a mock in tests).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: ProviderCredentials,
        timeout: float = 120.0,
        max_tokens: int = 1200,
    ) -> None:
        self.client = client
        self.credentials = credentials
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._anthropic: Optional[anthropic.AsyncAnthropic] = None

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> ChatClient:
        return cls(
            client,
            ProviderCredentials.from_settings(settings),
            timeout=settings.completion_timeout,
            max_tokens=settings.anthropic_max_tokens,
        )

    @property
    def anthropic_client(self) -> anthropic.AsyncAnthropic:
        """Lazy-initialise and return the async Anthropic SDK client."""
        if self._anthropic is None:
            self._anthropic = anthropic.AsyncAnthropic(
                api_key=self.credentials.anthropic_api_key,
                max_retries=2,
            )
        return self._anthropic

    def attempt_order(self, model: str) -> list[Provider]:
        """Providers to try for *model*, most preferred first."""
        creds = self.credentials
        inferred = infer_provider(model)
        order: list[Provider] = []
        if creds.prefer_local and creds.is_configured(Provider.LMSTUDIO):
            order.append(Provider.LMSTUDIO)
        if inferred in _FALLBACK_ORDER and creds.is_configured(inferred) and inferred not in order:
            order.append(inferred)
        for provider in _FALLBACK_ORDER:
            if creds.is_configured(provider) and provider not in order:
                order.append(provider)
        return order

    # ── Discovery ──────────────────────────────────────────────────────────

    async def _provider_models(self, provider: Provider) -> list[str]:
        url, headers = self.credentials.endpoint(provider, "/models")
        response = await self.client.get(url, headers=headers, timeout=10.0)
        if response.status_code >= 400:
            raise ProviderError(f"{provider.value} models failed: {response.status_code}",
                                status=response.status_code)
        return _model_ids(response.json())

    async def list_models(self) -> DiscoveryResult:
        """Ask every configured provider for its models.

        A failing provider is recorded in ``status`` and skipped.
        """
        result = DiscoveryResult()
        seen: set[str] = set()

        def add(ids: list[str]) -> None:
            for model_id in ids:
                if model_id not in seen:
                    seen.add(model_id)
                    result.models.append(model_id)

        for provider in (Provider.LMSTUDIO, Provider.OPENAI, Provider.OPENROUTER):
            if not self.credentials.is_configured(provider):
                continue
            try:
                add(await self._provider_models(provider))
                result.status[provider.value] = {"ok": True, "error": None}
            except (*_TRANSPORT_ERRORS, ProviderError, ValueError) as exc:
                logger.warning("Model discovery via %s failed: %s", provider.value, exc)
                result.status[provider.value] = {"ok": False, "error": str(exc)}

        if self.credentials.is_configured(Provider.ANTHROPIC):
            try:
                page = await self.anthropic_client.models.list()
                add([m.id for m in page.data])
                result.status[Provider.ANTHROPIC.value] = {"ok": True, "error": None}
            except anthropic.APIError as exc:
                logger.warning("Model discovery via anthropic failed: %s", exc)
                result.status[Provider.ANTHROPIC.value] = {"ok": False, "error": str(exc)}

        return result

    async def auto_model(self, prompt: str) -> Optional[str]:
        """Default model for *prompt* given the configured providers.

        The local server is only asked for its models when it is configured;
        a failure there counts as an empty list.
        """
        creds = self.credentials
        configured = [p for p in Provider if creds.is_configured(p)]
        local: list[str] = []
        if Provider.LMSTUDIO in configured:
            try:
                local = await self._provider_models(Provider.LMSTUDIO)
            except (*_TRANSPORT_ERRORS, ProviderError, ValueError) as exc:
                logger.debug("Local model listing failed: %s", exc)
        return choose_auto_model(prompt, configured, creds.prefer_local, local)

    # ── Streaming ──────────────────────────────────────────────────────────

    async def _stream_anthropic(self, model: str, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        convo = [m for m in messages if m["role"] != "system"]
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": convo,
        }
        if system:
            kwargs["system"] = system
        try:
            async with self.anthropic_client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIStatusError as exc:
            raise ProviderError(f"anthropic upstream {exc.status_code}", status=exc.status_code) from exc
        except anthropic.APIError as exc:
            raise ProviderError(f"anthropic request failed: {exc}") from exc

    async def stream_chat(self, model: str, messages: list[dict[str, str]]) -> AsyncIterator[str]:
        """Yield response text for *messages* as it arrives.

        Raises:
            RoutingError: If no provider is configured for *model*.
            ProviderError: If every provider failed, or a stream broke midway.
        """
        if infer_provider(model) is Provider.ANTHROPIC and self.credentials.is_configured(Provider.ANTHROPIC):
            async for text in self._stream_anthropic(model, messages):
                yield text
            return

        order = self.attempt_order(model)
        if not order:
            raise RoutingError("No AI provider configured")

        payload = {"model": model, "messages": messages, "stream": True}
        last_error: Optional[ProviderError] = None

        for provider in order:
            url, headers = self.credentials.endpoint(provider, "/chat/completions")
            headers = {**headers, "Accept": "text/event-stream", "Cache-Control": "no-cache"}
            started = False
            try:
                async with self.client.stream(
                    "POST", url, json=payload, headers=headers, timeout=self.timeout,
                ) as response:
                    if response.status_code >= 400:
                        last_error = ProviderError(
                            f"{provider.value} upstream {response.status_code}",
                            status=response.status_code,
                        )
                        logger.warning("Completion via %s failed: HTTP %d",
                                       provider.value, response.status_code)
                        continue

                    ctype = response.headers.get("content-type", "").lower()
                    if "text/event-stream" not in ctype:
                        text = content_from_body(await response.aread())
                        if text:
                            yield text
                        return

                    async for delta in iter_deltas(response.aiter_lines()):
                        started = True
                        yield delta
                    return
            except _TRANSPORT_ERRORS as exc:
                if started:
                    raise ProviderError(f"{provider.value} stream interrupted: {exc}") from exc
                logger.warning("Completion via %s failed: %s", provider.value, exc)
                last_error = ProviderError(f"{provider.value} request failed: {exc}")

        raise last_error or ProviderError("All upstream attempts failed")
