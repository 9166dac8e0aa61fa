"""Model routing heuristics.

Picks a model for a prompt when the user has not pinned one:

- prompt contains code-like tokens  → ``code`` route
- prompt longer than 6000 chars     → ``long`` route
- otherwise                         → ``default`` route

Each route maps to a model id through a configured routing table. With no
table entry, ``choose_auto_model`` picks a default from whichever providers
are configured. Failing that, models come from the discovery endpoint,
filtered by ``filter_discovered``.
"""

from __future__ import annotations

import re
from collections.abc import Collection, Iterable, Mapping, Sequence
from enum import Enum
from typing import Optional

#: Prompts above this many characters take the ``long`` route.
LONG_PROMPT_CHARS = 6000


class Route(str, Enum):
    CODE = "code"
    LONG = "long"
    DEFAULT = "default"


class Provider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    LMSTUDIO = "lmstudio"


_CODE_RE = re.compile(
    r"```|function\s|class\s|import\s|def\s|var\s|let\s|const\s|=>|#include"
    r"|public static void main"
)

#: Discovered models that cannot chat.
_NON_CHAT_RE = re.compile(r"embedding|embed|^text-embedding|pipe|arena", re.IGNORECASE)

#: Local model names worth trying first for code prompts.
_LOCAL_CODER_RE = re.compile(r"code|coder|qwen|deepseek|mistral|llama|phi|gemma", re.IGNORECASE)

#: Asked of a configured local server that listed no models.
FALLBACK_LOCAL_MODEL = "llama-3.1-8b-instruct"

#: Preferred model families for discovery fallback, best first.
_FAMILY_PREFERENCE: list[str] = [
    "llama", "llama3", "llama-3", "qwen", "mistral", "phi", "gemma", "deepseek", "gpt",
]


def looks_like_code(text: str) -> bool:
    """True if *text* contains code-like tokens.

    Examples:
        >>> looks_like_code("def add(a, b): return a + b")
        True
        >>> looks_like_code("what is the capital of France")
        False
    """
    return bool(_CODE_RE.search(text or ""))


def is_long(text: str) -> bool:
    return len(text or "") > LONG_PROMPT_CHARS


def route_for(prompt: str) -> Route:
    if looks_like_code(prompt):
        return Route.CODE
    if is_long(prompt):
        return Route.LONG
    return Route.DEFAULT


def resolve_route(prompt: str, table: Mapping[str, str]) -> Optional[str]:
    """Return the model the routing table assigns to *prompt*, if any.

    Falls back to the ``default`` entry when the specific route is unset.
    """
    route = route_for(prompt)
    model = (table.get(route.value) or "").strip()
    if model:
        return model
    return (table.get(Route.DEFAULT.value) or "").strip() or None


def choose_auto_model(
    prompt: str,
    configured: Collection[Provider],
    prefer_local: bool = False,
    local_models: Sequence[str] = (),
) -> Optional[str]:
    """Pick a model for *prompt* from the providers that are configured.

    Order:
      1. local server, when preferred and it lists models (a coder model for code)
      2. ``deepseek/deepseek-coder`` on OpenRouter for code
      3. ``gpt-4o`` for long prompts (OpenRouter, then OpenAI)
      4. ``gpt-4o-mini`` (OpenAI, then OpenRouter)
      5. the first local model, or ``FALLBACK_LOCAL_MODEL``

    Returns ``None`` when no OpenAI-style provider is configured.
    """
    local = [m for m in local_models if m]
    code = looks_like_code(prompt)
    has_local = Provider.LMSTUDIO in configured

    if prefer_local and has_local and local:
        if code:
            coder = next((m for m in local if _LOCAL_CODER_RE.search(m)), None)
            if coder:
                return coder
        return local[0]
    if code and Provider.OPENROUTER in configured:
        return "deepseek/deepseek-coder"
    if is_long(prompt):
        if Provider.OPENROUTER in configured:
            return "openai/gpt-4o"
        if Provider.OPENAI in configured:
            return "gpt-4o"
    if Provider.OPENAI in configured:
        return "gpt-4o-mini"
    if Provider.OPENROUTER in configured:
        return "openai/gpt-4o-mini"
    if has_local:
        return local[0] if local else FALLBACK_LOCAL_MODEL
    return None


def _family_rank(name: str) -> int:
    lowered = name.lower()
    for i, family in enumerate(_FAMILY_PREFERENCE):
        if family in lowered:
            return i
    return len(_FAMILY_PREFERENCE)


def filter_discovered(models: Iterable[str]) -> list[str]:
    """Drop embedding/pipeline-only names and order by preferred family.

    Examples:
        >>> filter_discovered(["text-embedding-3-small", "gpt-4o", "qwen2.5-7b"])
        ['qwen2.5-7b', 'gpt-4o']
    """
    usable = [str(m) for m in models if m and not _NON_CHAT_RE.search(str(m))]
    return sorted(usable, key=_family_rank)


def infer_provider(model: str) -> Optional[Provider]:
    """Guess which provider serves *model* from its name."""
    m = (model or "").strip().lower()
    if not m:
        return None
    if m.startswith("claude"):
        return Provider.ANTHROPIC
    if "/" in m:
        return Provider.OPENROUTER
    if m.startswith(("gpt-", "o", "text-", "chatgpt-")):
        return Provider.OPENAI
    return Provider.LMSTUDIO
