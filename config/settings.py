"""Application settings — all configuration loaded from environment variables.

Usage:
    from config.settings import Settings
    settings = Settings()
    settings.validate()   # raises ValueError on impossible values
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Centralised application configuration.

    All values are read from environment variables at instantiation time
    so that tests can override them by patching ``os.environ``.
    """

    # ── Storage ─────────────────────────────────────────────────────────────
    db_path: str = field(
        default_factory=lambda: os.environ.get("DB_PATH", "")
    )

    # ── Flask ───────────────────────────────────────────────────────────────
    debug: bool = field(default_factory=lambda: _env_bool("FLASK_DEBUG"))
    port: int = field(
        default_factory=lambda: int(os.environ.get("PORT", "3200"))
    )

    # ── Suggestions ─────────────────────────────────────────────────────────
    suggest_provider: str = field(
        default_factory=lambda: os.environ.get("SUGGEST_PROVIDER", "duckduckgo")
    )
    #: Base URL of a SearXNG instance (autocompleter + JSON search).
    searxng_base_url: str = field(
        default_factory=lambda: os.environ.get("SEARXNG_BASE_URL", "http://127.0.0.1:8080")
    )
    #: For ``custom`` providers: URL prefix the encoded query is appended to.
    suggest_custom_base_url: str = field(
        default_factory=lambda: os.environ.get("SUGGEST_CUSTOM_BASE_URL", "")
    )
    suggest_custom_mode: str = field(
        default_factory=lambda: os.environ.get("SUGGEST_CUSTOM_MODE", "")
    )
    #: Remote autocomplete budget in seconds.
    suggest_timeout: float = field(
        default_factory=lambda: float(os.environ.get("SUGGEST_TIMEOUT", "0.15"))
    )
    suggest_cache_ttl: float = field(
        default_factory=lambda: float(os.environ.get("SUGGEST_CACHE_TTL", "30"))
    )
    cap_suggestions_small: bool = field(
        default_factory=lambda: _env_bool("CAP_SUGGESTIONS_7")
    )
    suggestions_at_bottom: bool = field(
        default_factory=lambda: _env_bool("SUGGESTIONS_AT_BOTTOM")
    )

    # ── Web augmentation ────────────────────────────────────────────────────
    web_search_provider: str = field(
        default_factory=lambda: os.environ.get("WEB_SEARCH_PROVIDER", "searxng")
    )
    firecrawl_base_url: str = field(
        default_factory=lambda: os.environ.get("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev")
    )
    firecrawl_api_key: str = field(
        default_factory=lambda: os.environ.get("FIRECRAWL_API_KEY", "")
    )
    web_results_count: int = field(
        default_factory=lambda: int(os.environ.get("WEB_RESULTS_COUNT", "5"))
    )
    searxng_timeout: float = field(
        default_factory=lambda: float(os.environ.get("SEARXNG_TIMEOUT", "8"))
    )
    firecrawl_timeout: float = field(
        default_factory=lambda: float(os.environ.get("FIRECRAWL_TIMEOUT", "12"))
    )

    # ── AI providers ────────────────────────────────────────────────────────
    ai_enabled: bool = field(default_factory=lambda: _env_bool("AI_ENABLED", "1"))
    ai_model: str = field(default_factory=lambda: os.environ.get("AI_MODEL", ""))
    ai_web_search: bool = field(default_factory=lambda: _env_bool("AI_WEB_SEARCH"))
    ai_memory: str = field(default_factory=lambda: os.environ.get("AI_MEMORY", ""))
    #: Prior user/assistant turns replayed as context with each prompt.
    ai_context_turns: int = field(
        default_factory=lambda: int(os.environ.get("AI_CONTEXT_TURNS", "6"))
    )
    lmstudio_base_url: str = field(
        default_factory=lambda: os.environ.get("LMSTUDIO_BASE_URL", "")
    )
    openai_api_key: str = field(
        default_factory=lambda: os.environ.get("OPENAI_API_KEY", "")
    )
    openai_base_url: str = field(
        default_factory=lambda: os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
    )
    openrouter_api_key: str = field(
        default_factory=lambda: os.environ.get("OPENROUTER_API_KEY", "")
    )
    openrouter_base_url: str = field(
        default_factory=lambda: os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    )
    anthropic_api_key: str = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", "")
    )
    prefer_local: bool = field(default_factory=lambda: _env_bool("AI_PREFER_LOCAL"))

    # ── Routing ─────────────────────────────────────────────────────────────
    routing_enabled: bool = field(
        default_factory=lambda: _env_bool("AI_ROUTING_ENABLED", "1")
    )
    #: Route name ("code" / "long" / "default") → model identifier.
    route_models: dict[str, str] = field(
        default_factory=lambda: {
            "code": os.environ.get("AI_ROUTE_CODE", ""),
            "long": os.environ.get("AI_ROUTE_LONG", ""),
            "default": os.environ.get("AI_ROUTE_DEFAULT", ""),
        }
    )
    completion_timeout: float = field(
        default_factory=lambda: float(os.environ.get("AI_COMPLETION_TIMEOUT", "120"))
    )
    #: Max tokens requested from the Anthropic API (required there).
    anthropic_max_tokens: int = 1200

    def validate(self) -> None:
        """Raise ``ValueError`` if any setting is unusable."""
        for name in ("suggest_timeout", "searxng_timeout", "firecrawl_timeout", "completion_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}.")
        if self.web_results_count < 1:
            raise ValueError("WEB_RESULTS_COUNT must be at least 1.")
        if self.suggest_provider not in ("duckduckgo", "google", "brave", "searxng", "custom"):
            raise ValueError(f"Unknown SUGGEST_PROVIDER {self.suggest_provider!r}.")
