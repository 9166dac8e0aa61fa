"""Error taxonomy for the querybox core.

Suggestion-path errors are absorbed inside the engine (the caller sees a
shorter list). AI-path errors become an assistant message in the transcript.
Only ``ValueError`` and ``KeyError`` for bad input escape to callers.
"""

from __future__ import annotations

from typing import Optional


class QueryBoxError(Exception):
    """Base class for all querybox errors."""


class GatewayTimeout(QueryBoxError, TimeoutError):
    """A remote gateway or web-search call exceeded its budget."""


class ProviderError(QueryBoxError):
    """Non-OK HTTP status or a malformed payload from a provider."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RoutingError(QueryBoxError):
    """No usable model could be resolved for a prompt."""


class AbortError(QueryBoxError):
    """The user cancelled a request. Never reported as a failure."""
