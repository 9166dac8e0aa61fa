"""Workspace categorisation of URLs.

Maps a URL's host onto one of the start page's workspace categories so that
browsing-history suggestions belonging to the active workspace can be boosted:

- DEV       github, gitlab, npm, Stack Overflow, Codeberg
- RESEARCH  Wikipedia, arXiv, OpenAlex, Google Scholar
- MEDIA     YouTube, Vimeo, SoundCloud
- SOCIAL    Twitter / X, Reddit
- SHOPPING  Amazon, eBay
- MAIL      Gmail, Proton, Outlook
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


# ── Workspace enum ─────────────────────────────────────────────────────────────


class Workspace(str, Enum):
    """Workspace categories a host can belong to."""

    DEV = "dev"
    RESEARCH = "research"
    MEDIA = "media"
    SOCIAL = "social"
    SHOPPING = "shopping"
    MAIL = "mail"


# ── Host allow-lists ───────────────────────────────────────────────────────────

#: Checked in declaration order; the first matching workspace wins.
WORKSPACE_HOSTS: dict[Workspace, frozenset[str]] = {
    Workspace.DEV: frozenset([
        "github.com", "gitlab.com", "npmjs.com", "stackoverflow.com", "codeberg.org",
    ]),
    Workspace.RESEARCH: frozenset([
        "wikipedia.org", "arxiv.org", "openalex.org", "scholar.google.com",
    ]),
    Workspace.MEDIA: frozenset([
        "youtube.com", "youtu.be", "vimeo.com", "soundcloud.com",
    ]),
    Workspace.SOCIAL: frozenset(["twitter.com", "x.com", "reddit.com"]),
    Workspace.SHOPPING: frozenset(["amazon.com", "ebay.com"]),
    Workspace.MAIL: frozenset(["gmail.com", "proton.me", "outlook.com"]),
}

_WWW_PREFIX = re.compile(r"^www\.")


# ── URL helpers ────────────────────────────────────────────────────────────────


def hostname(url: str) -> str:
    """Return the lowercased host of *url* without ``www.``, or ``""``.

    Examples:
        >>> hostname("https://www.GitHub.com/anthropics")
        'github.com'
        >>> hostname("not a url")
        ''
    """
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        logger.debug("Failed to parse URL host: %r", url)
        return ""
    return _WWW_PREFIX.sub("", host.lower())


def url_path(url: str) -> str:
    """Return the lowercased path component of *url*, or ``""``."""
    try:
        return (urlparse(url).path or "").lower()
    except ValueError:
        return ""


# ── Classification ─────────────────────────────────────────────────────────────


def classify_host(host: str) -> Optional[Workspace]:
    """Return the workspace for a bare host, matching sub-domains too."""
    host = host.lower()
    if not host:
        return None
    for workspace, hosts in WORKSPACE_HOSTS.items():
        if any(host == h or host.endswith(f".{h}") for h in hosts):
            return workspace
    return None


def classify_url(url: str) -> Optional[Workspace]:
    """Classify a URL into a ``Workspace`` based on its host.

    Examples:
        >>> classify_url("https://github.com/anthropics/anthropic-sdk-python")
        <Workspace.DEV: 'dev'>
        >>> classify_url("https://en.wikipedia.org/wiki/Python")
        <Workspace.RESEARCH: 'research'>
        >>> classify_url("https://example.com") is None
        True
    """
    return classify_host(hostname(url))
