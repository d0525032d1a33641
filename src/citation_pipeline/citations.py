from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any
from urllib.parse import urlsplit

from citation_pipeline.models import Citation, SearchResult

logger = logging.getLogger(__name__)

PLACEHOLDER_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "example.com", "test.com"})
PLACEHOLDER_SUFFIXES = (".local", ".example.com", ".test.com")
TRAILING_PUNCTUATION = ".,;:!?'\"])}>"

_MARKDOWN_LINK_RE = re.compile(r"\[([^\]\n]+)\]\(\s*(https?://[^\s)]+)(?:\s+\"([^\"]*)\")?\s*\)")
_NUMBERED_MARKER_RE = re.compile(r"\[(\d{1,3})\][^\n\[]*?(https?://[^\s\]<>)\"']+)")
_REFERENCES_HEADING_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?\**\s*(?:references|sources|citations|bibliography)\s*\**\s*(?::|$)",
    re.IGNORECASE | re.MULTILINE,
)
_BARE_URL_RE = re.compile(r"https?://[^\s\]<>)\"'`]+")


def _strip_trailing(url: str) -> str:
    return url.rstrip(TRAILING_PUNCTUATION)


def _acceptable_host(host: str) -> bool:
    if not host or "." not in host:
        return False
    return host not in PLACEHOLDER_HOSTS and not host.endswith(PLACEHOLDER_SUFFIXES)


def normalize_citation_url(raw: str) -> str | None:
    """Reduce a URL to scheme, host and path. ``None`` when it is not a usable web citation."""
    candidate = _strip_trailing(raw.strip())
    try:
        parts = urlsplit(candidate)
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https"):
        return None
    if not _acceptable_host(host):
        return None
    netloc = f"{host}:{port}" if port else host
    path = parts.path or "/"
    return f"{parts.scheme.lower()}://{netloc}{path}"


def _markdown_links(text: str) -> Iterable[tuple[str, str | None, str]]:
    for match in _MARKDOWN_LINK_RE.finditer(text):
        label, url, title = match.groups()
        yield url, (title or label).strip(), "markdown-link"


def _numbered_markers(text: str) -> Iterable[tuple[str, str | None, str]]:
    for match in _NUMBERED_MARKER_RE.finditer(text):
        yield match.group(2), None, "numbered-marker"


def _references_section(text: str) -> Iterable[tuple[str, str | None, str]]:
    headings = list(_REFERENCES_HEADING_RE.finditer(text))
    if not headings:
        return
    section = text[headings[-1].end() :]
    for match in _BARE_URL_RE.finditer(section):
        yield match.group(0), None, "references-section"


def _bare_urls(text: str) -> Iterable[tuple[str, str | None, str]]:
    for match in _BARE_URL_RE.finditer(text):
        yield match.group(0), None, "bare-url"


STRUCTURED_STRATEGIES = (_markdown_links, _numbered_markers, _references_section)


def _collect(candidates: Iterable[tuple[str, str | None, str]], seen: dict[str, Citation]) -> None:
    for raw_url, title, source in candidates:
        url = normalize_citation_url(raw_url)
        if url is None or url in seen:
            continue
        seen[url] = Citation(url=url, position=len(seen) + 1, title=title, source=source)


def extract_citations(text: str | None) -> list[Citation]:
    """Pull cited URLs out of a free-text answer.

    Markdown links, numbered markers and a trailing references section are
    tried in that order and merged; bare URLs are used only when none of them
    produced anything. Positions are renumbered 1..n after deduplication.
    """
    if not text:
        return []
    seen: dict[str, Citation] = {}
    for strategy in STRUCTURED_STRATEGIES:
        _collect(strategy(text), seen)
    if not seen:
        _collect(_bare_urls(text), seen)
    citations = list(seen.values())
    logger.debug("extracted %d citations (%s)", len(citations), ", ".join(sorted({c.source for c in citations})))
    return citations


def citations_from_platform(entries: Iterable[Any]) -> list[Citation]:
    """Citations returned by a platform API, either bare URL strings or ``{"url", "title"}`` objects."""
    seen: dict[str, Citation] = {}
    candidates = []
    for entry in entries:
        if isinstance(entry, str):
            candidates.append((entry, None, "platform-api"))
        elif isinstance(entry, dict) and isinstance(entry.get("url"), str):
            candidates.append((entry["url"], entry.get("title") or None, "platform-api"))
    _collect(candidates, seen)
    return list(seen.values())


def citations_from_search(results: Iterable[SearchResult]) -> list[Citation]:
    seen: dict[str, Citation] = {}
    _collect(((result.url, result.title or None, "search") for result in results), seen)
    return list(seen.values())
