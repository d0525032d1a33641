from __future__ import annotations

from pathlib import PurePosixPath
from urllib.parse import urlparse

from citation_pipeline.errors import ClassificationSkip

SEARCH_ENGINE_HOSTS = ("bing.com", "yahoo.com", "duckduckgo.com", "baidu.com", "yandex.com", "yandex.ru")
SOCIAL_HOSTS = (
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
    "tiktok.com",
    "pinterest.com",
    "threads.net",
)
NON_HTML_EXTENSIONS = frozenset(
    {
        ".pdf",
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".webp",
        ".svg",
        ".mp4",
        ".mp3",
        ".wav",
        ".zip",
        ".doc",
        ".docx",
        ".xls",
        ".xlsx",
        ".ppt",
        ".pptx",
    }
)
# Matched against whole path segments: /404 is skipped, /404-test is not.
ERROR_PATH_SEGMENTS = frozenset(
    {"404", "404.html", "not-found", "notfound", "page-not-found", "error", "error.html", "errors"}
)


def _host_matches(host: str, domains: tuple[str, ...]) -> str | None:
    for domain in domains:
        if host == domain or host.endswith(f".{domain}"):
            return domain
    return None


def skip_reason(url: str) -> str | None:
    """Why ``url`` should not be fetched at all, or None when it is worth a request."""
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        return f"invalid URL: {exc}"

    if parsed.scheme not in ("http", "https"):
        return f"unsupported scheme: {parsed.scheme or 'none'}"
    host = (parsed.hostname or "").lower()
    if not host:
        return "missing host"

    path = parsed.path.lower()
    if "google." in host and path.startswith("/search"):
        return "search engine results page (google)"
    engine = _host_matches(host, SEARCH_ENGINE_HOSTS)
    if engine:
        return f"search engine results page ({engine})"
    social = _host_matches(host, SOCIAL_HOSTS)
    if social:
        return f"social media domain ({social})"

    suffix = PurePosixPath(path).suffix
    if suffix in NON_HTML_EXTENSIONS:
        return f"non-HTML file type ({suffix})"

    segments = [segment for segment in path.split("/") if segment]
    for segment in segments:
        if segment in ERROR_PATH_SEGMENTS:
            return f"error page path segment (/{segment})"
    return None


def ensure_fetchable(url: str) -> None:
    reason = skip_reason(url)
    if reason is not None:
        raise ClassificationSkip(url, reason)
