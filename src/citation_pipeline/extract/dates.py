from __future__ import annotations

from collections.abc import Callable

from dateutil import parser as date_parser

from citation_pipeline.extract.document import ParsedDocument

DateResolver = Callable[[ParsedDocument], str | None]

_MODIFIED_MARKERS = ("modified", "updated")


def _meta(*keys: str) -> DateResolver:
    def resolve(doc: ParsedDocument) -> str | None:
        for key in keys:
            value = doc.meta(key)
            if value:
                return value
        return None

    return resolve


def _is_modified_time(attrs: dict[str, str]) -> bool:
    marker = f"{attrs.get('itemprop', '')} {attrs.get('class', '')}".lower()
    return any(word in marker for word in _MODIFIED_MARKERS)


def _published_time_tag(doc: ParsedDocument) -> str | None:
    for attrs in doc.time_tags():
        if attrs.get("datetime") and not _is_modified_time(attrs):
            return attrs["datetime"]
    return None


def _modified_time_tag(doc: ParsedDocument) -> str | None:
    for attrs in doc.time_tags():
        if attrs.get("datetime") and _is_modified_time(attrs):
            return attrs["datetime"]
    return None


def _json_ld(field: str) -> DateResolver:
    def resolve(doc: ParsedDocument) -> str | None:
        for node in doc.json_ld_nodes():
            value = node.get(field)
            if isinstance(value, str) and value.strip():
                return value
        return None

    return resolve


# Order is precedence: the first resolver that yields a value wins.
PUBLISHED_RESOLVERS: tuple[tuple[str, DateResolver], ...] = (
    ("opengraph", _meta("article:published_time", "og:published_time", "published_time")),
    ("dublin_core", _meta("dc.date.issued", "dcterms.issued", "dcterms.created", "dc.date")),
    ("time_tag", _published_time_tag),
    ("json_ld", _json_ld("datePublished")),
)
MODIFIED_RESOLVERS: tuple[tuple[str, DateResolver], ...] = (
    ("opengraph", _meta("article:modified_time", "og:updated_time", "modified_time")),
    ("dublin_core", _meta("dcterms.modified", "dc.date.modified")),
    ("time_tag", _modified_time_tag),
    ("json_ld", _json_ld("dateModified")),
)


def normalize_date(raw: str) -> str:
    """ISO 8601 form of ``raw`` when it parses; otherwise the trimmed input."""
    text = raw.strip()
    try:
        return date_parser.parse(text).isoformat()
    except (ValueError, OverflowError):
        return text


def resolve_date(
    doc: ParsedDocument, resolvers: tuple[tuple[str, DateResolver], ...]
) -> tuple[str | None, str | None]:
    for source, resolver in resolvers:
        value = resolver(doc)
        if value:
            return normalize_date(value), source
    return None, None


def published_date(doc: ParsedDocument) -> str | None:
    return resolve_date(doc, PUBLISHED_RESOLVERS)[0]


def modified_date(doc: ParsedDocument) -> str | None:
    return resolve_date(doc, MODIFIED_RESOLVERS)[0]
