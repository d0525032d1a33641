from __future__ import annotations

import html as html_lib
import json
import re
from collections.abc import Iterator
from functools import cached_property
from typing import Any
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Comment

# Every regex rule used to read HTML lives in this module. Callers go through
# ParsedDocument so the rules can be swapped for a full parser in one place.

_ATTR_RE = re.compile(
    r"""([a-zA-Z_:][-\w:.]*)\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>]+))"""
)
_META_TAG_RE = re.compile(r"<meta\b[^>]*>", re.IGNORECASE)
_LINK_TAG_RE = re.compile(r"<link\b[^>]*>", re.IGNORECASE)
_TITLE_RE = re.compile(r"<title(?=[\s>])[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_TAG_STRIP_RE = re.compile(r"<[^>]+>")
_JSON_LD_RE = re.compile(
    r"""<script\b[^>]*type\s*=\s*["']application/ld\+json["'][^>]*>(.*?)</script>""",
    re.IGNORECASE | re.DOTALL,
)
_MICRODATA_RE = re.compile(r"""itemtype\s*=\s*["']https?://schema\.org/([^"'\s/]+)""", re.IGNORECASE)
_ARIA_RE = re.compile(r"\baria-([a-z]+)\s*=", re.IGNORECASE)
_ROLE_RE = re.compile(r"""<[a-z][^>]*\brole\s*=""", re.IGNORECASE)
_HREF_RE = re.compile(r"""<a\b[^>]*\bhref\s*=\s*["']([^"']*)["']""", re.IGNORECASE)
_TIME_TAG_RE = re.compile(r"<time\b[^>]*>", re.IGNORECASE)
_HTML_LANG_RE = re.compile(r"""<html\b[^>]*\blang\s*=\s*["']?([a-zA-Z][-a-zA-Z]*)""", re.IGNORECASE)
_HREFLANG_RE = re.compile(r"\bhreflang\s*=", re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<script(?=[\s>/])([^>]*)>(.*?)</script>", re.IGNORECASE | re.DOTALL)
_WORD_RE = re.compile(r"\b\w+\b")
_SPACES_RE = re.compile(r"\s+")

_INVISIBLE_TAGS = ("script", "style", "noscript", "template", "nav", "footer", "iframe", "svg")


def _clean_spaces(value: str) -> str:
    return _SPACES_RE.sub(" ", value).strip()


def _tag_pattern(name: str) -> re.Pattern[str]:
    # "<ul" must be followed by whitespace, ">" or "/" so <ulcustom> is not a <ul>.
    return re.compile(rf"<{re.escape(name)}(?=[\s>/])", re.IGNORECASE)


def _parse_attrs(tag: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in _ATTR_RE.finditer(tag):
        name = match.group(1).lower()
        value = next((group for group in match.groups()[1:] if group is not None), "")
        attrs.setdefault(name, html_lib.unescape(value))
    return attrs


class ParsedDocument:
    """Read-only view over one fetched HTML page."""

    def __init__(self, html: str, url: str):
        self.html = html or ""
        self.url = url
        self.lower = self.html.lower()
        parsed = urlparse(url)
        self.hostname = (parsed.hostname or "").lower()
        self.path = parsed.path or "/"
        self._tag_patterns: dict[str, re.Pattern[str]] = {}

    def count_tag(self, name: str) -> int:
        pattern = self._tag_patterns.get(name)
        if pattern is None:
            pattern = self._tag_patterns[name] = _tag_pattern(name)
        return len(pattern.findall(self.html))

    def has_tag(self, name: str) -> bool:
        return self.count_tag(name) > 0

    def contains(self, needle: str) -> bool:
        return needle.lower() in self.lower

    def heading_counts(self) -> dict[str, int]:
        return {f"h{level}": self.count_tag(f"h{level}") for level in range(1, 7)}

    @cached_property
    def meta_tags(self) -> list[dict[str, str]]:
        return [_parse_attrs(tag) for tag in _META_TAG_RE.findall(self.html)]

    def meta(self, key: str) -> str | None:
        """Content of the first meta tag whose name, property or itemprop is ``key``."""
        wanted = key.lower()
        for attrs in self.meta_tags:
            for attr in ("name", "property", "itemprop", "http-equiv"):
                if attrs.get(attr, "").lower() == wanted:
                    content = attrs.get("content", "").strip()
                    if content:
                        return content
        return None

    def meta_prefixed(self, prefix: str) -> list[str]:
        names = []
        for attrs in self.meta_tags:
            key = attrs.get("property") or attrs.get("name") or ""
            if key.lower().startswith(prefix):
                names.append(key.lower())
        return names

    @cached_property
    def link_tags(self) -> list[dict[str, str]]:
        return [_parse_attrs(tag) for tag in _LINK_TAG_RE.findall(self.html)]

    def title_tag(self) -> str | None:
        match = _TITLE_RE.search(self.html)
        if not match:
            return None
        text = _clean_spaces(html_lib.unescape(_TAG_STRIP_RE.sub(" ", match.group(1))))
        return text or None

    def first_heading(self, level: int = 1) -> str | None:
        pattern = re.compile(rf"<h{level}(?=[\s>])[^>]*>(.*?)</h{level}>", re.IGNORECASE | re.DOTALL)
        match = pattern.search(self.html)
        if not match:
            return None
        text = _clean_spaces(html_lib.unescape(_TAG_STRIP_RE.sub(" ", match.group(1))))
        return text or None

    @cached_property
    def json_ld(self) -> list[Any]:
        """Decoded JSON-LD blocks; undecodable blocks are ignored."""
        blocks: list[Any] = []
        for raw in _JSON_LD_RE.findall(self.html):
            text = raw.strip()
            if not text:
                continue
            try:
                blocks.append(json.loads(text))
            except json.JSONDecodeError:
                continue
        return blocks

    def json_ld_nodes(self) -> Iterator[dict[str, Any]]:
        """Every JSON-LD object, descending into lists and @graph containers."""
        stack: list[Any] = list(reversed(self.json_ld))
        while stack:
            node = stack.pop()
            if isinstance(node, list):
                stack.extend(reversed(node))
            elif isinstance(node, dict):
                yield node
                graph = node.get("@graph")
                if graph is not None:
                    stack.append(graph)

    def microdata_types(self) -> list[str]:
        return _MICRODATA_RE.findall(self.html)

    def aria_suffixes(self) -> list[str]:
        return [suffix.lower() for suffix in _ARIA_RE.findall(self.html)]

    def has_role_attribute(self) -> bool:
        return _ROLE_RE.search(self.html) is not None

    def hrefs(self) -> list[str]:
        return [html_lib.unescape(href).strip() for href in _HREF_RE.findall(self.html)]

    def time_tags(self) -> list[dict[str, str]]:
        return [_parse_attrs(tag) for tag in _TIME_TAG_RE.findall(self.html)]

    def html_lang(self) -> str | None:
        match = _HTML_LANG_RE.search(self.html)
        return match.group(1) if match else None

    def has_hreflang(self) -> bool:
        return _HREFLANG_RE.search(self.html) is not None

    def has_empty_element(self, element_id: str) -> bool:
        """True when an element with this id exists and has no content between its tags."""
        pattern = re.compile(
            rf"""<([a-z][a-z0-9]*)\b[^>]*\bid\s*=\s*["']{re.escape(element_id)}["'][^>]*>\s*</\1\s*>""",
            re.IGNORECASE,
        )
        return pattern.search(self.html) is not None

    @cached_property
    def inline_scripts(self) -> list[str]:
        scripts = []
        for attrs, body in _SCRIPT_RE.findall(self.html):
            if "src=" in attrs.lower():
                continue
            scripts.append(body)
        return scripts

    @cached_property
    def visible_text(self) -> str:
        """Page text with scripts, styles, navigation, footers, frames and comments removed."""
        if not self.html.strip():
            return ""
        soup = BeautifulSoup(self.html, "html.parser")
        for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
            comment.extract()
        for tag in soup.find_all(list(_INVISIBLE_TAGS)):
            tag.extract()
        head = soup.find("head")
        if head is not None:
            head.extract()
        return _clean_spaces(soup.get_text(" ", strip=True))

    @cached_property
    def word_count(self) -> int:
        return len(_WORD_RE.findall(self.visible_text))
