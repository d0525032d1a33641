from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

from citation_pipeline.extract.dates import modified_date, published_date
from citation_pipeline.extract.document import ParsedDocument
from citation_pipeline.models import OnPageSignals, TechnicalSignals

SEMANTIC_TAGS = ("article", "section", "nav", "aside", "header", "footer", "main")
AUTHORSHIP_PATTERNS = ("author", "byline", "by:", "written by", "posted by", "published by")
VIDEO_MARKERS = ("<video", "youtube.com", "youtube-nocookie.com", "vimeo.com", "wistia", "loom.com")
CDN_MARKERS = ("cdn.", "cloudfront.net", "cloudflare.com", "akamai", "fastly.net", "jsdelivr.net")
_URL_CONTENT_TYPES = (
    ("/blog/", "Blog Post"),
    ("/news/", "News Article"),
    ("/product/", "Product Page"),
    ("/products/", "Product Page"),
    ("/docs/", "Documentation"),
    ("/about", "About Page"),
)


@dataclass(frozen=True)
class PageSignals:
    technical: TechnicalSignals
    on_page: OnPageSignals
    text: str = ""


def page_title(doc: ParsedDocument) -> str:
    """<title>, then og:title, then the first H1, then the URL basename."""
    for candidate in (doc.title_tag(), doc.meta("og:title"), doc.first_heading(1)):
        if candidate:
            return candidate
    basename = unquote(PurePosixPath(doc.path).name)
    if basename:
        return basename
    return f"Page at {doc.hostname or 'unknown'}"


def schema_types(doc: ParsedDocument) -> list[str]:
    found: list[str] = []
    for node in doc.json_ld_nodes():
        value = node.get("@type")
        if isinstance(value, str):
            found.append(value)
        elif isinstance(value, list):
            found.extend(item for item in value if isinstance(item, str))
    found.extend(doc.microdata_types())
    return list(dict.fromkeys(found))


def aria_attributes(doc: ParsedDocument) -> list[str]:
    return sorted(set(doc.aria_suffixes()))


def heading_structure_score(doc: ParsedDocument) -> int:
    counts = doc.heading_counts()
    score = 3
    if any(doc.has_tag(tag) for tag in SEMANTIC_TAGS):
        score += 1
    if counts["h1"] == 1:
        score += 1
    if counts["h2"] > 0:
        score += 1
    if counts["h3"] > 0 and counts["h2"] >= counts["h3"]:
        score += 1
    if doc.html_lang() or doc.has_hreflang():
        score += 1
    return min(10, score)


def internal_link_count(doc: ParsedDocument) -> int:
    count = 0
    for href in doc.hrefs():
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        if href.startswith("/") and not href.startswith("//"):
            count += 1
        elif doc.hostname and doc.hostname in href.lower():
            count += 1
    return count


def folder_depth(url: str) -> int:
    return len([part for part in urlparse(url).path.split("/") if part])


def content_type_from_url(doc: ParsedDocument) -> str:
    lowered = doc.url.lower()
    for marker, label in _URL_CONTENT_TYPES:
        if marker in lowered:
            return label
    if doc.path in ("", "/"):
        return "Homepage"
    if doc.has_tag("article") or doc.contains("blog"):
        return "Article"
    return "Unknown"


def keyword_variations(keyword: str) -> list[str]:
    keyword = keyword.strip()
    if not keyword:
        return []
    variations = [keyword]
    if keyword.endswith("s"):
        variations.append(keyword[:-1])
    else:
        variations.append(f"{keyword}s")
    words = keyword.split()
    if len(words) > 1:
        variations.append(" ".join(reversed(words)))
    return list(dict.fromkeys(variations))


def keyword_matches(doc: ParsedDocument, keyword: str) -> list[str]:
    return [variation for variation in keyword_variations(keyword) if doc.contains(variation)]


def authorship_clear(doc: ParsedDocument) -> bool:
    if doc.meta("author"):
        return True
    return any(doc.contains(pattern) for pattern in AUTHORSHIP_PATTERNS)


def extract_technical_signals(doc: ParsedDocument, status_code: int) -> TechnicalSignals:
    types = schema_types(doc)
    aria = aria_attributes(doc)
    return TechnicalSignals(
        is_crawlable=True,
        http_status=status_code,
        schema_markup_present=bool(types),
        schema_types=types,
        html_structure_score=heading_structure_score(doc),
        aria_labels_present=bool(aria) or doc.has_role_attribute(),
        aria_attributes=aria,
        date_published=published_date(doc),
        date_modified=modified_date(doc),
        mobile_friendly=doc.meta("viewport") is not None,
        meta_description_present=doc.meta("description") is not None,
        social_graphs_present=bool(doc.meta_prefixed("og:") or doc.meta_prefixed("twitter:")),
        cdn_used=any(doc.contains(marker) for marker in CDN_MARKERS),
        lang_declared=doc.html_lang() is not None,
        hreflang_present=doc.has_hreflang(),
        semantic_html_used=any(doc.has_tag(tag) for tag in SEMANTIC_TAGS),
    )


def extract_on_page_signals(doc: ParsedDocument, keyword: str = "") -> OnPageSignals:
    counts = doc.heading_counts()
    return OnPageSignals(
        page_title=page_title(doc),
        meta_description=doc.meta("description") or "",
        meta_author=doc.meta("author"),
        content_type=content_type_from_url(doc),
        word_count=doc.word_count,
        image_count=doc.count_tag("img"),
        video_present=any(doc.contains(marker) for marker in VIDEO_MARKERS),
        table_count=doc.count_tag("table"),
        unordered_list_count=doc.count_tag("ul"),
        ordered_list_count=doc.count_tag("ol"),
        internal_link_count=internal_link_count(doc),
        folder_depth=folder_depth(doc.url),
        authorship_clear=authorship_clear(doc),
        heading_count=sum(counts.values()),
        heading_counts=counts,
        keyword_matches=keyword_matches(doc, keyword),
    )


def extract_signals(html: str, url: str, *, status_code: int = 200, keyword: str = "") -> PageSignals:
    doc = ParsedDocument(html, url)
    return PageSignals(
        technical=extract_technical_signals(doc, status_code),
        on_page=extract_on_page_signals(doc, keyword),
        text=doc.visible_text,
    )
