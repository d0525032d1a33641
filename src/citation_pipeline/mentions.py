from __future__ import annotations

import re
from collections.abc import Sequence

from citation_pipeline.models import Citation, ClientProfile, CompetitorMention, MentionSummary

RECOMMENDATION_PHRASES = ("recommend {name}", "{name} is the best", "{name} is a leading", "{name} stands out")
FEATURE_PHRASES = ("{name} is", "{name} offers", "{name} provides")


def count_mentions(text: str, name: str) -> int:
    """Case-insensitive whole-word occurrences of ``name`` in ``text``."""
    name = name.strip()
    if not name or not text:
        return 0
    pattern = re.compile(rf"(?<!\w){re.escape(name)}(?!\w)", re.IGNORECASE)
    return len(pattern.findall(text))


def _bare_domain(domain: str) -> str:
    domain = domain.strip().lower()
    domain = re.sub(r"^https?://", "", domain).split("/", 1)[0]
    return domain.removeprefix("www.")


def domain_cited(domain: str, citations: Sequence[Citation]) -> bool:
    needle = _bare_domain(domain)
    if not needle:
        return False
    return any(needle in citation.domain for citation in citations)


def mention_type(text: str, name: str, *, count: int, cited: bool) -> str:
    """Classify how prominently ``name`` appears, first matching rule wins."""
    lowered = text.lower()
    target = name.strip().lower()
    if target and count:
        if any(phrase.format(name=target) in lowered for phrase in RECOMMENDATION_PHRASES):
            return "recommendation"
        if any(phrase.format(name=target) in lowered for phrase in FEATURE_PHRASES):
            return "featured"
    if cited:
        return "citation"
    if count:
        return "mentioned"
    return "none"


def analyze_mentions(text: str, citations: Sequence[Citation], client: ClientProfile) -> MentionSummary:
    brand_count = count_mentions(text, client.name)
    brand_cited = domain_cited(client.domain, citations)

    competitors = []
    for competitor in client.competitors:
        count = count_mentions(text, competitor.name)
        cited = domain_cited(competitor.domain, citations)
        competitors.append(
            CompetitorMention(
                name=competitor.name,
                domain=competitor.domain,
                count=count,
                mention_type=mention_type(text, competitor.name, count=count, cited=cited),
                domain_cited=cited,
            )
        )

    return MentionSummary(
        brand_name=client.name,
        brand_count=brand_count,
        brand_mention_type=mention_type(text, client.name, count=brand_count, cited=brand_cited),
        brand_domain_cited=brand_cited,
        competitors=competitors,
    )


def query_competition(summary: MentionSummary) -> str:
    has_brand = summary.brand_mentioned
    has_competitors = bool(summary.mentioned_competitors)
    if has_brand and has_competitors:
        return "competitive"
    if has_brand:
        return "defending"
    if has_competitors:
        return "competitor_advantage"
    return "opportunity"


def domain_matches(domain: str, owner_domain: str) -> bool:
    """True when ``domain`` is ``owner_domain`` or one of its subdomains."""
    owner = _bare_domain(owner_domain)
    host = _bare_domain(domain)
    return bool(owner) and (host == owner or host.endswith("." + owner))


def names_on_page(text: str, client: ClientProfile) -> tuple[bool, list[str]]:
    brand = count_mentions(text, client.name) > 0
    competitors = [item.name for item in client.competitors if count_mentions(text, item.name) > 0]
    return brand, competitors
