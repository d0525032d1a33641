from __future__ import annotations

import json
import logging

from citation_pipeline.errors import ScoringFailure
from citation_pipeline.extract.signals import PageSignals
from citation_pipeline.models import DEFAULT_CONTENT_QUALITY, ContentQuality
from citation_pipeline.scoring.llm import CompletionClient, request_json
from citation_pipeline.scoring.normalize import (
    Fallback,
    Ok,
    ScoreResult,
    declared_scale,
    normalize_bool,
    normalize_choice,
    normalize_score,
    normalize_sentiment,
    normalize_text,
)

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 4000
ROCK_PAPER_SCISSORS = ("Rock", "Paper", "Scissors")
SCORE_FIELDS = (
    "content_depth_score",
    "content_uniqueness",
    "content_optimization_score",
    "readability_score",
    "analysis_score",
    "citation_match_quality",
    "eeat_score",
    "ai_content_detection",
)
FLAG_FIELDS = ("has_statistics", "has_quotes", "has_citations", "has_research")

SYSTEM_PROMPT = (
    "You are a content analyst specializing in SEO and content quality. "
    "Return ONLY valid JSON with the exact fields requested."
)

PROMPT_TEMPLATE = """Analyze this web page content that was cited in response to the query: "{query}"

URL: {url}
Structural signals already measured:
{signals}

Content:
{text}

Return ONLY a JSON object with these fields:
{{
  "score_scale": 10,
  "content_type": "Blog Post, Product Page, Landing Page, Documentation, etc.",
  "rock_paper_scissors": "Rock, Paper, or Scissors (Rock=factual reference, Paper=comprehensive guide, Scissors=persuasive/sales)",
  "content_depth_score": (1-10, 10 = most comprehensive),
  "content_uniqueness": (1-10, 10 = most unique),
  "content_optimization_score": (1-10, 10 = best optimized),
  "readability_score": (1-10, 10 = easiest to read),
  "analysis_score": (1-10 overall quality),
  "citation_match_quality": (1-10, how well this content answers the query),
  "eeat_score": (1-10, strength of experience, expertise, authoritativeness and trust signals),
  "ai_content_detection": (1-10, 10 = most likely human-written),
  "sentiment_score": (-1 to 1),
  "has_statistics": true/false,
  "has_quotes": true/false,
  "has_citations": true/false,
  "has_research": true/false,
  "topical_cluster": "Main topic category of this content"
}}"""


def signal_summary(signals: PageSignals) -> str:
    on_page = signals.on_page
    technical = signals.technical
    summary = {
        "title": on_page.page_title,
        "word_count": on_page.word_count,
        "headings": on_page.heading_counts,
        "lists": {"unordered": on_page.unordered_list_count, "ordered": on_page.ordered_list_count},
        "tables": on_page.table_count,
        "schema_types": technical.schema_types,
        "structure_score": technical.html_structure_score,
        "authorship_clear": on_page.authorship_clear,
        "date_published": technical.date_published,
        "keyword_matches": on_page.keyword_matches,
    }
    return json.dumps(summary, ensure_ascii=False)


def content_quality_from_payload(payload: dict) -> ContentQuality:
    """Validate a decoded model response field by field; unknown values take the default."""
    scale = declared_scale(payload)
    defaults = DEFAULT_CONTENT_QUALITY
    values: dict[str, object] = {
        name: normalize_score(payload.get(name), default=getattr(defaults, name), scale=scale)
        for name in SCORE_FIELDS
    }
    values.update(
        {name: normalize_bool(payload.get(name), default=getattr(defaults, name)) for name in FLAG_FIELDS}
    )
    values["sentiment_score"] = normalize_sentiment(payload.get("sentiment_score"), defaults.sentiment_score)
    values["rock_paper_scissors"] = normalize_choice(
        payload.get("rock_paper_scissors"), ROCK_PAPER_SCISSORS, defaults.rock_paper_scissors
    )
    values["content_type"] = normalize_text(payload.get("content_type"), defaults.content_type)
    values["topical_cluster"] = normalize_text(payload.get("topical_cluster"), defaults.topical_cluster)
    return ContentQuality(**values)


class QualityScorer:
    def __init__(self, client: CompletionClient):
        self.client = client

    def score(self, text: str, signals: PageSignals, *, url: str, query_text: str) -> ScoreResult[ContentQuality]:
        if not text.strip():
            return Fallback(DEFAULT_CONTENT_QUALITY, "no page text")

        prompt = PROMPT_TEMPLATE.format(
            query=query_text,
            url=url,
            signals=signal_summary(signals),
            text=text[:MAX_TEXT_CHARS],
        )
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            payload = request_json(self.client, messages, stage="content_quality", max_tokens=800)
        except ScoringFailure as exc:
            logger.warning("%s for %s; using defaults", exc, url)
            return Fallback(DEFAULT_CONTENT_QUALITY, str(exc))
        return Ok(content_quality_from_payload(payload))
