from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from citation_pipeline.citations import citations_from_platform, citations_from_search, extract_citations
from citation_pipeline.errors import CompletionError, QueryExecutionError, ScoringFailure
from citation_pipeline.mentions import analyze_mentions, count_mentions, query_competition
from citation_pipeline.models import Citation, QueryExecutionResult, QueryMetadata, QueryPayload
from citation_pipeline.scoring.llm import CompletionClient, request_json
from citation_pipeline.scoring.normalize import normalize_choice, normalize_sentiment, normalize_text
from citation_pipeline.search import SearchClient

logger = logging.getLogger(__name__)

MAX_METADATA_RESPONSE_CHARS = 2000
MAX_SENTIMENT_RESPONSE_CHARS = 1000

CHATGPT_SYSTEM_PROMPT = (
    "You are a helpful assistant. When answering questions, provide detailed information and cite "
    "your sources using [1], [2], etc. format. Include the actual URLs for your citations."
)
PERPLEXITY_SYSTEM_PROMPT = "You are a helpful assistant. Provide detailed information with citations."

METADATA_CHOICES: dict[str, tuple[str, ...]] = {
    "query_category": (
        "general",
        "product",
        "service",
        "comparison",
        "troubleshooting",
        "educational",
        "pricing",
        "features",
    ),
    "query_type": (
        "question",
        "command",
        "research",
        "conversational",
        "comparison",
        "definition",
        "how_to",
        "example",
    ),
    "funnel_stage": ("awareness", "consideration", "decision", "retention"),
    "query_complexity": ("simple", "moderate", "complex"),
    "response_match": ("direct", "partial", "tangential"),
    "response_outcome": ("answer", "recommendation", "comparison", "explanation"),
    "action_orientation": (
        "passive",
        "suggestive",
        "directive",
        "interactive",
        "transactional",
        "referral",
        "educational",
    ),
}

# (terms, value) pairs; first rule with any term present wins
CATEGORY_RULES = (
    (("compare", "vs", "difference"), "comparison"),
    (("how", "why", "what"), "educational"),
    (("price", "cost", "pricing"), "pricing"),
    (("best", "top"), "product"),
)
TOPIC_RULES = (
    (("construction",), "construction software"),
    (("workforce",), "workforce management"),
    (("email",), "email tools"),
    (("marketing",), "marketing tools"),
    (("project",), "project management"),
)
QUERY_TYPE_RULES = (
    (("how to", "how do i", "how can i"), "how_to"),
    (("what is", "define", "definition"), "definition"),
    (("compare", "vs", "versus"), "comparison"),
    (("example", "examples", "show me"), "example"),
    (("research", "study", "analysis"), "research"),
    (("please", "can you", "help me"), "command"),
    (("i want", "i need", "looking for"), "conversational"),
)
FUNNEL_RULES = (
    (("compare", "vs", "alternative"), "consideration"),
    (("buy", "price", "demo"), "decision"),
)
ACTION_BY_QUERY_TYPE = {"command": "directive", "how_to": "educational"}


def _contains_term(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", text) is not None


def _first_rule(text: str, rules: tuple[tuple[tuple[str, ...], str], ...], default: str) -> str:
    for terms, value in rules:
        if any(_contains_term(text, term) for term in terms):
            return value
    return default


def heuristic_metadata(query: str, intent: str = "") -> QueryMetadata:
    """Keyword rules used whenever the classification prompt is unavailable or leaves a field out."""
    lowered = query.lower()
    word_count = len(query.split())
    query_type = _first_rule(lowered, QUERY_TYPE_RULES, "question")
    if word_count > 15:
        complexity = "complex"
    elif word_count > 8:
        complexity = "moderate"
    else:
        complexity = "simple"
    return QueryMetadata(
        query_category=_first_rule(lowered, CATEGORY_RULES, "general"),
        query_topic=_first_rule(lowered, TOPIC_RULES, "general"),
        query_type=query_type,
        query_intent=intent,
        funnel_stage=_first_rule(lowered, FUNNEL_RULES, "awareness"),
        query_complexity=complexity,
        action_orientation=ACTION_BY_QUERY_TYPE.get(query_type, "passive"),
    )


def metadata_from_payload(payload: Mapping[str, Any], fallback: QueryMetadata) -> QueryMetadata:
    values = {
        name: normalize_choice(payload.get(name), options, getattr(fallback, name))
        for name, options in METADATA_CHOICES.items()
    }
    values["query_topic"] = normalize_text(payload.get("query_topic"), fallback.query_topic)
    return fallback.model_copy(update=values)


@dataclass(frozen=True)
class PlatformAnswer:
    text: str
    model: str
    citations: list[Any] = field(default_factory=list)


class Platform(Protocol):
    def ask(self, query: str) -> PlatformAnswer: ...


class ChatGPTPlatform:
    def __init__(self, client: CompletionClient, *, model: str):
        self.client = client
        self.model = model

    def ask(self, query: str) -> PlatformAnswer:
        messages = [
            {"role": "system", "content": CHATGPT_SYSTEM_PROMPT},
            {"role": "user", "content": query},
        ]
        try:
            text = self.client.complete(messages, temperature=0.7, max_tokens=2000, json_mode=False)
        except CompletionError as exc:
            raise QueryExecutionError(f"chatgpt query failed: {exc}") from exc
        return PlatformAnswer(text=text, model=self.model)


class PerplexityPlatform:
    """OpenAI-compatible chat endpoint; the response may carry its own ``citations`` array."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str,
        model: str,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.client = client or httpx.Client(timeout=timeout)

    def ask(self, query: str) -> PlatformAnswer:
        if not self.api_key:
            raise QueryExecutionError("PERPLEXITY_API_KEY not set")
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": PERPLEXITY_SYSTEM_PROMPT},
                {"role": "user", "content": query},
            ],
            "temperature": 0.7,
            "max_tokens": 2000,
            "return_citations": True,
        }
        try:
            response = self.client.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise QueryExecutionError(
                f"perplexity returned HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise QueryExecutionError(f"perplexity query failed: {exc}") from exc

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise QueryExecutionError("perplexity response had no message content") from exc
        citations = data.get("citations")
        return PlatformAnswer(
            text=text,
            model=str(data.get("model") or self.model),
            citations=citations if isinstance(citations, list) else [],
        )


class QueryExecutor:
    """Asks the configured platform, then derives citations, mentions, metadata and sentiment."""

    def __init__(
        self,
        platforms: Mapping[str, Platform],
        scoring_client: CompletionClient,
        *,
        search: SearchClient | None = None,
    ):
        self.platforms = platforms
        self.scoring_client = scoring_client
        self.search = search

    def execute(self, payload: QueryPayload) -> QueryExecutionResult:
        platform = self.platforms.get(payload.platform)
        if platform is None:
            raise QueryExecutionError(f"platform {payload.platform!r} is not configured")

        answer = platform.ask(payload.query_text)
        citations = self._citations(answer, payload.query_text)
        logger.info(
            "%s answered %r with %d characters and %d citations",
            payload.platform,
            payload.query_text[:80],
            len(answer.text),
            len(citations),
        )

        mentions = analyze_mentions(answer.text, citations, payload.client)
        metadata = self.classify(payload.query_text, answer.text, payload.intent)
        metadata = metadata.model_copy(update={"query_competition": query_competition(mentions)})
        sentiment = self.brand_sentiment(answer.text, payload.client.name)

        return QueryExecutionResult(
            platform=payload.platform,
            model=answer.model,
            response_text=answer.text,
            citations=citations,
            mentions=mentions,
            metadata=metadata,
            brand_sentiment=sentiment,
        )

    def _citations(self, answer: PlatformAnswer, query: str) -> list[Citation]:
        citations = citations_from_platform(answer.citations)
        if not citations:
            citations = extract_citations(answer.text)
        if citations or self.search is None:
            return citations
        try:
            results = self.search.search(query)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("search augmentation failed for %r: %s", query[:80], exc)
            return []
        return citations_from_search(results)

    def classify(self, query: str, response_text: str, intent: str = "") -> QueryMetadata:
        fallback = heuristic_metadata(query, intent)
        excerpt = response_text[:MAX_METADATA_RESPONSE_CHARS]
        if len(response_text) > MAX_METADATA_RESPONSE_CHARS:
            excerpt += "..."
        fields = "\n".join(f'  "{name}": one of {", ".join(options)}' for name, options in METADATA_CHOICES.items())
        prompt = (
            "Analyze this query and AI response. Return a JSON object with these exact fields "
            "and choose ONLY from the specified values.\n\n"
            f'Query: "{query}"\nResponse excerpt: "{excerpt}"\n\n'
            f'{{\n{fields}\n  "query_topic": main topic in 2-4 words\n}}'
        )
        messages = [
            {
                "role": "system",
                "content": "You are a metadata extraction assistant. Return only valid JSON with the "
                "exact fields requested. Choose values ONLY from the options provided.",
            },
            {"role": "user", "content": prompt},
        ]
        try:
            payload = request_json(self.scoring_client, messages, stage="query_metadata", max_tokens=200)
        except ScoringFailure as exc:
            logger.warning("%s; using keyword heuristics", exc)
            return fallback
        return metadata_from_payload(payload, fallback)

    def brand_sentiment(self, response_text: str, brand: str) -> float:
        if not brand or count_mentions(response_text, brand) == 0:
            return 0.0
        messages = [
            {
                "role": "system",
                "content": "You are a sentiment analysis assistant. Analyze the sentiment of brand "
                "mentions and return a sentiment score.",
            },
            {
                "role": "user",
                "content": f'Analyze the sentiment towards "{brand}" in this text. Return ONLY a JSON '
                'object with a "sentiment" field containing a number between -1 (very negative) '
                f"and 1 (very positive):\n\n{response_text[:MAX_SENTIMENT_RESPONSE_CHARS]}",
            },
        ]
        try:
            payload = request_json(self.scoring_client, messages, stage="brand_sentiment", max_tokens=30)
        except ScoringFailure as exc:
            logger.warning("%s; sentiment set to 0", exc)
            return 0.0
        return normalize_sentiment(payload.get("sentiment"), 0.0)

    def close(self) -> None:
        for closeable in (*self.platforms.values(), self.search):
            client = getattr(closeable, "client", None)
            if isinstance(client, httpx.Client):
                client.close()
