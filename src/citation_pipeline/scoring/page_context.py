from __future__ import annotations

import logging
from typing import Any, get_args

from citation_pipeline.errors import ScoringFailure
from citation_pipeline.models import ClientProfile, PageContext
from citation_pipeline.scoring.llm import CompletionClient, request_json
from citation_pipeline.scoring.normalize import Fallback, Ok, ScoreResult, normalize_choice, normalize_text

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 4000
DEFAULT_PAGE_CONTEXT = PageContext()

CHOICE_FIELDS: dict[str, tuple[str, ...]] = {
    name: get_args(field.annotation)
    for name, field in PageContext.model_fields.items()
    if name != "analysis_notes"
}

SYSTEM_PROMPT = "You are an SEO analyst classifying why a page was cited. Return ONLY valid JSON."


def page_context_from_payload(payload: dict[str, Any]) -> PageContext:
    values: dict[str, str] = {
        name: normalize_choice(payload.get(name), options, getattr(DEFAULT_PAGE_CONTEXT, name))
        for name, options in CHOICE_FIELDS.items()
    }
    values["analysis_notes"] = normalize_text(payload.get("analysis_notes"), "")
    return PageContext(**values)


def build_prompt(text: str, *, url: str, query_text: str, client: ClientProfile) -> str:
    competitors = ", ".join(competitor.name for competitor in client.competitors) or "none"
    fields = "\n".join(f'  "{name}": one of {" | ".join(options)},' for name, options in CHOICE_FIELDS.items())
    return (
        f'Classify this page cited in response to "{query_text}".\n'
        f"URL: {url}\n"
        f"Brand: {client.name or 'unknown'}\n"
        f"Competitors: {competitors}\n\n"
        f"Content:\n{text[:MAX_TEXT_CHARS]}\n\n"
        f'Return a JSON object:\n{{\n{fields}\n  "analysis_notes": "one or two sentences"\n}}'
    )


class ContextScorer:
    def __init__(self, client: CompletionClient):
        self.client = client

    def assess(self, text: str, *, url: str, query_text: str, client: ClientProfile) -> ScoreResult[PageContext]:
        if not text.strip():
            return Fallback(DEFAULT_PAGE_CONTEXT, "no page text")
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(text, url=url, query_text=query_text, client=client)},
        ]
        try:
            payload = request_json(self.client, messages, stage="page_context", temperature=0.2, max_tokens=600)
        except ScoringFailure as exc:
            logger.warning("%s for %s; using defaults", exc, url)
            return Fallback(DEFAULT_PAGE_CONTEXT, str(exc))
        return Ok(page_context_from_payload(payload))
