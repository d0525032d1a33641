from __future__ import annotations

import logging
from typing import Any

from citation_pipeline.errors import ScoringFailure
from citation_pipeline.extract.signals import PageSignals
from citation_pipeline.models import ContentQuality, DomainAuthority, EEATAssessment, EEATDimension
from citation_pipeline.scoring.llm import CompletionClient, request_json
from citation_pipeline.scoring.normalize import (
    FieldPath,
    Fallback,
    Ok,
    ScoreResult,
    declared_scale,
    normalize_score,
    normalize_string_list,
    normalize_text,
    resolve_field,
)

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 6000
NOT_DETECTED = "None detected"

# dimension -> (legacy block key, [(evidence field, legacy evidence label)])
DIMENSIONS: dict[str, tuple[str, tuple[tuple[str, str], ...]]] = {
    "experience": (
        "EXPERIENCE_ASSESSMENT",
        (
            ("evidence", "Evidence of first-person experience"),
            ("real_world_application", "Details suggesting real-world application"),
            ("case_studies", "Case studies or specific examples"),
            ("expert_commentary", "Expert commentary"),
            ("temporal_markers", "Temporal markers showing long-term involvement"),
        ),
    ),
    "expertise": (
        "EXPERTISE_ASSESSMENT",
        (
            ("technical_depth", "Technical depth appropriate to topic"),
            ("terminology_usage", "Proper use of industry terminology"),
            ("explanation_quality", "Quality of explanations"),
            ("research_references", "References to research/data"),
            ("detail_level", "Level of detail and specificity"),
            ("industry_knowledge", "Industry knowledge demonstration"),
        ),
    ),
    "authoritativeness": (
        "AUTHORITATIVENESS_ASSESSMENT",
        (
            ("domain_credibility", "Domain credibility factors"),
            ("industry_recognition", "Recognition within industry (based on content)"),
            ("comprehensiveness", "Comprehensiveness expected of an authority"),
            ("citation_quality", "Quality of external citations"),
            ("content_depth", "Content depth compared to typical authority sources"),
            ("credentials", "Credentials or qualifications mentioned"),
        ),
    ),
    "trustworthiness": (
        "TRUSTWORTHINESS_ASSESSMENT",
        (
            ("information_balance", "Balance in presenting information"),
            ("limitation_transparency", "Transparency about limitations"),
            ("fact_opinion_distinction", "Fact vs. opinion distinction"),
            ("information_currency", "Currency of information"),
            ("attribution_practices", "Disclosure and attribution practices"),
            ("accuracy_indicators", "Content accuracy indicators"),
            ("citation_presence", "Presence of citations or references"),
        ),
    ),
}

OVERALL_PATHS: tuple[FieldPath, ...] = (("eeat_score",), ("overall_eeat_score",), ("OVERALL_EEAT_SCORE",))
STRENGTH_PATHS: tuple[FieldPath, ...] = (("strengths",), ("key_strengths",), ("KEY_STRENGTHS",))
IMPROVEMENT_PATHS: tuple[FieldPath, ...] = (
    ("improvement_areas",),
    ("key_improvement_areas",),
    ("KEY_IMPROVEMENT_AREAS",),
)


def score_paths(dimension: str) -> tuple[FieldPath, ...]:
    legacy, _ = DIMENSIONS[dimension]
    return ((dimension, "score"), (f"{dimension}_score",), (legacy, "Score"), (legacy, "score"))


def evidence_paths(dimension: str, field: str, label: str) -> tuple[FieldPath, ...]:
    legacy, _ = DIMENSIONS[dimension]
    return ((dimension, "evidence", field), (dimension, field), (legacy, label))


def _empty_evidence(dimension: str) -> dict[str, str]:
    _, fields = DIMENSIONS[dimension]
    return {field: NOT_DETECTED for field, _ in fields}


def default_eeat() -> EEATAssessment:
    return EEATAssessment(
        eeat_score=5,
        **{name: EEATDimension(score=5, evidence=_empty_evidence(name)) for name in DIMENSIONS},
        strengths=["Default analysis - no strengths identified"],
        improvement_areas=["Default analysis - no improvement areas identified"],
        source="default",
    )


DEFAULT_EEAT = default_eeat()


def proxy_eeat(quality: ContentQuality) -> EEATAssessment:
    """Reuse a strong content-quality E-E-A-T score instead of a second model call."""
    score = quality.eeat_score
    return EEATAssessment(
        eeat_score=score,
        **{name: EEATDimension(score=score, evidence=_empty_evidence(name)) for name in DIMENSIONS},
        strengths=[f"Content quality scoring rated E-E-A-T signals {score}/10"],
        improvement_areas=[],
        source="proxy",
    )


def eeat_from_payload(payload: dict[str, Any]) -> EEATAssessment:
    scale = declared_scale(payload)
    dimensions: dict[str, EEATDimension] = {}
    for name, (_, fields) in DIMENSIONS.items():
        score = normalize_score(resolve_field(payload, score_paths(name)), default=5, scale=scale)
        evidence = {
            field: normalize_text(resolve_field(payload, evidence_paths(name, field, label)), NOT_DETECTED)
            for field, label in fields
        }
        dimensions[name] = EEATDimension(score=score, evidence=evidence)

    overall_raw = resolve_field(payload, OVERALL_PATHS)
    if overall_raw is None:
        mean = sum(dimension.score for dimension in dimensions.values()) / len(dimensions)
        overall = max(1, min(10, int(mean + 0.5)))
    else:
        overall = normalize_score(overall_raw, default=5, scale=scale)

    return EEATAssessment(
        eeat_score=overall,
        **dimensions,
        strengths=normalize_string_list(resolve_field(payload, STRENGTH_PATHS)),
        improvement_areas=normalize_string_list(resolve_field(payload, IMPROVEMENT_PATHS)),
        source="model",
    )


SYSTEM_PROMPT = (
    "You are an expert content evaluator applying search quality evaluator guidelines "
    "for experience, expertise, authoritativeness and trustworthiness. Return ONLY valid JSON."
)


def _prompt_schema() -> str:
    lines = ['  "score_scale": 10,']
    for name, (_, fields) in DIMENSIONS.items():
        evidence = ", ".join(f'"{field}": "..."' for field, _ in fields)
        lines.append(f'  "{name}": {{"score": 1-10, "evidence": {{{evidence}}}}},')
    lines.append('  "eeat_score": 1-10,')
    lines.append('  "strengths": ["up to 5 items"],')
    lines.append('  "improvement_areas": ["up to 5 items"]')
    return "{\n" + "\n".join(lines) + "\n}"


def build_prompt(
    text: str,
    signals: PageSignals,
    authority: DomainAuthority,
    *,
    url: str,
    query_text: str,
) -> str:
    technical = signals.technical
    on_page = signals.on_page
    return (
        f'Evaluate the E-E-A-T of this page, cited for the query "{query_text}".\n\n'
        f"URL: {url}\n"
        f"Title: {on_page.page_title}\n"
        f"Author: {on_page.meta_author or 'unknown'} (authorship clear: {on_page.authorship_clear})\n"
        f"Published: {technical.date_published or 'unknown'}; modified: {technical.date_modified or 'unknown'}\n"
        f"Schema types: {', '.join(technical.schema_types) or 'none'}\n"
        f"Domain authority estimate: {authority.domain_authority}/100\n\n"
        f"Content:\n{text[:MAX_TEXT_CHARS]}\n\n"
        "Score each dimension from 1 to 10 and describe the evidence you found, "
        f'or "{NOT_DETECTED}". Respond with:\n{_prompt_schema()}'
    )


class EEATScorer:
    def __init__(self, client: CompletionClient, *, proxy_threshold: int = 8):
        self.client = client
        self.proxy_threshold = proxy_threshold

    def assess(
        self,
        text: str,
        signals: PageSignals,
        quality: ScoreResult[ContentQuality],
        authority: DomainAuthority,
        *,
        url: str,
        query_text: str,
    ) -> ScoreResult[EEATAssessment]:
        if isinstance(quality, Ok) and quality.value.eeat_score >= self.proxy_threshold:
            logger.debug("using content-quality E-E-A-T proxy for %s", url)
            return Ok(proxy_eeat(quality.value))
        if not text.strip():
            return Fallback(DEFAULT_EEAT, "no page text")

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(text, signals, authority, url=url, query_text=query_text)},
        ]
        try:
            payload = request_json(self.client, messages, stage="eeat", max_tokens=1500)
        except ScoringFailure as exc:
            logger.warning("%s for %s; using defaults", exc, url)
            return Fallback(DEFAULT_EEAT, str(exc))
        return Ok(eeat_from_payload(payload))
