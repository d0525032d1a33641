from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Job:
    id: int
    run_id: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    claimed_by: str | None
    created_at: str
    started_at: str | None
    completed_at: str | None
    last_error: str | None
    result_summary: dict[str, Any] | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class Competitor(BaseModel):
    name: str
    domain: str = ""


class ClientProfile(BaseModel):
    name: str = ""
    domain: str = ""
    competitors: list[Competitor] = Field(default_factory=list)


class QueryPayload(BaseModel):
    query_text: str = Field(min_length=1)
    keyword: str = ""
    intent: str = ""
    platform: Literal["chatgpt", "perplexity"] = "chatgpt"
    client: ClientProfile = Field(default_factory=ClientProfile)


@dataclass(frozen=True)
class Citation:
    url: str
    position: int
    title: str | None = None
    source: str = "bare-url"

    @property
    def domain(self) -> str:
        return (urlparse(self.url).hostname or "").lower()


@dataclass(frozen=True)
class CompetitorMention:
    name: str
    domain: str
    count: int
    mention_type: str
    domain_cited: bool = False


@dataclass(frozen=True)
class MentionSummary:
    brand_name: str
    brand_count: int
    brand_mention_type: str
    brand_domain_cited: bool
    competitors: list[CompetitorMention] = field(default_factory=list)

    @property
    def brand_mentioned(self) -> bool:
        return self.brand_count > 0 or self.brand_domain_cited

    @property
    def mentioned_competitors(self) -> list[str]:
        return [item.name for item in self.competitors if item.count > 0 or item.domain_cited]

    def to_dict(self) -> dict[str, Any]:
        return {
            "brand_name": self.brand_name,
            "brand_count": self.brand_count,
            "brand_mention_type": self.brand_mention_type,
            "brand_domain_cited": self.brand_domain_cited,
            "competitors": [
                {
                    "name": item.name,
                    "count": item.count,
                    "mention_type": item.mention_type,
                    "domain_cited": item.domain_cited,
                }
                for item in self.competitors
            ],
        }


class QueryMetadata(BaseModel):
    query_category: str = "general"
    query_topic: str = "general"
    query_type: str = "question"
    query_intent: str = ""
    funnel_stage: str = "awareness"
    query_complexity: str = "simple"
    response_match: str = "direct"
    response_outcome: str = "answer"
    action_orientation: str = "passive"
    query_competition: str = "opportunity"


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True)
class QueryExecutionResult:
    platform: str
    model: str
    response_text: str
    citations: list[Citation]
    mentions: MentionSummary
    metadata: QueryMetadata
    brand_sentiment: float = 0.0


@dataclass(frozen=True)
class FetchResult:
    url: str
    html: str
    method: str
    status_code: int
    attempts: tuple[str, ...] = ()


class TechnicalSignals(BaseModel):
    is_crawlable: bool = False
    http_status: int = 0
    schema_markup_present: bool = False
    schema_types: list[str] = Field(default_factory=list)
    html_structure_score: int = Field(default=3, ge=1, le=10)
    aria_labels_present: bool = False
    aria_attributes: list[str] = Field(default_factory=list)
    date_published: str | None = None
    date_modified: str | None = None
    mobile_friendly: bool = True
    meta_description_present: bool = False
    social_graphs_present: bool = False
    cdn_used: bool = False
    lang_declared: bool = False
    hreflang_present: bool = False
    semantic_html_used: bool = False


class OnPageSignals(BaseModel):
    page_title: str = ""
    meta_description: str = ""
    meta_author: str | None = None
    content_type: str = "Unknown"
    word_count: int = 0
    image_count: int = 0
    video_present: bool = False
    table_count: int = 0
    unordered_list_count: int = 0
    ordered_list_count: int = 0
    internal_link_count: int = 0
    folder_depth: int = 0
    authorship_clear: bool = False
    heading_count: int = 0
    heading_counts: dict[str, int] = Field(
        default_factory=lambda: {f"h{level}": 0 for level in range(1, 7)}
    )
    keyword_matches: list[str] = Field(default_factory=list)


def default_on_page_signals(url: str) -> OnPageSignals:
    parsed = urlparse(url)
    host = parsed.hostname or "unknown"
    depth = len([part for part in parsed.path.split("/") if part])
    return OnPageSignals(page_title=f"Page at {host}", folder_depth=depth)


ScoreInt = Annotated[int, Field(ge=1, le=10)]


class ContentQuality(BaseModel):
    content_type: str = "Unknown"
    rock_paper_scissors: Literal["Rock", "Paper", "Scissors"] = "Rock"
    content_depth_score: ScoreInt = 5
    content_uniqueness: ScoreInt = 5
    content_optimization_score: ScoreInt = 5
    readability_score: ScoreInt = 5
    analysis_score: ScoreInt = 5
    citation_match_quality: ScoreInt = 5
    eeat_score: ScoreInt = 5
    ai_content_detection: ScoreInt = 5
    sentiment_score: float = Field(default=0.0, ge=-1.0, le=1.0)
    has_statistics: bool = False
    has_quotes: bool = False
    has_citations: bool = False
    has_research: bool = False
    topical_cluster: str = "General"


DEFAULT_CONTENT_QUALITY = ContentQuality()


class EEATDimension(BaseModel):
    score: ScoreInt = 5
    evidence: dict[str, str] = Field(default_factory=dict)


class EEATAssessment(BaseModel):
    eeat_score: ScoreInt = 5
    experience: EEATDimension = Field(default_factory=EEATDimension)
    expertise: EEATDimension = Field(default_factory=EEATDimension)
    authoritativeness: EEATDimension = Field(default_factory=EEATDimension)
    trustworthiness: EEATDimension = Field(default_factory=EEATDimension)
    strengths: list[str] = Field(default_factory=list)
    improvement_areas: list[str] = Field(default_factory=list)
    source: Literal["model", "proxy", "default"] = "default"


class DomainAuthority(BaseModel):
    domain: str = ""
    domain_authority: int = Field(default=30, ge=1, le=100)
    page_authority: int = Field(default=20, ge=1, le=100)
    backlink_count: int = Field(default=100, ge=0)
    referring_domains: int = Field(default=50, ge=0)
    spam_score: int = Field(default=2, ge=1, le=10)
    link_propensity: float = Field(default=0.5, ge=0.0, le=1.0)


class CrawlOutcome(BaseModel):
    success: bool = False
    method: str | None = None
    status_code: int | None = None
    tiers_attempted: list[str] = Field(default_factory=list)
    skipped: bool = False
    error_tier: str | None = None
    error_kind: str | None = None
    error_category: str | None = None


class PageContext(BaseModel):
    page_relevance_type: Literal["direct", "partial", "misaligned"] = "partial"
    page_intent_alignment: Literal["high", "moderate", "low", "mismatch"] = "moderate"
    content_format: Literal[
        "article", "blog", "landing_page", "product", "category", "about", "support", "other"
    ] = "article"
    content_depth: Literal["comprehensive", "overview", "shallow"] = "overview"
    brand_positioning: Literal["prominent", "mentioned", "absent"] = "absent"
    competitor_presence: Literal["exclusive", "featured", "mentioned", "none"] = "none"
    call_to_action_strength: Literal["strong", "moderate", "passive", "none"] = "none"
    content_recency: Literal["recent", "older", "outdated", "undated"] = "undated"
    eeat_signals: Literal["strong", "moderate", "weak"] = "weak"
    user_experience_quality: Literal["excellent", "good", "average", "poor", "problematic"] = "average"
    content_structure: Literal["hierarchical", "linear", "fragmented"] = "linear"
    analysis_notes: str = ""


class PageAnalysis(BaseModel):
    citation_url: str
    citation_position: int = 0
    domain: str
    job_id: int | None = None
    run_id: str | None = None
    query_text: str = ""
    keyword: str = ""
    page_title: str = ""
    is_client_domain: bool = False
    is_competitor_domain: bool = False
    matched_competitor: str | None = None
    brand_mentioned_on_page: bool = False
    competitors_on_page: list[str] = Field(default_factory=list)
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    technical_seo: TechnicalSignals = Field(default_factory=TechnicalSignals)
    on_page_seo: OnPageSignals = Field(default_factory=OnPageSignals)
    content_quality: ContentQuality = Field(default_factory=ContentQuality)
    content_quality_source: Literal["model", "default"] = "default"
    eeat: EEATAssessment = Field(default_factory=EEATAssessment)
    domain_authority: DomainAuthority = Field(default_factory=DomainAuthority)
    page_context: PageContext = Field(default_factory=PageContext)
    crawl: CrawlOutcome = Field(default_factory=CrawlOutcome)
    crawl_error: str | None = None
    analysis_status: Literal["completed", "completed_with_errors"] = "completed"
    analysis_notes: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now_iso)


@dataclass(frozen=True)
class CitationContext:
    """Everything about the enclosing query that one citation analysis needs."""

    query_text: str
    keyword: str = ""
    client: ClientProfile = field(default_factory=ClientProfile)
    job_id: int | None = None
    run_id: str | None = None


@dataclass(frozen=True)
class JobOutcome:
    job_id: int
    status: JobStatus
    citation_count: int = 0
    analyses_written: int = 0
    citation_errors: int = 0
    error: str | None = None


@dataclass(frozen=True)
class DrainResult:
    cycles: int
    outcomes: list[JobOutcome]
    reclaimed: int
    dead_lettered: list[int]
    skipped_busy: bool = False

    @property
    def processed_count(self) -> int:
        return len(self.outcomes)

    @property
    def error_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status != JobStatus.COMPLETED)
