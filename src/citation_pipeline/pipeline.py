from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from citation_pipeline.config import Settings
from citation_pipeline.domain_authority import DomainAuthorityEstimator, SpacedQueue
from citation_pipeline.errors import PersistenceFailure
from citation_pipeline.fetchers.service import build_fetcher
from citation_pipeline.models import CitationContext, Job, QueryExecutionResult, QueryPayload
from citation_pipeline.orchestrator import AnalysisSink, CitationAnalyzer
from citation_pipeline.query_executor import ChatGPTPlatform, PerplexityPlatform, QueryExecutor
from citation_pipeline.scoring.eeat import EEATScorer
from citation_pipeline.scoring.llm import OpenAICompletionClient
from citation_pipeline.scoring.page_context import ContextScorer
from citation_pipeline.scoring.quality import QualityScorer
from citation_pipeline.search import SearchClient

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], None]


@dataclass(frozen=True)
class ProcessedJob:
    citation_count: int
    analyses_written: int
    citation_errors: int
    summary: dict[str, Any] = field(default_factory=dict)


def parse_payload(raw: dict[str, Any]) -> QueryPayload:
    try:
        return QueryPayload.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "payload"
        raise ValueError(f"invalid query payload: {location}: {first['msg']}") from exc


def result_summary(result: QueryExecutionResult, *, analyses_written: int, citation_errors: int) -> dict[str, Any]:
    return {
        "platform": result.platform,
        "model": result.model,
        "citation_count": len(result.citations),
        "analyses_written": analyses_written,
        "citation_errors": citation_errors,
        "brand_sentiment": result.brand_sentiment,
        "mentions": result.mentions.to_dict(),
        "metadata": result.metadata.model_dump(),
    }


class JobProcessor:
    """Runs one claimed job: query the platform, then analyze each citation in order."""

    def __init__(
        self,
        executor: QueryExecutor,
        analyzer: CitationAnalyzer,
        *,
        inter_citation_delay_seconds: float = 1.0,
        sleep: Sleeper = time.sleep,
    ):
        self.executor = executor
        self.analyzer = analyzer
        self.inter_citation_delay_seconds = inter_citation_delay_seconds
        self.sleep = sleep

    def process(self, job: Job) -> ProcessedJob:
        payload = parse_payload(job.payload)
        result = self.executor.execute(payload)
        context = CitationContext(
            query_text=payload.query_text,
            keyword=payload.keyword,
            client=payload.client,
            job_id=job.id,
            run_id=job.run_id,
        )

        written = 0
        errors = 0
        for index, citation in enumerate(result.citations):
            if index > 0 and self.inter_citation_delay_seconds > 0:
                self.sleep(self.inter_citation_delay_seconds)
            try:
                analysis = self.analyzer.analyze(citation, context)
            except PersistenceFailure as exc:
                logger.error("job %s citation %d/%d: %s", job.id, index + 1, len(result.citations), exc)
                errors += 1
                continue
            written += 1
            if analysis.crawl_error or analysis.analysis_status != "completed":
                errors += 1
            logger.info(
                "job %s citation %d/%d %s: %s",
                job.id,
                index + 1,
                len(result.citations),
                citation.url,
                analysis.crawl_error or "ok",
            )

        return ProcessedJob(
            citation_count=len(result.citations),
            analyses_written=written,
            citation_errors=errors,
            summary=result_summary(result, analyses_written=written, citation_errors=errors),
        )

    def close(self) -> None:
        self.executor.close()
        self.analyzer.fetcher.close()


def build_scoring_client(settings: Settings) -> OpenAICompletionClient:
    return OpenAICompletionClient(
        settings.openai_api_key,
        model=settings.scoring_model,
        base_url=settings.openai_base_url,
    )


def build_analyzer(settings: Settings, sink: AnalysisSink | None) -> CitationAnalyzer:
    scoring_client = build_scoring_client(settings)
    return CitationAnalyzer(
        build_fetcher(settings),
        QualityScorer(scoring_client),
        EEATScorer(scoring_client, proxy_threshold=settings.eeat_proxy_threshold),
        ContextScorer(scoring_client),
        DomainAuthorityEstimator(queue=SpacedQueue(settings.authority_spacing_seconds)),
        sink,
        budget_seconds=settings.citation_budget_seconds,
    )


def build_processor(settings: Settings, sink: AnalysisSink | None) -> JobProcessor:
    query_client = OpenAICompletionClient(
        settings.openai_api_key,
        model=settings.query_model,
        base_url=settings.openai_base_url,
    )
    platforms = {
        "chatgpt": ChatGPTPlatform(query_client, model=settings.query_model),
        "perplexity": PerplexityPlatform(
            settings.perplexity_api_key,
            api_url=settings.perplexity_api_url,
            model=settings.perplexity_model,
        ),
    }
    search = None
    if settings.search_enabled:
        search = SearchClient(
            settings.search_api_key,
            settings.search_engine_id,
            api_url=settings.search_api_url,
            timeout=settings.request_timeout_seconds,
        )

    return JobProcessor(
        QueryExecutor(platforms, build_scoring_client(settings), search=search),
        build_analyzer(settings, sink),
        inter_citation_delay_seconds=settings.inter_citation_delay_seconds,
    )
