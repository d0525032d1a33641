from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Protocol

from citation_pipeline.domain_authority import DomainAuthorityEstimator, default_authority
from citation_pipeline.errors import ClassificationSkip, FetchFailure, PersistenceFailure
from citation_pipeline.extract.signals import PageSignals, extract_signals
from citation_pipeline.fetchers.service import TieredFetcher
from citation_pipeline.mentions import domain_matches, names_on_page
from citation_pipeline.models import (
    Citation,
    CitationContext,
    CrawlOutcome,
    PageAnalysis,
    TechnicalSignals,
    default_on_page_signals,
)
from citation_pipeline.scoring.eeat import EEATScorer
from citation_pipeline.scoring.normalize import Fallback
from citation_pipeline.scoring.page_context import ContextScorer
from citation_pipeline.scoring.quality import QualityScorer

logger = logging.getLogger(__name__)

BUDGET_EXCEEDED_NOTE = "analysis budget exceeded"
RELEVANCE_BY_TYPE = {"direct": 0.9, "partial": 0.6, "misaligned": 0.3}


class AnalysisSink(Protocol):
    def insert_page_analysis(self, analysis: PageAnalysis) -> int: ...


def unfetched_signals(url: str, status_code: int | None = None) -> PageSignals:
    return PageSignals(
        technical=TechnicalSignals(is_crawlable=False, http_status=status_code or 0),
        on_page=default_on_page_signals(url),
    )


def default_analysis(citation: Citation, context: CitationContext, *, note: str) -> PageAnalysis:
    """A complete record carrying only defaults, for when the analysis itself could not finish."""
    signals = unfetched_signals(citation.url)
    return PageAnalysis(
        citation_url=citation.url,
        citation_position=citation.position,
        domain=citation.domain,
        job_id=context.job_id,
        run_id=context.run_id,
        query_text=context.query_text,
        keyword=context.keyword,
        page_title=signals.on_page.page_title,
        technical_seo=signals.technical,
        on_page_seo=signals.on_page,
        domain_authority=default_authority(citation.domain),
        crawl_error=note,
        analysis_status="completed_with_errors",
        analysis_notes=[note],
    )


class CitationAnalyzer:
    """Builds and stores one ``PageAnalysis`` per citation. ``analyze`` always returns a record."""

    def __init__(
        self,
        fetcher: TieredFetcher,
        quality: QualityScorer,
        eeat: EEATScorer,
        page_context: ContextScorer,
        authority: DomainAuthorityEstimator,
        sink: AnalysisSink | None = None,
        *,
        budget_seconds: float = 300.0,
    ):
        self.fetcher = fetcher
        self.quality = quality
        self.eeat = eeat
        self.page_context = page_context
        self.authority = authority
        self.sink = sink
        self.budget_seconds = budget_seconds

    def analyze(self, citation: Citation, context: CitationContext) -> PageAnalysis:
        analysis = self._run_with_budget(citation, context)
        if self.sink is not None:
            self.persist(analysis)
        return analysis

    def _run_with_budget(self, citation: Citation, context: CitationContext) -> PageAnalysis:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="citation-analysis")
        future = executor.submit(self.build, citation, context)
        try:
            return future.result(timeout=self.budget_seconds)
        except FutureTimeoutError:
            logger.warning("%s: %s after %.0fs", citation.url, BUDGET_EXCEEDED_NOTE, self.budget_seconds)
            return default_analysis(citation, context, note=BUDGET_EXCEEDED_NOTE)
        except Exception as exc:  # pragma: no cover - defensive boundary
            logger.exception("analysis of %s failed unexpectedly", citation.url)
            return default_analysis(citation, context, note=f"analysis failed: {exc}")
        finally:
            # a timed-out call keeps running in its thread; only its result is discarded
            executor.shutdown(wait=False)

    def build(self, citation: Citation, context: CitationContext) -> PageAnalysis:
        url = citation.url
        domain = citation.domain
        client = context.client
        notes: list[str] = []

        matched_competitor = next(
            (item.name for item in client.competitors if domain_matches(domain, item.domain)),
            None,
        )

        crawl_error: str | None = None
        try:
            fetched = self.fetcher.fetch(url)
        except ClassificationSkip as skip:
            logger.info("skipping %s: %s", url, skip.reason)
            notes.append(f"not fetched: {skip.reason}")
            crawl = CrawlOutcome(skipped=True, error_category="skipped")
            signals = unfetched_signals(url)
        except FetchFailure as failure:
            crawl_error = str(failure)
            notes.append(f"fetch failed: {failure}")
            crawl = CrawlOutcome(
                status_code=failure.status_code,
                tiers_attempted=list(failure.attempts),
                error_tier=failure.tier,
                error_kind=failure.kind,
                error_category=failure.category,
            )
            signals = unfetched_signals(url, failure.status_code)
        else:
            crawl = CrawlOutcome(
                success=True,
                method=fetched.method,
                status_code=fetched.status_code,
                tiers_attempted=list(fetched.attempts),
            )
            signals = extract_signals(fetched.html, url, status_code=fetched.status_code, keyword=context.keyword)

        authority = self.authority.estimate(domain)
        quality = self.quality.score(signals.text, signals, url=url, query_text=context.query_text)
        eeat = self.eeat.assess(
            signals.text, signals, quality, authority, url=url, query_text=context.query_text
        )
        page_context = self.page_context.assess(
            signals.text, url=url, query_text=context.query_text, client=client
        )
        for stage, result in (("content quality", quality), ("eeat", eeat), ("page context", page_context)):
            if isinstance(result, Fallback) and crawl.success:
                notes.append(f"{stage} defaulted: {result.reason}")

        brand_on_page, competitors_on_page = names_on_page(signals.text, client)

        return PageAnalysis(
            citation_url=url,
            citation_position=citation.position,
            domain=domain,
            job_id=context.job_id,
            run_id=context.run_id,
            query_text=context.query_text,
            keyword=context.keyword,
            page_title=signals.on_page.page_title,
            is_client_domain=domain_matches(domain, client.domain),
            is_competitor_domain=matched_competitor is not None,
            matched_competitor=matched_competitor,
            brand_mentioned_on_page=brand_on_page,
            competitors_on_page=competitors_on_page,
            relevance_score=RELEVANCE_BY_TYPE[page_context.value.page_relevance_type],
            technical_seo=signals.technical,
            on_page_seo=signals.on_page,
            content_quality=quality.value,
            content_quality_source="default" if isinstance(quality, Fallback) else "model",
            eeat=eeat.value,
            domain_authority=authority,
            page_context=page_context.value,
            crawl=crawl,
            crawl_error=crawl_error,
            analysis_notes=notes,
        )

    def persist(self, analysis: PageAnalysis) -> int:
        if self.sink is None:
            raise PersistenceFailure(analysis.citation_url, "no analysis store configured")
        try:
            return self.sink.insert_page_analysis(analysis)
        except sqlite3.Error as exc:
            logger.warning("writing analysis for %s failed, retrying degraded: %s", analysis.citation_url, exc)
            degraded = analysis.model_copy(
                update={
                    "analysis_status": "completed_with_errors",
                    "analysis_notes": [*analysis.analysis_notes, f"first write failed: {exc}"],
                }
            )
        try:
            return self.sink.insert_page_analysis(degraded)
        except sqlite3.Error as exc:
            raise PersistenceFailure(analysis.citation_url, str(exc)) from exc
