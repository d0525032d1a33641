import json
import random
import sqlite3
import threading

import pytest
from fakes import ARTICLE_HTML, FakeBackend, FakeCompletionClient

from citation_pipeline.domain_authority import DomainAuthorityEstimator, SpacedQueue
from citation_pipeline.errors import FetchFailure, PersistenceFailure
from citation_pipeline.fetchers.service import TieredFetcher
from citation_pipeline.fetchers.tiers import TierResponse
from citation_pipeline.models import (
    DEFAULT_CONTENT_QUALITY,
    Citation,
    CitationContext,
    ClientProfile,
    Competitor,
    PageAnalysis,
)
from citation_pipeline.orchestrator import BUDGET_EXCEEDED_NOTE, CitationAnalyzer
from citation_pipeline.scoring.eeat import DEFAULT_EEAT, EEATScorer
from citation_pipeline.scoring.page_context import DEFAULT_PAGE_CONTEXT, ContextScorer
from citation_pipeline.scoring.quality import QualityScorer
from citation_pipeline.storage import PipelineStore

CONTEXT = CitationContext(
    query_text="best crew scheduling software",
    keyword="crew scheduling",
    client=ClientProfile(
        name="Acme",
        domain="acme.io",
        competitors=[Competitor(name="Crewly", domain="crewly.com")],
    ),
    job_id=11,
    run_id="run-1",
)


class FlakySink:
    def __init__(self, failures: int):
        self.failures = failures
        self.records: list[PageAnalysis] = []

    def insert_page_analysis(self, analysis: PageAnalysis) -> int:
        if self.failures > 0:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        self.records.append(analysis)
        return len(self.records)


class BlockingBackend:
    def __init__(self) -> None:
        self.release = threading.Event()

    def fetch(self, url, tier):
        self.release.wait(timeout=5)
        return TierResponse(200, ARTICLE_HTML)

    def close(self) -> None:
        self.release.set()


def _analyzer(backend, client=None, sink=None, *, budget_seconds: float = 30.0) -> CitationAnalyzer:
    client = client or FakeCompletionClient()
    return CitationAnalyzer(
        TieredFetcher(backend),
        QualityScorer(client),
        EEATScorer(client),
        ContextScorer(client),
        DomainAuthorityEstimator(rng=random.Random(1), queue=SpacedQueue(0)),
        sink,
        budget_seconds=budget_seconds,
    )


def test_not_found_citation_is_recorded_with_defaults(tmp_path) -> None:
    backend = FakeBackend({"basic": TierResponse(404, "<html>missing</html>")})
    client = FakeCompletionClient()
    citation = Citation(url="https://example.com/404-test", position=1)

    with PipelineStore(tmp_path / "p.sqlite") as store:
        analysis = _analyzer(backend, client, store).analyze(citation, CONTEXT)
        stored = store.list_page_analyses(job_id=11)

    assert analysis.crawl_error is not None
    assert "not_found" in analysis.crawl_error
    assert analysis.crawl.error_category == "client"
    assert analysis.crawl.status_code == 404
    assert analysis.technical_seo.is_crawlable is False
    assert analysis.technical_seo.http_status == 404
    assert analysis.content_quality == DEFAULT_CONTENT_QUALITY
    assert analysis.content_quality_source == "default"
    assert analysis.eeat == DEFAULT_EEAT
    assert analysis.page_context == DEFAULT_PAGE_CONTEXT
    assert analysis.page_title == "Page at example.com"
    assert backend.tiers_called == ["basic"]
    assert client.calls == []
    assert stored == [analysis]


def test_successful_citation_is_fully_scored() -> None:
    backend = FakeBackend({"basic": TierResponse(200, ARTICLE_HTML)})
    client = FakeCompletionClient(
        [
            json.dumps({"score_scale": 10, "analysis_score": 8, "eeat_score": 9}),
            json.dumps({"page_relevance_type": "direct", "content_format": "article"}),
        ]
    )
    sink = FlakySink(failures=0)
    citation = Citation(url="https://blog.crewly.com/guides/crew-scheduling", position=2)

    analysis = _analyzer(backend, client, sink).analyze(citation, CONTEXT)

    assert analysis.crawl_error is None
    assert analysis.analysis_status == "completed"
    assert analysis.crawl.success
    assert analysis.crawl.method == "basic"
    assert analysis.page_title == "Field Crew Scheduling Guide"
    assert analysis.content_quality.analysis_score == 8
    assert analysis.content_quality_source == "model"
    assert analysis.eeat.source == "proxy"
    assert analysis.relevance_score == 0.9
    assert analysis.is_competitor_domain
    assert analysis.matched_competitor == "Crewly"
    assert not analysis.is_client_domain
    assert analysis.on_page_seo.keyword_matches == ["crew scheduling"]
    assert analysis.job_id == 11
    assert analysis.citation_position == 2
    assert len(client.calls) == 2
    assert sink.records == [analysis]


def test_skipped_citation_is_not_a_crawl_error() -> None:
    backend = FakeBackend({})
    citation = Citation(url="https://www.linkedin.com/pulse/crews", position=1)

    analysis = _analyzer(backend).analyze(citation, CONTEXT)

    assert analysis.crawl_error is None
    assert analysis.crawl.skipped
    assert analysis.crawl.error_category == "skipped"
    assert analysis.analysis_notes == ["not fetched: social media domain (linkedin.com)"]
    assert backend.calls == []


def test_scoring_fallback_is_noted_after_successful_crawl() -> None:
    backend = FakeBackend({"basic": TierResponse(200, ARTICLE_HTML)})
    client = FakeCompletionClient(["not json", "still not json", "nope"])
    citation = Citation(url="https://acme.io/guides/crew-scheduling", position=1)

    analysis = _analyzer(backend, client).analyze(citation, CONTEXT)

    assert analysis.is_client_domain
    assert analysis.crawl_error is None
    assert analysis.content_quality == DEFAULT_CONTENT_QUALITY
    assert [note.split(":")[0] for note in analysis.analysis_notes] == [
        "content quality defaulted",
        "eeat defaulted",
        "page context defaulted",
    ]


def test_budget_exceeded_yields_default_record() -> None:
    backend = BlockingBackend()
    sink = FlakySink(failures=0)
    citation = Citation(url="https://acme.io/slow", position=1)

    try:
        analysis = _analyzer(backend, sink=sink, budget_seconds=0.05).analyze(citation, CONTEXT)
    finally:
        backend.release.set()

    assert analysis.crawl_error == BUDGET_EXCEEDED_NOTE
    assert analysis.analysis_status == "completed_with_errors"
    assert analysis.technical_seo.is_crawlable is False
    assert analysis.content_quality == DEFAULT_CONTENT_QUALITY
    assert sink.records == [analysis]


def test_failed_write_is_retried_as_degraded_record() -> None:
    backend = FakeBackend({"basic": TierResponse(404, "gone")})
    sink = FlakySink(failures=1)
    citation = Citation(url="https://acme.io/old", position=1)

    _analyzer(backend, sink=sink).analyze(citation, CONTEXT)

    assert len(sink.records) == 1
    assert sink.records[0].analysis_status == "completed_with_errors"
    assert "first write failed: database is locked" in sink.records[0].analysis_notes


def test_second_write_failure_raises() -> None:
    backend = FakeBackend({"basic": TierResponse(404, "gone")})
    citation = Citation(url="https://acme.io/old", position=1)

    with pytest.raises(PersistenceFailure):
        _analyzer(backend, sink=FlakySink(failures=2)).analyze(citation, CONTEXT)


def test_persist_without_sink_raises() -> None:
    analyzer = _analyzer(FakeBackend({}))

    with pytest.raises(PersistenceFailure):
        analyzer.persist(PageAnalysis(citation_url="https://acme.io/", domain="acme.io"))


def test_fetch_failure_keeps_the_whole_tier_sequence() -> None:
    backend = FakeBackend(
        {
            "basic": TierResponse(403, "denied"),
            "premium": FetchFailure(
                "https://reviews.org/crew-apps", tier="premium", kind="network", detail="connection reset"
            ),
        }
    )

    analysis = _analyzer(backend).analyze(Citation(url="https://reviews.org/crew-apps", position=1), CONTEXT)

    assert analysis.crawl.tiers_attempted == ["basic", "premium"]
    assert analysis.crawl.error_tier == "premium"
    assert analysis.crawl.error_kind == "network"
