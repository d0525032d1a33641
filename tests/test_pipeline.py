import pytest

from citation_pipeline.errors import PersistenceFailure, QueryExecutionError
from citation_pipeline.models import (
    Citation,
    Job,
    JobStatus,
    MentionSummary,
    PageAnalysis,
    QueryExecutionResult,
    QueryMetadata,
)
from citation_pipeline.pipeline import JobProcessor, parse_payload


class FakeExecutor:
    def __init__(self, citations, error=None):
        self.citations = citations
        self.error = error
        self.payloads = []
        self.closed = False

    def execute(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return QueryExecutionResult(
            platform=payload.platform,
            model="gpt-4o",
            response_text="answer",
            citations=self.citations,
            mentions=MentionSummary(
                brand_name="Acme",
                brand_count=1,
                brand_mention_type="mentioned",
                brand_domain_cited=False,
            ),
            metadata=QueryMetadata(),
            brand_sentiment=0.5,
        )

    def close(self) -> None:
        self.closed = True


class FakeAnalyzer:
    def __init__(self, failing_urls=(), unwritable_urls=()):
        self.failing_urls = set(failing_urls)
        self.unwritable_urls = set(unwritable_urls)
        self.seen = []
        self.fetcher = self

    def analyze(self, citation, context):
        self.seen.append((citation.url, context))
        if citation.url in self.unwritable_urls:
            raise PersistenceFailure(citation.url, "database is locked")
        crawl_error = "basic tier not_found (HTTP 404)" if citation.url in self.failing_urls else None
        return PageAnalysis(citation_url=citation.url, domain=citation.domain, crawl_error=crawl_error)

    def close(self) -> None:
        self.closed = True


def _job(payload: dict) -> Job:
    return Job(
        id=5,
        run_id="run-1",
        payload=payload,
        status=JobStatus.PROCESSING,
        attempts=0,
        max_attempts=3,
        claimed_by="worker-a",
        created_at="2026-03-01T12:00:00+00:00",
        started_at="2026-03-01T12:00:00+00:00",
        completed_at=None,
        last_error=None,
    )


def test_parse_payload_reports_the_bad_field() -> None:
    assert parse_payload({"query_text": "crew apps"}).platform == "chatgpt"

    with pytest.raises(ValueError, match="query_text"):
        parse_payload({"query_text": ""})
    with pytest.raises(ValueError, match="platform"):
        parse_payload({"query_text": "crew apps", "platform": "bard"})


def test_process_analyzes_every_citation_in_order() -> None:
    citations = [
        Citation(url="https://acme.io/a", position=1),
        Citation(url="https://b.org/gone", position=2),
        Citation(url="https://c.net/x", position=3),
    ]
    executor = FakeExecutor(citations)
    analyzer = FakeAnalyzer(failing_urls={"https://b.org/gone"})
    sleeps: list[float] = []
    processor = JobProcessor(executor, analyzer, inter_citation_delay_seconds=1.0, sleep=sleeps.append)

    processed = processor.process(_job({"query_text": "crew apps", "keyword": "crew"}))

    assert [url for url, _ in analyzer.seen] == [c.url for c in citations]
    context = analyzer.seen[0][1]
    assert context.job_id == 5
    assert context.run_id == "run-1"
    assert context.keyword == "crew"
    assert sleeps == [1.0, 1.0]
    assert processed.citation_count == 3
    assert processed.analyses_written == 3
    assert processed.citation_errors == 1
    assert processed.summary["citation_count"] == 3
    assert processed.summary["mentions"]["brand_count"] == 1
    assert processed.summary["metadata"]["query_competition"] == "opportunity"


def test_process_with_no_citations_succeeds() -> None:
    processed = JobProcessor(FakeExecutor([]), FakeAnalyzer(), sleep=lambda _: None).process(
        _job({"query_text": "crew apps"})
    )

    assert processed.citation_count == 0
    assert processed.analyses_written == 0


def test_unwritable_citation_does_not_abort_the_job() -> None:
    citations = [
        Citation(url="https://a.com/x", position=1),
        Citation(url="https://b.org/y", position=2),
    ]
    analyzer = FakeAnalyzer(unwritable_urls={"https://a.com/x"})

    processed = JobProcessor(FakeExecutor(citations), analyzer, sleep=lambda _: None).process(
        _job({"query_text": "crew apps"})
    )

    assert [url for url, _ in analyzer.seen] == ["https://a.com/x", "https://b.org/y"]
    assert processed.citation_count == 2
    assert processed.analyses_written == 1
    assert processed.citation_errors == 1
    assert processed.summary["citation_errors"] == 1


def test_query_failure_propagates() -> None:
    processor = JobProcessor(FakeExecutor([], error=QueryExecutionError("upstream 500")), FakeAnalyzer())

    with pytest.raises(QueryExecutionError):
        processor.process(_job({"query_text": "crew apps"}))


def test_invalid_payload_raises_before_querying() -> None:
    executor = FakeExecutor([])

    with pytest.raises(ValueError):
        JobProcessor(executor, FakeAnalyzer()).process(_job({"keyword": "no query"}))

    assert executor.payloads == []


def test_close_releases_clients() -> None:
    executor = FakeExecutor([])
    analyzer = FakeAnalyzer()
    JobProcessor(executor, analyzer).close()

    assert executor.closed
    assert analyzer.closed
