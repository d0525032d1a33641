import json

import httpx
import pytest
from fakes import FakeCompletionClient

from citation_pipeline.errors import CompletionError, QueryExecutionError
from citation_pipeline.models import ClientProfile, Competitor, QueryMetadata, QueryPayload, SearchResult
from citation_pipeline.query_executor import (
    ChatGPTPlatform,
    PerplexityPlatform,
    PlatformAnswer,
    QueryExecutor,
    heuristic_metadata,
    metadata_from_payload,
)
from citation_pipeline.search import SearchClient

ANSWER = (
    "For field crews I recommend Acme [1]. Crewly offers similar tools [2].\n\n"
    "[1] Acme https://acme.io/crew\n[2] Crewly https://crewly.com/features"
)


class StaticPlatform:
    def __init__(self, answer: PlatformAnswer):
        self.answer = answer
        self.queries: list[str] = []

    def ask(self, query: str) -> PlatformAnswer:
        self.queries.append(query)
        return self.answer


class FakeSearch:
    def __init__(self, results=None, error=None):
        self.results = results or []
        self.error = error
        self.queries: list[str] = []

    def search(self, query: str, *, count: int = 5):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.results


def _payload(**overrides) -> QueryPayload:
    data = {
        "query_text": "best crew scheduling software for construction",
        "platform": "chatgpt",
        "client": ClientProfile(
            name="Acme",
            domain="acme.io",
            competitors=[Competitor(name="Crewly", domain="crewly.com")],
        ),
    }
    data.update(overrides)
    return QueryPayload(**data)


def test_heuristic_metadata() -> None:
    metadata = heuristic_metadata("How to compare crew scheduling vs spreadsheets for construction", "research")

    assert metadata.query_type == "how_to"
    assert metadata.query_category == "comparison"
    assert metadata.query_topic == "construction software"
    assert metadata.funnel_stage == "consideration"
    assert metadata.query_complexity == "moderate"
    assert metadata.action_orientation == "educational"
    assert metadata.query_intent == "research"


def test_heuristic_terms_match_whole_words() -> None:
    metadata = heuristic_metadata("Shows scheduling overview")

    assert metadata.query_type == "question"
    assert metadata.query_category == "general"
    assert metadata.funnel_stage == "awareness"


def test_metadata_from_payload_keeps_fallback_for_unknown_values() -> None:
    fallback = QueryMetadata(query_type="how_to", query_topic="construction software")

    metadata = metadata_from_payload(
        {"query_type": "Comparison", "funnel_stage": "purchase", "query_topic": "crew apps"}, fallback
    )

    assert metadata.query_type == "comparison"
    assert metadata.funnel_stage == "awareness"
    assert metadata.query_topic == "crew apps"


def test_execute_extracts_citations_mentions_and_metadata() -> None:
    platform = StaticPlatform(PlatformAnswer(text=ANSWER, model="gpt-4o"))
    scoring = FakeCompletionClient(
        [json.dumps({"query_category": "product", "funnel_stage": "decision"}), json.dumps({"sentiment": 0.8})]
    )

    result = QueryExecutor({"chatgpt": platform}, scoring).execute(_payload())

    assert platform.queries == ["best crew scheduling software for construction"]
    assert [c.url for c in result.citations] == ["https://acme.io/crew", "https://crewly.com/features"]
    assert result.mentions.brand_mention_type == "recommendation"
    assert result.mentions.brand_domain_cited
    assert result.metadata.query_category == "product"
    assert result.metadata.funnel_stage == "decision"
    assert result.metadata.query_competition == "competitive"
    assert result.brand_sentiment == 0.8
    assert result.model == "gpt-4o"


def test_platform_citations_take_precedence() -> None:
    answer = PlatformAnswer(text=ANSWER, model="sonar", citations=["https://news.org/story"])
    scoring = FakeCompletionClient([CompletionError("down"), CompletionError("down")])

    result = QueryExecutor({"perplexity": StaticPlatform(answer)}, scoring).execute(_payload(platform="perplexity"))

    assert [(c.url, c.source) for c in result.citations] == [("https://news.org/story", "platform-api")]
    assert result.metadata.query_topic == "construction software"
    assert result.brand_sentiment == 0.0


def test_search_fills_in_when_answer_has_no_citations() -> None:
    answer = PlatformAnswer(text="Acme is popular with contractors.", model="gpt-4o")
    search = FakeSearch([SearchResult(title="Acme review", url="https://reviews.org/acme")])
    scoring = FakeCompletionClient([json.dumps({}), json.dumps({"sentiment": 0.2})])

    result = QueryExecutor({"chatgpt": StaticPlatform(answer)}, scoring, search=search).execute(_payload())

    assert search.queries == ["best crew scheduling software for construction"]
    assert [(c.url, c.source) for c in result.citations] == [("https://reviews.org/acme", "search")]
    assert result.metadata.query_competition == "defending"


def test_search_failure_yields_no_citations() -> None:
    answer = PlatformAnswer(text="No sources here.", model="gpt-4o")
    request = httpx.Request("GET", "https://search.invalid")
    search = FakeSearch(error=httpx.ConnectError("offline", request=request))

    result = QueryExecutor({"chatgpt": StaticPlatform(answer)}, FakeCompletionClient(), search=search).execute(
        _payload()
    )

    assert result.citations == []
    assert result.metadata.query_competition == "opportunity"


def test_sentiment_skipped_when_brand_absent() -> None:
    scoring = FakeCompletionClient()

    assert QueryExecutor({}, scoring).brand_sentiment("Crewly only.", "Acme") == 0.0
    assert scoring.calls == []


def test_unknown_platform_raises() -> None:
    with pytest.raises(QueryExecutionError, match="perplexity"):
        QueryExecutor({}, FakeCompletionClient()).execute(_payload(platform="perplexity"))


def test_chatgpt_platform_wraps_completion_errors() -> None:
    client = FakeCompletionClient(["An answer", CompletionError("quota")])
    platform = ChatGPTPlatform(client, model="gpt-4o")

    assert platform.ask("q").text == "An answer"
    assert client.calls[0]["temperature"] == 0.7
    with pytest.raises(QueryExecutionError, match="quota"):
        platform.ask("q")


def test_perplexity_platform_reads_citations() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "sonar",
                "choices": [{"message": {"content": "Acme leads."}}],
                "citations": ["https://acme.io/"],
            },
        )

    platform = PerplexityPlatform(
        "pplx",
        api_url="https://pplx.invalid/chat/completions",
        model="sonar",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    answer = platform.ask("crew apps")

    assert answer.text == "Acme leads."
    assert answer.citations == ["https://acme.io/"]
    body = json.loads(seen[0].content)
    assert body["return_citations"] is True
    assert seen[0].headers["Authorization"] == "Bearer pplx"


def test_perplexity_platform_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    platform = PerplexityPlatform(
        "pplx",
        api_url="https://pplx.invalid/chat/completions",
        model="sonar",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    with pytest.raises(QueryExecutionError, match="HTTP 503"):
        platform.ask("crew apps")

    with pytest.raises(QueryExecutionError, match="PERPLEXITY_API_KEY"):
        PerplexityPlatform("", api_url="https://pplx.invalid", model="sonar").ask("crew apps")


def test_non_json_search_response_yields_no_citations() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>"))
    search = SearchClient(
        "key",
        "engine",
        api_url="https://search.invalid/customsearch/v1",
        client=httpx.Client(transport=transport),
        sleep=lambda _: None,
    )
    answer = PlatformAnswer(text="No sources here.", model="gpt-4o")

    result = QueryExecutor({"chatgpt": StaticPlatform(answer)}, FakeCompletionClient(), search=search).execute(
        _payload()
    )

    assert result.citations == []
