import json

from fakes import ARTICLE_HTML, FakeCompletionClient

from citation_pipeline.errors import CompletionError
from citation_pipeline.extract.signals import extract_signals
from citation_pipeline.models import DEFAULT_CONTENT_QUALITY, ClientProfile, Competitor, ContentQuality, DomainAuthority
from citation_pipeline.scoring.eeat import DEFAULT_EEAT, NOT_DETECTED, EEATScorer, eeat_from_payload
from citation_pipeline.scoring.llm import parse_json_payload
from citation_pipeline.scoring.normalize import (
    Fallback,
    Ok,
    declared_scale,
    normalize_choice,
    normalize_score,
    resolve_field,
)
from citation_pipeline.scoring.page_context import DEFAULT_PAGE_CONTEXT, ContextScorer
from citation_pipeline.scoring.quality import QualityScorer, content_quality_from_payload

URL = "https://docs.acme.io/guides/crew-scheduling"
QUERY = "best crew scheduling software"


def _signals():
    return extract_signals(ARTICLE_HTML, URL, keyword="crew scheduling")


def test_normalize_score_handles_both_scales() -> None:
    assert normalize_score(8, default=5) == 8
    assert normalize_score("7/10", default=5) == 7
    assert normalize_score(4, default=5, scale=5) == 7
    assert normalize_score(1, default=5, scale=5) == 1
    assert normalize_score(5, default=5, scale=5) == 9
    assert normalize_score(6, default=5, scale=5) == 5
    assert normalize_score(11, default=5) == 5
    assert normalize_score(0, default=5) == 5
    assert normalize_score("high", default=5) == 5
    assert normalize_score(True, default=5) == 5
    assert normalize_score(None, default=3) == 3


def test_declared_scale() -> None:
    assert declared_scale({}) == 10
    assert declared_scale({"score_scale": 5}) == 5
    assert declared_scale({"score_scale": "1-5"}) == 5
    assert declared_scale({"scale": "100"}) == 10


def test_normalize_choice_returns_canonical_spelling() -> None:
    assert normalize_choice("landing page", ("article", "landing_page"), "article") == "landing_page"
    assert normalize_choice("PAPER", ("Rock", "Paper", "Scissors"), "Rock") == "Paper"
    assert normalize_choice("podcast", ("article",), "article") == "article"
    assert normalize_choice(3, ("article",), "article") == "article"


def test_resolve_field_uses_path_order() -> None:
    payload = {"experience": {"score": ""}, "experience_score": 6, "LEGACY": {"Score": 2}}

    assert resolve_field(payload, [("experience", "score"), ("experience_score",), ("LEGACY", "Score")]) == 6
    assert resolve_field(payload, [("missing",), ("LEGACY", "Score")]) == 2
    assert resolve_field(payload, [("missing", "deeper")]) is None


def test_parse_json_payload_tolerates_fences_and_prose() -> None:
    assert parse_json_payload('```json\n{"a": 1,}\n```') == {"a": 1}
    assert parse_json_payload('Sure! Here it is: {"a": {"b": "}"}} hope that helps') == {"a": {"b": "}"}}
    assert parse_json_payload("[1, 2]") is None
    assert parse_json_payload("no json here") is None
    assert parse_json_payload(None) is None


def test_content_quality_on_five_point_scale() -> None:
    quality = content_quality_from_payload(
        {
            "score_scale": 5,
            "content_depth_score": 4,
            "readability_score": 2,
            "eeat_score": 9,
            "rock_paper_scissors": "paper",
            "has_statistics": "yes",
            "sentiment_score": 3,
        }
    )

    assert quality.content_depth_score == 7
    assert quality.readability_score == 3
    assert quality.eeat_score == 5
    assert quality.rock_paper_scissors == "Paper"
    assert quality.has_statistics is True
    assert quality.sentiment_score == 1.0


def test_content_quality_missing_fields_take_defaults() -> None:
    quality = content_quality_from_payload({"content_depth_score": 8, "topical_cluster": "  Construction  "})

    assert quality.content_depth_score == 8
    assert quality.analysis_score == DEFAULT_CONTENT_QUALITY.analysis_score
    assert quality.topical_cluster == "Construction"
    assert quality.content_type == "Unknown"


def test_quality_scorer_returns_ok_for_valid_completion() -> None:
    client = FakeCompletionClient([json.dumps({"score_scale": 10, "analysis_score": 9, "eeat_score": 6})])

    result = QualityScorer(client).score("Some page text", _signals(), url=URL, query_text=QUERY)

    assert isinstance(result, Ok)
    assert result.value.analysis_score == 9
    assert client.calls[0]["max_tokens"] == 800
    assert QUERY in client.calls[0]["messages"][1]["content"]


def test_quality_scorer_falls_back_on_malformed_output() -> None:
    client = FakeCompletionClient(["I cannot score this page."])

    result = QualityScorer(client).score("Some page text", _signals(), url=URL, query_text=QUERY)

    assert isinstance(result, Fallback)
    assert result.value == DEFAULT_CONTENT_QUALITY
    assert "malformed JSON" in result.reason


def test_quality_scorer_falls_back_on_completion_error() -> None:
    client = FakeCompletionClient([CompletionError("rate limited")])

    result = QualityScorer(client).score("Some page text", _signals(), url=URL, query_text=QUERY)

    assert isinstance(result, Fallback)
    assert "rate limited" in result.reason


def test_quality_scorer_skips_empty_text() -> None:
    client = FakeCompletionClient()

    result = QualityScorer(client).score("   ", _signals(), url=URL, query_text=QUERY)

    assert isinstance(result, Fallback)
    assert client.calls == []


def test_eeat_proxy_skips_the_model_call() -> None:
    client = FakeCompletionClient()
    quality = Ok(ContentQuality(eeat_score=9))

    result = EEATScorer(client, proxy_threshold=8).assess(
        "text", _signals(), quality, DomainAuthority(), url=URL, query_text=QUERY
    )

    assert isinstance(result, Ok)
    assert result.value.source == "proxy"
    assert result.value.eeat_score == 9
    assert result.value.expertise.score == 9
    assert client.calls == []


def test_eeat_fallback_quality_never_triggers_proxy() -> None:
    client = FakeCompletionClient([CompletionError("down")])
    quality = Fallback(ContentQuality(eeat_score=9), "forced")

    result = EEATScorer(client).assess("text", _signals(), quality, DomainAuthority(), url=URL, query_text=QUERY)

    assert isinstance(result, Fallback)
    assert result.value == DEFAULT_EEAT
    assert len(client.calls) == 1


def test_eeat_reads_current_and_legacy_keys() -> None:
    payload = {
        "score_scale": 10,
        "experience": {"score": 7, "evidence": {"case_studies": "Two contractor examples"}},
        "EXPERTISE_ASSESSMENT": {"Score": 6, "Technical depth appropriate to topic": "Covers certifications"},
        "authoritativeness_score": "8",
        "KEY_STRENGTHS": ["Clear author", "Recent"],
    }

    assessment = eeat_from_payload(payload)

    assert assessment.source == "model"
    assert assessment.experience.score == 7
    assert assessment.experience.evidence["case_studies"] == "Two contractor examples"
    assert assessment.experience.evidence["evidence"] == NOT_DETECTED
    assert assessment.expertise.score == 6
    assert assessment.expertise.evidence["technical_depth"] == "Covers certifications"
    assert assessment.authoritativeness.score == 8
    assert assessment.trustworthiness.score == 5
    # mean of 7, 6, 8, 5
    assert assessment.eeat_score == 7
    assert assessment.strengths == ["Clear author", "Recent"]
    assert assessment.improvement_areas == []


def test_eeat_model_call_includes_authority() -> None:
    client = FakeCompletionClient([json.dumps({"eeat_score": 4})])
    quality = Ok(ContentQuality(eeat_score=5))

    result = EEATScorer(client).assess(
        "text", _signals(), quality, DomainAuthority(domain_authority=72), url=URL, query_text=QUERY
    )

    assert isinstance(result, Ok)
    assert result.value.eeat_score == 4
    assert "72/100" in client.calls[0]["messages"][1]["content"]
    assert client.calls[0]["max_tokens"] == 1500


def test_page_context_normalizes_choices() -> None:
    client = FakeCompletionClient(
        [
            json.dumps(
                {
                    "page_relevance_type": "Direct",
                    "content_format": "landing page",
                    "brand_positioning": "front and center",
                    "analysis_notes": "Vendor guide.",
                }
            )
        ]
    )
    profile = ClientProfile(name="Acme", competitors=[Competitor(name="Crewly")])

    result = ContextScorer(client).assess("text", url=URL, query_text=QUERY, client=profile)

    assert isinstance(result, Ok)
    assert result.value.page_relevance_type == "direct"
    assert result.value.content_format == "landing_page"
    assert result.value.brand_positioning == DEFAULT_PAGE_CONTEXT.brand_positioning
    assert result.value.analysis_notes == "Vendor guide."
    assert "Crewly" in client.calls[0]["messages"][1]["content"]
    assert client.calls[0]["temperature"] == 0.2


def test_page_context_falls_back_on_failure() -> None:
    client = FakeCompletionClient([CompletionError("down")])

    result = ContextScorer(client).assess("text", url=URL, query_text=QUERY, client=ClientProfile())

    assert isinstance(result, Fallback)
    assert result.value == DEFAULT_PAGE_CONTEXT
