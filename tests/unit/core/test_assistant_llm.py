"""
Unit tests for core/llm.py and core/assistant.py

No network: litellm.completion is monkeypatched and the services get a
FakeLLM.
"""
from types import SimpleNamespace

import pytest
from tenacity import wait_none

from core import llm as llm_module
from core.assistant import (
    RECOMMENDATION_COUNT,
    AssistantService,
    RecommendationService,
    clean_reply,
)
from core.llm import (
    LLMError,
    RateLimitGuard,
    ResponseFormatError,
    StructuredLLM,
)
from core.ontology import NodeType
from core.schemas import Recommendation, RecommendationsResponse
from tests.helpers import FakeLLM, make_node, three_recommendations


def _completion(content, prompt_tokens=42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens),
    )


@pytest.fixture
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(StructuredLLM.generate.retry, "wait", wait_none())


# =============================================================================
# REPLY CLEANING
# =============================================================================

@pytest.mark.parametrize("raw,expected", [
    ("**Bold** and *italic*", "Bold and italic"),
    ("## Heading\nBody", "Heading\nBody"),
    ("- one\n- two", "one\ntwo"),
    ("Use `pip` here", "Use pip here"),
    ("Before ```code block``` after", "Before   after"),
    ("“Quoted” ‘x’", "\"Quoted\" 'x'"),
    ("2019–2020 — done", "2019-2020 - done"),
    ("line   \nnext", "line\nnext"),
    ("", ""),
])
def test_clean_reply(raw, expected):
    assert clean_reply(raw) == expected


@pytest.mark.parametrize("raw", [
    '```json\n{"a": 1}\n```',
    '```\n{"a": 1}\n```',
    '  {"a": 1}  ',
])
def test_clean_response_strips_fences(raw):
    assert StructuredLLM.clean_response(raw) == '{"a": 1}'


def test_clean_response_none():
    assert StructuredLLM.clean_response(None) == ""


# =============================================================================
# STRUCTURED LLM
# =============================================================================

def test_generate_decodes_schema(monkeypatch):
    calls = []

    def fake_completion(**kwargs):
        calls.append(kwargs)
        return _completion(
            '```json\n{"recommendations": [{"title": "BERT", "type": "Paper"}]}\n```'
        )

    monkeypatch.setattr(llm_module.litellm, "completion", fake_completion)

    result = StructuredLLM(model="openai/test").generate("sys", "user", RecommendationsResponse)

    assert result.recommendations[0].title == "BERT"
    assert calls[0]["model"] == "openai/test"
    assert calls[0]["response_format"] == {"type": "json_object"}
    assert "OUTPUT CONTRACT" in calls[0]["messages"][0]["content"]


def test_generate_retries_bad_json_then_gives_up(monkeypatch, no_retry_wait):
    calls = []

    def fake_completion(**kwargs):
        calls.append(kwargs)
        return _completion("not json at all")

    monkeypatch.setattr(llm_module.litellm, "completion", fake_completion)

    with pytest.raises(ResponseFormatError):
        StructuredLLM().generate("sys", "user", RecommendationsResponse)
    assert len(calls) == 3


def test_generate_recovers_on_second_attempt(monkeypatch, no_retry_wait):
    replies = iter(['{"wrong": true}', '{"recommendations": []}'])
    monkeypatch.setattr(
        llm_module.litellm, "completion", lambda **kwargs: _completion(next(replies))
    )

    result = StructuredLLM().generate("sys", "user", RecommendationsResponse)

    assert result.recommendations == []


def test_provider_failure_becomes_llm_error(monkeypatch):
    def boom(**kwargs):
        raise ConnectionError("network down")

    monkeypatch.setattr(llm_module.litellm, "completion", boom)

    with pytest.raises(LLMError, match="network down"):
        StructuredLLM().complete_text("hello")


def test_complete_text_messages(monkeypatch):
    calls = []

    def fake_completion(**kwargs):
        calls.append(kwargs)
        return _completion("Hi there")

    monkeypatch.setattr(llm_module.litellm, "completion", fake_completion)

    assert StructuredLLM().complete_text("hello", system_prompt="be brief", max_tokens=50) == "Hi there"
    assert [m["role"] for m in calls[0]["messages"]] == ["system", "user"]
    assert calls[0]["max_tokens"] == 50
    assert "response_format" not in calls[0]


def test_get_llm_uses_settings():
    from infrastructure.config import Settings, set_settings

    set_settings(Settings(llm_model="openai/gpt-4o-mini", llm_max_tokens=321))
    llm = llm_module.get_llm()

    assert llm.model == "openai/gpt-4o-mini"
    assert llm.max_tokens == 321
    assert llm_module.get_llm() is llm


# =============================================================================
# RATE LIMIT GUARD
# =============================================================================

def test_rate_limit_guard_no_wait_under_budget():
    guard = RateLimitGuard(rpm_limit=10, tpm_limit=10000)
    assert guard.wait_if_needed(100) == 0.0


def test_rate_limit_guard_status_tracks_usage():
    guard = RateLimitGuard(rpm_limit=10, tpm_limit=10000, safety_margin=1.0)
    guard.record_usage(250)
    guard.record_usage(250)

    status = guard.get_status()

    assert status["rpm_used"] == 2
    assert status["tpm_used"] == 500
    assert status["rpm_limit"] == 10


def test_rate_limit_guard_waits_when_rpm_exhausted(monkeypatch):
    guard = RateLimitGuard(rpm_limit=1, tpm_limit=10000, safety_margin=1.0)
    guard.record_usage(10)
    slept = []
    monkeypatch.setattr(llm_module.time, "sleep", slept.append)

    waited = guard.wait_if_needed(10)

    assert waited > 0
    assert slept == [waited]


def test_rate_limit_guard_retry_after(monkeypatch):
    guard = RateLimitGuard()
    guard.set_retry_after(5)
    monkeypatch.setattr(llm_module.time, "sleep", lambda s: None)

    assert guard.wait_if_needed(10) > 0
    assert guard.get_status()["retry_after_remaining"] > 0


# =============================================================================
# RECOMMENDATION SERVICE
# =============================================================================

def test_recommend_returns_three():
    fake = FakeLLM(structured=RecommendationsResponse(recommendations=three_recommendations()))
    anchor = make_node("Transformers")

    result = RecommendationService(llm=fake).recommend(anchor, [anchor])

    assert [r.title for r in result] == ["Attention", "BERT Paper", "GLUE"]
    call = fake.calls[0]
    assert call["schema"] is RecommendationsResponse
    assert "Transformers" in call["user_prompt"]
    assert "current mind map" in call["system_prompt"]


def test_recommend_truncates_extras():
    extra = three_recommendations() + [Recommendation(title="Extra", type="Tool")]
    fake = FakeLLM(structured=RecommendationsResponse(recommendations=extra))

    result = RecommendationService(llm=fake).recommend(make_node("X"))

    assert len(result) == RECOMMENDATION_COUNT
    assert "Extra" not in [r.title for r in result]


def test_recommend_too_few_is_format_error():
    fake = FakeLLM(structured=RecommendationsResponse(recommendations=three_recommendations()[:2]))

    with pytest.raises(ResponseFormatError):
        RecommendationService(llm=fake).recommend(make_node("X"))


def test_recommend_accepts_raw_dicts():
    fake = FakeLLM(structured=RecommendationsResponse(recommendations=three_recommendations()))

    RecommendationService(llm=fake).recommend({"title": "Raw", "type": "Concept"}, [])

    assert "Raw" in fake.calls[0]["user_prompt"]
    assert "current mind map" not in fake.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_arecommend_propagates_errors():
    service = RecommendationService(llm=FakeLLM(error=LLMError("down")))

    with pytest.raises(LLMError):
        await service.arecommend(make_node("X"), [])


def test_service_falls_back_to_global_llm():
    fake = FakeLLM()
    llm_module.set_llm(fake)

    assert RecommendationService().llm is fake
    assert AssistantService().llm is fake


# =============================================================================
# ASSISTANT SERVICE
# =============================================================================

def test_ask_cleans_reply_and_includes_context():
    fake = FakeLLM(text="**ImageNet** is a dataset.")
    nodes = [make_node("ImageNet", NodeType.DATASET)]

    reply = AssistantService(llm=fake).ask("What is ImageNet?", nodes)

    assert reply == "ImageNet is a dataset."
    assert "ImageNet" in fake.calls[0]["system_prompt"]
    assert fake.calls[0]["user_prompt"] == "What is ImageNet?"


def test_ask_without_context():
    fake = FakeLLM(text="Hello")

    AssistantService(llm=fake).ask("Hi")

    assert "mind map" not in fake.calls[0]["system_prompt"]


def test_ask_empty_reply_placeholder():
    assert AssistantService(llm=FakeLLM(text="  ")).ask("Hi") == "No response from the assistant"


def test_describe_prompt_and_limit():
    fake = FakeLLM(text="  A large image dataset.  ")

    description = AssistantService(llm=fake).describe("ImageNet", "Dataset")

    assert description == "A large image dataset."
    assert 'Dataset node titled "ImageNet"' in fake.calls[0]["user_prompt"]
    assert fake.calls[0]["max_tokens"] == 200


def test_describe_propagates_errors():
    with pytest.raises(LLMError):
        AssistantService(llm=FakeLLM(error=LLMError("down"))).describe("X", "Concept")
