from __future__ import annotations

import asyncio

from advisor.advice_service import build_messages
from advisor.business_data import SAMPLE_DISTRICTS, to_slim_report
from advisor.llm_provider import Completion, OpenAIChatBackend, ProviderConfig
from advisor.mock_llm import ScriptedChatBackend
from advisor.prompts import PromptSet
from advisor.runtime import build_runtime
from conftest import fast_settings

OPTIONS = {"budgetLevel": "mid", "concept": "wine bar", "targetAge": "30s"}


def _job(question: str) -> dict:
    return {"job_id": "adv_route", "input": {"district_id": 42, "options": OPTIONS, "question": question}}


def test_build_messages_uses_given_route_note():
    prompts = PromptSet()
    slim = to_slim_report(SAMPLE_DISTRICTS[42])
    messages = build_messages(prompts, slim, OPTIONS, "월세 얼마야?", "RAG")
    assert messages[1]["content"] == prompts.route_rag
    keyword_routed = build_messages(prompts, slim, OPTIONS, "월세 얼마야?")
    assert keyword_routed[1]["content"] == prompts.route_db
    assert '"kakaoPubs"' in messages[2]["content"]


def test_service_routes_with_classifier_answer(runtime):
    runtime.service.classifier = ScriptedChatBackend(completions=[Completion(content="RAG")])
    result = asyncio.run(runtime.service.run(_job("월세 얼마야?")))
    assert result["meta"]["route"] == "RAG"


def test_service_without_classifier_uses_keywords(runtime):
    assert runtime.service.classifier is None
    result = asyncio.run(runtime.service.run(_job("월세 얼마야?")))
    assert result["meta"]["route"] == "DB"


def test_runtime_only_asks_real_backends_to_classify():
    real = OpenAIChatBackend(ProviderConfig(model="gpt-4o-mini", api_key="sk-test"), client=object())
    assert build_runtime(fast_settings(), environ={}, backend=real).service.classifier is real
    scripted = ScriptedChatBackend()
    assert build_runtime(fast_settings(), environ={}, backend=scripted).service.classifier is None
