from __future__ import annotations

import asyncio
import json

import pytest

from advisor.advice_output import (
    OutputRepairer,
    harvest_citations,
    sanitize_fallback,
    validate_advice_output,
)
from advisor.llm_provider import Completion
from advisor.mock_llm import ScriptedChatBackend
from advisor.prompts import PromptSet

VALID = {
    "version": "v1",
    "title": "성수동 와인바 리포트",
    "markdown": "## 상권 개요\n- 20-30대 비중이 높다.",
    "citations": [{"source": "internal_db"}],
    "warnings": [],
}

TOOL_RESULTS = [
    {
        "tool": "search_trend_docs",
        "ok": True,
        "documents": [{"source": "trend_docs", "url": "https://example.com/a", "content": "성수동 와인바  분위기"}],
    },
    {"tool": "lookup_rent_price", "ok": True, "found": True},
    {"tool": "search_nearby_places", "ok": False, "skipped": True},
]


def _with(**changes):
    payload = dict(VALID)
    payload.update(changes)
    return json.dumps(payload, ensure_ascii=False)


def test_valid_output_passes():
    outcome = validate_advice_output(json.dumps(VALID, ensure_ascii=False))
    assert outcome.ok is True
    assert outcome.value.title == "성수동 와인바 리포트"


def test_fenced_json_is_accepted():
    assert validate_advice_output("```json\n" + json.dumps(VALID) + "\n```").ok is True


def test_reasons_are_checked_in_order():
    assert validate_advice_output("## just markdown").reason == "schema_invalid"
    assert validate_advice_output(_with(version="v2")).reason == "schema_invalid"
    assert validate_advice_output(_with(markdown="カタカナ ~~x~~", citations=[])).reason == "contains_banned_script"
    assert validate_advice_output(_with(markdown="~~x~~", citations=[])).reason == "missing_citations"
    assert validate_advice_output(_with(markdown="~~x~~")).reason == "contains_banned_marker"


def test_citation_url_must_be_http():
    outcome = validate_advice_output(_with(citations=[{"source": "x", "url": "ftp://nope"}]))
    assert outcome.reason == "schema_invalid"


def test_harvest_citations_uses_successful_results_only():
    citations = harvest_citations(TOOL_RESULTS)
    assert citations == [
        {"source": "trend_docs", "url": "https://example.com/a", "quote": "성수동 와인바 분위기"},
        {"source": "rent_price"},
    ]


def test_sanitize_fallback_always_validates():
    output = sanitize_fallback(
        "# 초안 ひらがな\n본문 ~~삭제~~",
        candidate={"title": "제목", "citations": [{"source": "x", "url": "bad"}]},
        harvested=[{"source": "rent_price"}],
        reasons=["schema_invalid", "missing_citations"],
    )
    assert validate_advice_output(output.model_dump_json()).ok is True
    assert output.citations[0].source == "internal_db"
    assert [c.source for c in output.citations] == ["internal_db", "rent_price"]
    assert "~~" not in output.markdown
    assert output.warnings == ["sanitized_fallback:schema_invalid,missing_citations"]


@pytest.mark.parametrize("bad", [1, "internal_db", {"source": "x"}, None])
def test_sanitize_fallback_ignores_non_list_citations_and_warnings(bad):
    output = sanitize_fallback(
        "# 초안\n본문",
        candidate={"markdown": "## 성수동\n본문", "citations": bad, "warnings": bad},
        harvested=[],
        reasons=["schema_invalid"],
    )
    assert [c.source for c in output.citations] == ["internal_db"]
    assert output.warnings == ["sanitized_fallback:schema_invalid"]
    assert output.markdown == "## 성수동\n본문"


def test_malformed_model_fields_still_reach_fallback():
    broken = json.dumps({"version": "v1", "title": "t", "markdown": "## 본문", "citations": 1, "warnings": 3})
    backend = ScriptedChatBackend(completions=[Completion(content=broken), Completion(content=broken)])
    result = asyncio.run(OutputRepairer(backend, PromptSet()).finalize("## 초안"))
    assert result.path == "fallback"
    assert result.llm_attempts == 2
    assert validate_advice_output(result.output.model_dump_json()).ok is True


def test_valid_draft_needs_no_model_call():
    backend = ScriptedChatBackend()
    result = asyncio.run(OutputRepairer(backend, PromptSet()).finalize(json.dumps(VALID)))
    assert result.path == "draft"
    assert result.llm_attempts == 0
    assert backend.requests == []


def test_markdown_draft_is_packed_in_one_call():
    backend = ScriptedChatBackend(completions=[Completion(content=json.dumps(VALID))])
    result = asyncio.run(OutputRepairer(backend, PromptSet()).finalize("## 초안", tool_results=TOOL_RESULTS))
    assert result.path == "pack"
    assert result.llm_attempts == 1
    prompt = backend.requests[0]["messages"][-1]["content"]
    assert "<draft>\n## 초안\n</draft>" in prompt
    assert "https://example.com/a" in prompt


def test_repair_converges_on_second_call():
    backend = ScriptedChatBackend(
        completions=[
            Completion(content=_with(citations=[])),
            Completion(content=json.dumps(VALID)),
        ]
    )
    result = asyncio.run(OutputRepairer(backend, PromptSet()).finalize("## 초안"))
    assert result.path == "repair"
    assert result.llm_attempts == 2
    assert result.reasons == ["schema_invalid", "missing_citations"]
    assert "missing_citations" in backend.requests[1]["messages"][-1]["content"]


def test_fallback_after_two_failed_calls():
    backend = ScriptedChatBackend(
        completions=[
            Completion(content="not json"),
            Completion(content=_with(markdown="~~취소선~~ 본문")),
            Completion(content=json.dumps(VALID)),
        ]
    )
    result = asyncio.run(OutputRepairer(backend, PromptSet()).finalize("## 초안", tool_results=TOOL_RESULTS))
    assert result.path == "fallback"
    assert len(backend.requests) == 2
    assert result.output.markdown == "취소선 본문"
    sources = [c.source for c in result.output.citations]
    assert "internal_db" in sources and "trend_docs" in sources
    assert validate_advice_output(result.output.model_dump_json()).ok is True


def test_upstream_failure_falls_back_without_raising():
    backend = ScriptedChatBackend(fail_times=5)
    result = asyncio.run(OutputRepairer(backend, PromptSet()).finalize("## 초안 본문"))
    assert result.path == "fallback"
    assert result.llm_attempts == 1
    assert result.reasons == ["schema_invalid", "upstream_unavailable"]
    assert result.output.markdown == "## 초안 본문"
    assert result.output.title == "초안 본문"
