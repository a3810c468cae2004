"""
Mock chat backends for end-to-end runs without a model endpoint.

Enabled when MOCK_LLM_ENABLED=true (the default); output is deterministic.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator, Mapping
from typing import Any

from advisor.errors import UpstreamError
from advisor.llm_provider import Completion, ToolCall
from advisor.prompts import DRAFT_CLOSE, DRAFT_OPEN, SOURCES_CLOSE, SOURCES_OPEN, extract_between

MOCK_LLM_ENABLED = os.getenv("MOCK_LLM_ENABLED", "true").lower() == "true"
MOCK_STREAM_CHUNK_CHARS = int(os.getenv("MOCK_STREAM_CHUNK_CHARS", "24"))

_DEFAULT_TITLE = "상권 분석 리포트"


def is_mock_llm_enabled(environ: Mapping[str, str] | None = None) -> bool:
    if environ is None:
        return MOCK_LLM_ENABLED
    return str(environ.get("MOCK_LLM_ENABLED", "true")).strip().lower() == "true"


def _tool_names(tools: list[dict[str, Any]] | None) -> list[str]:
    names: list[str] = []
    for tool in tools or []:
        fn = tool.get("function") or {}
        if fn.get("name"):
            names.append(str(fn["name"]))
    return names


def _tool_results(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for message in messages:
        if message.get("role") != "tool":
            continue
        try:
            parsed = json.loads(message.get("content") or "{}")
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            results.append(parsed)
    return results


def mock_draft_markdown(messages: list[dict[str, Any]]) -> str:
    """Markdown report built only from what the transcript contains."""
    results = _tool_results(messages)
    ok = [r for r in results if r.get("ok")]
    lines = [
        f"# {_DEFAULT_TITLE}",
        "",
        "## 상권 개요",
        f"- 참고한 도구 결과: {len(ok)}건 (전체 {len(results)}건)",
    ]
    for result in ok:
        tool = result.get("tool")
        if tool == "search_trend_docs":
            docs = result.get("documents") or []
            lines.append(f"- 트렌드 문서 {len(docs)}건 확인")
        elif tool == "lookup_rent_price" and result.get("found"):
            rent = result.get("rent") or {}
            lines.append(f"- 평균 월세 {rent.get('avgMonthlyRent')} / 보증금 {rent.get('avgDeposit')}")
        elif tool == "search_nearby_places":
            names = [p.get("name") for p in result.get("places") or [] if p.get("name")]
            if names:
                lines.append(f"- 주변 경쟁 술집: {', '.join(names)}")
    lines += [
        "",
        "## 리스크 & 기회",
        "- 데이터 기준으로 확인된 내용만 정리했습니다.",
        "",
        "## 한 줄 요약 조언",
        "- 타깃과 예산에 맞는 컨셉을 좁혀서 시작하세요.",
    ]
    return "\n".join(lines)


def _title_of(markdown: str) -> str:
    for line in markdown.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            title = stripped.lstrip("#").strip()
            if title:
                return title
    return _DEFAULT_TITLE


def mock_pack(prompt: str) -> dict[str, Any]:
    draft = extract_between(prompt, DRAFT_OPEN, DRAFT_CLOSE)
    try:
        sources = json.loads(extract_between(prompt, SOURCES_OPEN, SOURCES_CLOSE) or "[]")
    except json.JSONDecodeError:
        sources = []
    citations = [s for s in sources if isinstance(s, dict) and s.get("source")][:5]
    return {
        "version": "v1",
        "title": _title_of(draft),
        "markdown": draft or f"## {_DEFAULT_TITLE}",
        "citations": citations or [{"source": "internal_db"}],
        "warnings": [],
    }


class MockChatBackend:
    """One tool round with every offered tool, then a transcript-derived draft.

    Tool arguments are left empty so executors fill them in from job hints.
    """

    def __init__(self, *, chunk_chars: int = MOCK_STREAM_CHUNK_CHARS) -> None:
        self.chunk_chars = max(1, chunk_chars)
        self.complete_calls = 0
        self.stream_calls = 0

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        self.complete_calls += 1
        if tools:
            if any(m.get("role") == "tool" for m in messages):
                return Completion(content="")
            calls = [ToolCall(id=f"call_{i}", name=name, arguments="{}") for i, name in enumerate(_tool_names(tools))]
            return Completion(content="", tool_calls=calls)
        prompt = str(messages[-1].get("content") or "") if messages else ""
        return Completion(content=json.dumps(mock_pack(prompt), ensure_ascii=False))

    async def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[str]:
        self.stream_calls += 1
        text = mock_draft_markdown(messages)
        for start in range(0, len(text), self.chunk_chars):
            yield text[start : start + self.chunk_chars]
            await asyncio.sleep(0)


class ScriptedChatBackend:
    """Replays fixed completions and stream chunks; used by tests."""

    def __init__(
        self,
        *,
        completions: list[Completion] | None = None,
        chunks: list[str] | None = None,
        fail_times: int = 0,
        chunk_delay_s: float = 0.0,
    ) -> None:
        self.completions = list(completions or [])
        self.chunks = list(chunks or [])
        self.fail_times = fail_times
        self.chunk_delay_s = chunk_delay_s
        self.requests: list[dict[str, Any]] = []

    def _maybe_fail(self) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise UpstreamError("scripted backend unavailable", attempts=1)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        self.requests.append({"kind": "complete", "messages": list(messages), "tools": tools})
        self._maybe_fail()
        if not self.completions:
            return Completion(content="")
        return self.completions.pop(0)

    async def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[str]:
        self.requests.append({"kind": "stream", "messages": list(messages), "tools": None})
        self._maybe_fail()
        for chunk in self.chunks:
            if self.chunk_delay_s:
                await asyncio.sleep(self.chunk_delay_s)
            yield chunk
