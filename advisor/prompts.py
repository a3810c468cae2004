"""Prompt text for the advice pipeline.

Wording is configuration: point ``ADVISOR_PROMPTS_PATH`` at a JSON object
with any of the keys below to override a template.  Templates use
``str.format`` placeholders.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

DRAFT_OPEN = "<draft>"
DRAFT_CLOSE = "</draft>"
SOURCES_OPEN = "<sources>"
SOURCES_CLOSE = "</sources>"

_SYSTEM = """너는 서울 각 행정동의 술집 상권을 분석해서 1인 창업자에게 조언을 해주는 컨설턴트야.
- 출력은 반드시 한국어 마크다운으로 작성해라. 섹션은 ##, ### 를 사용해라.
- 제공된 데이터와 도구 결과에 없는 사실은 지어내지 말 것.
- 일본어 문자와 취소선(~~)은 사용하지 말 것.
- 필요하면 도구를 호출해 트렌드 문서, 임대료, 주변 술집 정보를 확인해라."""

_USER = """[상권 데이터(JSON)]
{report_json}

[창업자 조건(JSON)]
{options_json}

[창업자의 질문]
{question}

"{area}" 지역에서 술집을 창업하려는 1인 창업자를 위해 다음 구조로 리포트를 작성해줘.
## 상권 개요
## 인기 술집/경쟁 구도
## 가격 및 운영 전략
## 리스크 & 기회
## 한 줄 요약 조언"""

_ROUTE_NOTE = {
    "RAG": "이 질문은 분위기/트렌드 중심이다. search_trend_docs 결과를 우선 활용해라.",
    "DB": "이 질문은 수치 중심이다. 상권 데이터와 lookup_rent_price 결과를 우선 활용해라.",
}

_CLASSIFY = """다음 사용자의 질문이 어떤 유형인지 판단해라.
- 트렌드/분위기/컨셉 중심 (힙한 분위기, 감성, 인스타, 요즘 스타일 등) -> RAG
- 데이터/지표/시장분석 중심 (유동인구, 폐업률, 매출, 점포 수, 임대료 등) -> DB

[질문]
"{question}"

RAG 또는 DB 중 한 단어만 출력해라."""

_FINAL = "이제 도구 없이 최종 리포트 본문을 마크다운으로 작성해라."

_PACK = (
    "아래 초안을 JSON 객체 하나로 변환해라. 키: version(\"v1\"), title, markdown, "
    "citations[{{source, url?, quote?}}] (최소 1개), warnings[]. JSON 이외의 텍스트는 쓰지 말 것.\n\n"
    + DRAFT_OPEN + "\n{draft}\n" + DRAFT_CLOSE + "\n\n"
    + SOURCES_OPEN + "\n{sources}\n" + SOURCES_CLOSE
)

_REPAIR = (
    "이전 JSON 출력이 검증에 실패했다 (사유: {reason}). 같은 스키마로 고쳐서 JSON 객체만 다시 출력해라. "
    "citations 는 최소 1개, markdown 에 일본어 문자나 ~~ 를 넣지 말 것.\n\n"
    + DRAFT_OPEN + "\n{draft}\n" + DRAFT_CLOSE + "\n\n"
    + SOURCES_OPEN + "\n{sources}\n" + SOURCES_CLOSE
)


@dataclass(frozen=True)
class PromptSet:
    system: str = _SYSTEM
    user: str = _USER
    route_rag: str = _ROUTE_NOTE["RAG"]
    route_db: str = _ROUTE_NOTE["DB"]
    classify: str = _CLASSIFY
    final: str = _FINAL
    pack: str = _PACK
    repair: str = _REPAIR

    def route_note(self, route: str) -> str:
        return self.route_rag if route == "RAG" else self.route_db

    @classmethod
    def from_mapping(cls, overrides: Mapping[str, object]) -> "PromptSet":
        known = {f.name for f in fields(cls)}
        values = {k: str(v) for k, v in overrides.items() if k in known and isinstance(v, str) and v.strip()}
        unknown = sorted(set(overrides) - known)
        if unknown:
            logger.warning("ignoring unknown prompt keys: %s", ", ".join(unknown))
        return cls(**values)


@lru_cache(maxsize=1)
def load_prompts(path: str | None = None) -> PromptSet:
    source = path if path is not None else os.environ.get("ADVISOR_PROMPTS_PATH", "").strip()
    if not source:
        return PromptSet()
    raw = json.loads(Path(source).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"prompt file must hold a JSON object: {source}")
    return PromptSet.from_mapping(raw)


def extract_between(text: str, start: str, end: str) -> str:
    _, sep, rest = (text or "").partition(start)
    if not sep:
        return ""
    body, _, _ = rest.partition(end)
    return body.strip()
