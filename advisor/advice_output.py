"""Output contract for advice reports and the draft -> pack -> repair -> fallback chain.

A value returned by ``OutputRepairer.finalize`` always validates: at least
one citation, no Japanese kana (U+3040-U+30FF) and no ``~~`` in the markdown.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from advisor.errors import SchemaRepairExhausted, UpstreamError
from advisor.llm_provider import ChatBackend
from advisor.prompts import PromptSet

logger = logging.getLogger(__name__)

BANNED_SCRIPT_RE = re.compile(r"[\u3040-\u30ff]")
BANNED_MARKER_RE = re.compile(r"~{2,}")
DEFAULT_CITATION = {"source": "internal_db"}
DEFAULT_TITLE = "상권 분석 리포트"
MAX_HARVESTED_CITATIONS = 8

ValidationReason = Literal["schema_invalid", "contains_banned_script", "missing_citations", "contains_banned_marker"]
RepairPath = Literal["draft", "pack", "repair", "fallback"]


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


class Citation(BaseModel):
    source: str = Field(min_length=1)
    url: str | None = None
    quote: str | None = Field(default=None, min_length=1)

    @field_validator("url")
    @classmethod
    def _url_must_be_http(cls, value: str | None) -> str | None:
        if value is not None and not _is_http_url(value):
            raise ValueError("url must be an absolute http(s) URL")
        return value


class AdviceOutput(BaseModel):
    version: Literal["v1"]
    title: str = Field(min_length=1)
    markdown: str = Field(min_length=1)
    citations: list[Citation] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class ValidationOutcome:
    ok: bool
    value: AdviceOutput | None = None
    reason: ValidationReason | None = None
    detail: Any = None
    parsed: dict[str, Any] | None = None


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def _coerce(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def validate_advice_output(raw: Any) -> ValidationOutcome:
    """Check schema, then banned script, then citations, then banned marker."""
    candidate = _coerce(raw)
    parsed = candidate if isinstance(candidate, dict) else None
    try:
        value = AdviceOutput.model_validate(candidate)
    except PydanticValidationError as exc:
        return ValidationOutcome(ok=False, reason="schema_invalid", detail=exc.errors(), parsed=parsed)
    if BANNED_SCRIPT_RE.search(value.markdown):
        return ValidationOutcome(ok=False, reason="contains_banned_script", parsed=parsed)
    if not value.citations:
        return ValidationOutcome(ok=False, reason="missing_citations", parsed=parsed)
    if BANNED_MARKER_RE.search(value.markdown):
        return ValidationOutcome(ok=False, reason="contains_banned_marker", parsed=parsed)
    return ValidationOutcome(ok=True, value=value, parsed=parsed)


def harvest_citations(tool_results: Iterable[Mapping[str, Any]]) -> list[dict[str, str]]:
    """Citations backed by successful tool results, deduplicated, in first-seen order."""
    seen: set[tuple[str, str]] = set()
    out: list[dict[str, str]] = []

    def _add(source: Any, url: Any = None, quote: Any = None) -> None:
        src = str(source or "").strip()
        if not src:
            return
        link = str(url).strip() if url else ""
        if link and not _is_http_url(link):
            link = ""
        if (src, link) in seen:
            return
        seen.add((src, link))
        item = {"source": src}
        if link:
            item["url"] = link
        if quote and str(quote).strip():
            item["quote"] = " ".join(str(quote).split())[:160]
        out.append(item)

    for result in tool_results:
        if not result.get("ok") or result.get("skipped"):
            continue
        for doc in result.get("documents") or []:
            _add(doc.get("source"), doc.get("url"), doc.get("content"))
        for place in result.get("places") or []:
            _add("kakao_local", place.get("url"), place.get("name"))
        if result.get("found"):
            _add("rent_price")
    return out[:MAX_HARVESTED_CITATIONS]


def _strip_banned(text: str) -> str:
    return BANNED_MARKER_RE.sub("", BANNED_SCRIPT_RE.sub("", text or ""))


def _first_heading(markdown: str) -> str:
    for line in markdown.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            heading = stripped.lstrip("#").strip()
            if heading:
                return heading
    return ""


def _list_field(base: Mapping[str, Any], key: str) -> list[Any]:
    value = base.get(key)
    return value if isinstance(value, list) else []


def sanitize_fallback(
    draft: str,
    *,
    candidate: Mapping[str, Any] | None,
    harvested: list[dict[str, str]],
    reasons: list[str],
) -> AdviceOutput:
    """Build a contract-satisfying output without another model call."""
    base = dict(candidate or {})
    markdown = base.get("markdown") if isinstance(base.get("markdown"), str) else ""
    markdown = _strip_banned(markdown or draft).strip()
    if not markdown:
        markdown = f"## {DEFAULT_TITLE}\n- 리포트 본문을 생성하지 못했습니다. 잠시 후 다시 요청해 주세요."
    title = base.get("title") if isinstance(base.get("title"), str) else ""
    title = _strip_banned(title or _first_heading(markdown)).strip() or DEFAULT_TITLE

    citations: list[dict[str, Any]] = []
    for item in _list_field(base, "citations"):
        if not isinstance(item, Mapping):
            continue
        try:
            citations.append(Citation.model_validate(item).model_dump(exclude_none=True))
        except PydanticValidationError:
            continue
    for item in [DEFAULT_CITATION, *harvested]:
        if item not in citations:
            citations.append(dict(item))

    warnings = [w for w in _list_field(base, "warnings") if isinstance(w, str)]
    warnings.append("sanitized_fallback:" + ",".join(r for r in reasons if r))
    return AdviceOutput(version="v1", title=title, markdown=markdown, citations=citations, warnings=warnings)


@dataclass
class RepairResult:
    output: AdviceOutput
    path: RepairPath
    llm_attempts: int
    reasons: list[str] = field(default_factory=list)


class OutputRepairer:
    def __init__(self, backend: ChatBackend, prompts: PromptSet, *, max_llm_attempts: int = 2) -> None:
        self.backend = backend
        self.prompts = prompts
        self.max_llm_attempts = max(0, min(2, max_llm_attempts))

    async def _ask(self, prompt: str) -> str:
        completion = await self.backend.complete(
            [
                {"role": "system", "content": self.prompts.system},
                {"role": "user", "content": prompt},
            ]
        )
        return completion.content

    async def _llm_steps(
        self,
        draft: str,
        sources_json: str,
        reasons: list[str],
        state: dict[str, Any],
    ) -> tuple[AdviceOutput, RepairPath]:
        steps: list[RepairPath] = ["pack", "repair"][: self.max_llm_attempts]
        previous = draft
        for step in steps:
            if step == "pack":
                prompt = self.prompts.pack.format(draft=draft, sources=sources_json)
            else:
                prompt = self.prompts.repair.format(reason=reasons[-1], draft=previous, sources=sources_json)
            try:
                text = await self._ask(prompt)
            except UpstreamError as exc:
                logger.warning("output %s step unavailable: %s", step, exc)
                state["attempts"] += 1
                reasons.append("upstream_unavailable")
                raise SchemaRepairExhausted("upstream_unavailable") from exc
            state["attempts"] += 1
            outcome = validate_advice_output(text)
            if outcome.ok and outcome.value is not None:
                return outcome.value, step
            reasons.append(str(outcome.reason))
            if outcome.parsed is not None:
                state["candidate"] = outcome.parsed
            previous = text or previous
        raise SchemaRepairExhausted(reasons[-1] if reasons else "unknown")

    async def finalize(self, draft: str, *, tool_results: Iterable[Mapping[str, Any]] = ()) -> RepairResult:
        harvested = harvest_citations(tool_results)
        first = validate_advice_output(draft)
        if first.ok and first.value is not None:
            return RepairResult(output=first.value, path="draft", llm_attempts=0)

        reasons = [str(first.reason)]
        state: dict[str, Any] = {"attempts": 0, "candidate": first.parsed}
        sources_json = json.dumps(harvested or [DEFAULT_CITATION], ensure_ascii=False)
        try:
            value, path = await self._llm_steps(draft, sources_json, reasons, state)
            return RepairResult(output=value, path=path, llm_attempts=state["attempts"], reasons=reasons)
        except SchemaRepairExhausted as exc:
            logger.warning("advice output falling back to sanitizer: %s (reasons=%s)", exc.reason, reasons)
        output = sanitize_fallback(draft, candidate=state["candidate"], harvested=harvested, reasons=reasons)
        return RepairResult(output=output, path="fallback", llm_attempts=state["attempts"], reasons=reasons)
