"""Hybrid reranker over a vector-similarity recall set.

Score per candidate::

    final = vector_weight * vector_score + lexical_weight * lexical_score
            + freshness_bonus + area_bonus

The weights and day thresholds were tuned by hand against the trend corpus.
They live in ``RerankWeights`` and can be overridden through RERANK_* env vars.
Scoring is a pure function of ``(query, candidate)``; ordering uses a stable
sort so equal scores keep recall order.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from advisor.settings import _env_float, _env_int

_TOKENIZE_RE = re.compile(r"[^\W_]+", re.UNICODE)
MIN_TOKEN_LEN = 2


@dataclass(frozen=True)
class RerankWeights:
    vector_weight: float = 0.7
    lexical_weight: float = 0.3
    fresh_days: int = 90
    stale_days: int = 365
    fresh_bonus: float = 0.01
    area_bonus: float = 0.03

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RerankWeights":
        env = os.environ if environ is None else environ
        fresh_days = _env_int(env, "RERANK_FRESH_DAYS", default=90, minimum=0)
        stale_days = _env_int(env, "RERANK_STALE_DAYS", default=365, minimum=fresh_days + 1)
        return cls(
            vector_weight=_env_float(env, "RERANK_VECTOR_WEIGHT", default=0.7),
            lexical_weight=_env_float(env, "RERANK_LEXICAL_WEIGHT", default=0.3),
            fresh_days=fresh_days,
            stale_days=stale_days,
            fresh_bonus=_env_float(env, "RERANK_FRESH_BONUS", default=0.01),
            area_bonus=_env_float(env, "RERANK_AREA_BONUS", default=0.03),
        )


@dataclass(frozen=True)
class RetrievalDocument:
    id: str
    source: str
    content: str
    area: str = ""
    timestamp: datetime | None = None
    url: str | None = None
    embedding: tuple[float, ...] = field(default=(), repr=False, compare=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "content": self.content,
            "area": self.area,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "url": self.url,
        }


@dataclass(frozen=True)
class RecallHit:
    document: RetrievalDocument
    distance: float


@dataclass(frozen=True)
class RerankedResult:
    document: RetrievalDocument
    vector_score: float
    lexical_score: float
    freshness_bonus: float
    area_bonus: float
    final_score: float

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.document.as_dict(),
            "vector_score": round(self.vector_score, 6),
            "lexical_score": round(self.lexical_score, 6),
            "freshness_bonus": round(self.freshness_bonus, 6),
            "area_bonus": round(self.area_bonus, 6),
            "final_score": round(self.final_score, 6),
        }


def _tokenize(text: str) -> list[str]:
    return [t.lower() for t in _TOKENIZE_RE.findall(text or "")]


def query_terms(query: str) -> list[str]:
    """Distinct query tokens of length >= 2, in first-seen order."""
    seen: dict[str, None] = {}
    for token in _tokenize(query):
        if len(token) >= MIN_TOKEN_LEN:
            seen.setdefault(token, None)
    return list(seen)


def vector_score(distance: float) -> float:
    return 1.0 / (1.0 + max(0.0, float(distance)))


def lexical_score(terms: list[str], text: str) -> float:
    if not terms:
        return 0.0
    haystack = (text or "").lower()
    matched = sum(1 for term in terms if term in haystack)
    return matched / len(terms)


def age_days(timestamp: datetime | None, now: datetime) -> float | None:
    if timestamp is None:
        return None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return (now - timestamp).total_seconds() / 86400.0


def freshness_bonus(age: float | None, weights: RerankWeights) -> float:
    if age is None:
        return 0.0
    if age <= weights.fresh_days:
        return weights.fresh_bonus
    if age <= weights.stale_days:
        span = weights.stale_days - weights.fresh_days
        return weights.fresh_bonus * (1.0 - (age - weights.fresh_days) / span)
    return 0.0


def area_bonus(doc_area: str, area_hint: str | None, weights: RerankWeights) -> float:
    hint = (area_hint or "").strip()
    if not hint:
        return 0.0
    return weights.area_bonus if hint in (doc_area or "") else 0.0


def score_candidate(
    hit: RecallHit,
    *,
    terms: list[str],
    area_hint: str | None,
    now: datetime,
    weights: RerankWeights,
) -> RerankedResult:
    doc = hit.document
    vec = vector_score(hit.distance)
    lex = lexical_score(terms, doc.content)
    fresh = freshness_bonus(age_days(doc.timestamp, now), weights)
    area = area_bonus(doc.area, area_hint, weights)
    final = weights.vector_weight * vec + weights.lexical_weight * lex + fresh + area
    return RerankedResult(
        document=doc,
        vector_score=vec,
        lexical_score=lex,
        freshness_bonus=fresh,
        area_bonus=area,
        final_score=final,
    )


def rerank(
    recall: list[RecallHit],
    query: str,
    *,
    area_hint: str | None = None,
    top_k: int = 5,
    now: datetime | None = None,
    weights: RerankWeights | None = None,
) -> list[RerankedResult]:
    if not recall:
        return []
    current = now or datetime.now(UTC)
    w = weights or RerankWeights()
    terms = query_terms(query)
    scored = [
        score_candidate(hit, terms=terms, area_hint=area_hint, now=current, weights=w)
        for hit in recall
    ]
    # sorted() is stable: equal scores keep recall order
    ranked = sorted(scored, key=lambda r: r.final_score, reverse=True)
    if top_k > 0:
        ranked = ranked[:top_k]
    return ranked
