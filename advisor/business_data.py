"""Consumed collaborators: district aggregator, rent prices and nearby places.

Production deployments point ``ADVISOR_DISTRICTS_PATH`` / ``ADVISOR_RENT_PATH``
/ ``ADVISOR_PLACES_PATH`` at JSON exports of the statistics service.  Without
them the built-in sample payloads are served.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal, Protocol

from advisor.areas import normalize_rent_area, normalize_trend_area
from advisor.errors import NotFoundError
from advisor.llm_provider import ChatBackend
from advisor.prompts import PromptSet

logger = logging.getLogger(__name__)

QuestionRoute = Literal["DB", "RAG"]

_RAG_KEYWORDS = [
    "트렌드",
    "분위기",
    "데이트",
    "감성",
    "핫플",
    "요즘",
    "힙한",
    "인스타",
    "사진",
    "안주",
    "컨셉",
    "감성술집",
    "trend",
    "vibe",
    "mood",
]

_DB_KEYWORDS = [
    "월세",
    "임대료",
    "보증금",
    "폐업률",
    "유동 인구",
    "유동인구",
    "매출",
    "점포 수",
    "점포수",
    "sales",
    "deposit",
    "footfall",
]

_CLASSIFY = PromptSet().classify

SAMPLE_DISTRICTS: dict[int, dict[str, Any]] = {
    42: {
        "dong": {"id": 42, "name": "성수1가1동", "code": "1120065"},
        "summary": {"pubCount": 37, "avgRating": 4.3, "reviews": 5120},
        "topPubs": [
            {"name": "Seongsu Cellar", "rating": 4.6, "reviewCount": 812},
            {"name": "Brick Taproom", "rating": 4.4, "reviewCount": 640},
        ],
        "traffic": {
            "period": "2025Q2",
            "totalFootfall": 1843000,
            "maleRatio": 0.46,
            "femaleRatio": 0.54,
            "age20_30Ratio": 0.58,
            "peakTimeSlot": "17-21",
        },
        "store": {"totalStoreCount": 52, "openRate": 0.08, "closeRate": 0.05, "franchiseRatio": 0.12},
        "salesTrend": [
            {
                "period": "2024Q3",
                "alcoholTotalAmt": 8_100_000_000,
                "alcoholWeekendRatio": 0.41,
                "qoqGrowth": 0.03,
                "changeIndex": "HH",
                "peakTimeSlot": "21-24",
            },
            {
                "period": "2024Q4",
                "alcoholTotalAmt": 8_900_000_000,
                "alcoholWeekendRatio": 0.44,
                "qoqGrowth": 0.10,
                "changeIndex": "HH",
                "peakTimeSlot": "21-24",
            },
            {
                "period": "2025Q1",
                "alcoholTotalAmt": 8_400_000_000,
                "alcoholWeekendRatio": 0.39,
                "qoqGrowth": -0.06,
                "changeIndex": "HL",
                "peakTimeSlot": "17-21",
            },
            {
                "period": "2025Q2",
                "alcoholTotalAmt": 9_300_000_000,
                "alcoholWeekendRatio": 0.43,
                "qoqGrowth": 0.11,
                "changeIndex": "HH",
                "peakTimeSlot": "21-24",
            },
        ],
        "sales": {"period": "2025Q2", "totalAmt": 9_300_000_000, "weekendRatio": 0.43, "peakTimeSlot": "21-24"},
        "taChange": {"period": "2025Q2", "index": "HH", "indexName": "상권확장"},
        "facility": {
            "viatrFacilityCount": 14,
            "universityCount": 1,
            "subwayStationCount": 2,
            "busStopCount": 23,
            "bankCount": 6,
        },
        "kakaoPubs": [
            {"name": "Seongsu Cellar", "category": "와인바", "phone": "02-000-0001"},
            {"name": "Brick Taproom", "category": "호프", "phone": "02-000-0002"},
        ],
        "risk": {"level": "medium", "reasons": ["임대료 상승", "경쟁 점포 밀집"]},
    },
    7: {
        "dong": {"id": 7, "name": "서교동", "code": "1144066"},
        "summary": {"pubCount": 91, "avgRating": 4.1, "reviews": 14210},
        "topPubs": [{"name": "Hongdae Hops", "rating": 4.3, "reviewCount": 2033}],
        "salesTrend": [],
    },
}

SAMPLE_RENT: dict[str, dict[str, Any]] = {
    "성수동": {"avgMonthlyRent": 4_800_000, "avgDeposit": 60_000_000, "sampleCount": 112, "unit": "KRW"},
    "서교동": {"avgMonthlyRent": 3_900_000, "avgDeposit": 45_000_000, "sampleCount": 240, "unit": "KRW"},
}

SAMPLE_PLACES: dict[str, list[dict[str, str]]] = {
    "성수동": [
        {"name": "Seongsu Cellar", "category": "wine bar", "url": "https://place.map.kakao.com/100001"},
        {"name": "Brick Taproom", "category": "pub", "url": "https://place.map.kakao.com/100002"},
    ],
}


class BusinessDataProvider(Protocol):
    async def get_district_report(self, district_id: int) -> dict[str, Any]: ...


class RentPriceProvider(Protocol):
    async def lookup(self, area: str) -> dict[str, Any] | None: ...


class PlacesProvider(Protocol):
    async def search(self, area: str, keyword: str, *, limit: int = 5) -> list[dict[str, str]]: ...


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


class StaticBusinessDataProvider:
    def __init__(self, districts: Mapping[int, dict[str, Any]] | None = None) -> None:
        self._districts = {int(k): v for k, v in (districts if districts is not None else SAMPLE_DISTRICTS).items()}

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StaticBusinessDataProvider":
        env = os.environ if environ is None else environ
        path = env.get("ADVISOR_DISTRICTS_PATH", "").strip()
        if not path:
            return cls()
        raw = _load_json(path)
        return cls({int(k): v for k, v in raw.items()})

    async def get_district_report(self, district_id: int) -> dict[str, Any]:
        report = self._districts.get(int(district_id))
        if report is None:
            raise NotFoundError(f"district {district_id} not found", code="DISTRICT_NOT_FOUND")
        return json.loads(json.dumps(report))


class StaticRentPriceProvider:
    def __init__(self, rows: Mapping[str, dict[str, Any]] | None = None) -> None:
        source = rows if rows is not None else SAMPLE_RENT
        self._rows = {normalize_rent_area(k): v for k, v in source.items()}
        self.lookups = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StaticRentPriceProvider":
        env = os.environ if environ is None else environ
        path = env.get("ADVISOR_RENT_PATH", "").strip()
        return cls(_load_json(path)) if path else cls()

    async def lookup(self, area: str) -> dict[str, Any] | None:
        self.lookups += 1
        row = self._rows.get(normalize_rent_area(area))
        return dict(row) if row is not None else None


class StaticPlacesProvider:
    def __init__(self, places: Mapping[str, list[dict[str, str]]] | None = None) -> None:
        source = places if places is not None else SAMPLE_PLACES
        self._places = {normalize_trend_area(k): list(v) for k, v in source.items()}
        self.searches = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StaticPlacesProvider":
        env = os.environ if environ is None else environ
        path = env.get("ADVISOR_PLACES_PATH", "").strip()
        return cls(_load_json(path)) if path else cls()

    async def search(self, area: str, keyword: str, *, limit: int = 5) -> list[dict[str, str]]:
        self.searches += 1
        rows = self._places.get(normalize_trend_area(area), [])
        kw = (keyword or "").strip().lower()
        if kw:
            preferred = [r for r in rows if kw in r.get("category", "").lower() or kw in r.get("name", "").lower()]
            rows = preferred + [r for r in rows if r not in preferred]
        return rows[: max(1, limit)]


def classify_question(question: str) -> QuestionRoute:
    """Keyword routing: trend/mood questions lean on retrieval, metric questions on the payload.

    ``RAG`` only when mood keywords outnumber metric keywords; ties and
    unmatched questions stay on ``DB``.
    """
    q = (question or "").strip().lower()
    if not q:
        return "DB"
    rag_hits = sum(1 for k in _RAG_KEYWORDS if k in q)
    db_hits = sum(1 for k in _DB_KEYWORDS if k in q)
    return "RAG" if rag_hits > db_hits else "DB"


async def route_question(
    question: str,
    backend: ChatBackend | None = None,
    *,
    prompt: str = _CLASSIFY,
) -> QuestionRoute:
    """Ask the chat backend for ``RAG`` or ``DB``, falling back to keyword routing."""
    q = (question or "").strip()
    if not q:
        return "DB"
    if backend is None:
        return classify_question(q)
    try:
        completion = await backend.complete([{"role": "user", "content": prompt.format(question=q)}])
    except Exception as exc:
        logger.warning("question classifier failed, using keywords: %s", exc)
        return classify_question(q)
    answer = (completion.content or "").strip().upper()
    if "RAG" in answer:
        return "RAG"
    if "DB" in answer:
        return "DB"
    logger.info("question classifier answered %r, using keywords", answer[:20])
    return classify_question(q)


def long_term_direction(series: list[dict[str, Any]]) -> str | None:
    values = [s.get("alcoholTotalAmt") for s in series]
    values = [float(v) for v in values if isinstance(v, (int, float))]
    if len(values) < 2:
        return None
    first, last = values[0], values[-1]
    ratio = (last - first) / (abs(first) or 1.0)
    if ratio > 0.1:
        return "up"
    if ratio < -0.1:
        return "down"
    if abs(ratio) <= 0.05:
        return "flat"
    return "mixed"


_CHANGE_INDEXES = {"LL", "LH", "HL", "HH"}


def _change_index(value: Any) -> str | None:
    return value if value in _CHANGE_INDEXES else None


def _pick(section: Any, keys: tuple[str, ...]) -> dict[str, Any] | None:
    if not isinstance(section, Mapping):
        return None
    return {key: section.get(key) for key in keys}


def _risk(section: Any) -> dict[str, Any] | None:
    if not isinstance(section, Mapping):
        return None
    level = section.get("level")
    reasons = section.get("reasons")
    return {
        "level": level if level in {"low", "medium", "high"} else None,
        "reasons": [str(r) for r in reasons] if isinstance(reasons, list) else [],
    }


def to_slim_report(report: Mapping[str, Any]) -> dict[str, Any]:
    """Compact the aggregator payload into what the prompt actually needs."""
    trend = list(report.get("salesTrend") or [])
    recent = trend[-8:]
    qoq = [float(s["qoqGrowth"]) for s in recent if isinstance(s.get("qoqGrowth"), (int, float))]
    negative_streak = 0
    for item in reversed(recent):
        growth = item.get("qoqGrowth")
        if not isinstance(growth, (int, float)) or growth >= 0:
            break
        negative_streak += 1
    dong = report.get("dong") or {}
    summary = report.get("summary") or {}
    ta_change = _pick(report.get("taChange"), ("period", "index", "indexName"))
    if ta_change is not None:
        ta_change["index"] = _change_index(ta_change["index"])
    return {
        "dong": {"id": dong.get("id"), "name": dong.get("name"), "code": dong.get("code")},
        "summary": {
            "pubCount": summary.get("pubCount", 0),
            "avgRating": summary.get("avgRating"),
            "reviews": summary.get("reviews"),
        },
        "topPubs": list(report.get("topPubs") or [])[:5],
        "traffic": _pick(
            report.get("traffic"),
            ("totalFootfall", "maleRatio", "femaleRatio", "age20_30Ratio", "peakTimeSlot"),
        ),
        "store": _pick(report.get("store"), ("totalStoreCount", "openRate", "closeRate", "franchiseRatio")),
        "sales": _pick(report.get("sales"), ("period", "totalAmt", "weekendRatio", "peakTimeSlot")),
        "taChange": ta_change,
        "facility": _pick(
            report.get("facility"),
            ("viatrFacilityCount", "universityCount", "subwayStationCount", "busStopCount", "bankCount"),
        ),
        "salesTrend": {
            "recent": [
                {
                    "period": s.get("period"),
                    "alcoholTotalAmt": s.get("alcoholTotalAmt"),
                    "alcoholWeekendRatio": s.get("alcoholWeekendRatio"),
                    "qoqGrowth": s.get("qoqGrowth"),
                    "changeIndex": _change_index(s.get("changeIndex")),
                    "peakTimeSlot": s.get("peakTimeSlot"),
                }
                for s in recent
            ],
            "recentQoqAvg": round(sum(qoq) / len(qoq), 4) if qoq else None,
            "recentQoqVolatility": round(sum(abs(v) for v in qoq) / len(qoq), 4) if qoq else None,
            "recentNegativeStreak": negative_streak,
            "longTermDirection": long_term_direction(trend),
        },
        "kakaoPubs": [
            {"name": p.get("name"), "category": p.get("category")}
            for p in list(report.get("kakaoPubs") or [])[:5]
            if isinstance(p, Mapping)
        ],
        "risk": _risk(report.get("risk")),
    }
