"""Locale-name helpers shared by the tool executors."""

from __future__ import annotations

import re

# Administrative dongs that trade under a better-known commercial area name.
MANUAL_AREA_MAP: dict[str, str] = {
    "성수1가1동": "성수동",
    "성수1가2동": "성수동",
    "성수2가1동": "성수동",
    "성수2가3동": "성수동",
    "서교동": "홍대입구",
    "동교동": "홍대입구",
    "합정동": "홍대입구",
}

KNOWN_TREND_AREAS: list[str] = sorted(set(MANUAL_AREA_MAP.values()))

TREND_KEYWORDS: list[str] = [
    "와인바",
    "와인",
    "맥주",
    "칵테일",
    "소주",
    "칵테일바",
    "고급",
    "프리미엄",
    "가성비",
    "조용한",
    "시끄러운",
    "힙한",
    "감성",
    "데이트",
    "혼술",
    "직장인",
    "회사원",
    "인스타",
    "사진",
    "안주",
    "루프탑",
    "루프탑바",
    "바",
    "펍",
    "겨울",
    "야장",
    "유튜브",
    "wine",
    "beer",
    "cocktail",
    "rooftop",
    "pub",
    "bar",
]

DEFAULT_TREND_KEYWORD = "술집"
DEFAULT_TREND_QUERY = "서울 술집"

_NUMBERED_DONG_RE = re.compile(r"^(.*?)([0-9]+)동$")
_NUMBERED_GA_RE = re.compile(r"^(.+(?:동|로))\d+가$")


def normalize_locale_name(raw: str) -> str:
    """Strip BOM, quotes and whitespace from a locale name."""
    return re.sub(r"\s+", "", (raw or "").replace("\ufeff", "").replace('"', "")).strip()


def normalize_trend_area(admin_dong: str) -> str:
    """Map an administrative dong name (e.g. ``성수1가1동``) to its trend-search area."""
    trimmed = normalize_locale_name(admin_dong)
    if not trimmed:
        return ""
    if trimmed in MANUAL_AREA_MAP:
        return MANUAL_AREA_MAP[trimmed]
    m = _NUMBERED_DONG_RE.match(trimmed)
    if m:
        return f"{m.group(1)}동"
    return trimmed


def normalize_rent_area(raw: str) -> str:
    """Key used by the rent/price collaborator: ``영등포동3가`` -> ``영등포동``."""
    s = normalize_locale_name(raw)
    m = _NUMBERED_GA_RE.match(s)
    if m:
        s = m.group(1)
    s = re.sub(r"\d+동$", "동", s)
    if not s or s.endswith("동") or s.endswith("가"):
        return s
    return f"{s}동"


def build_trend_query(question: str, area: str | None = None) -> str:
    q = (question or "").lower()
    matched = [kw for kw in TREND_KEYWORDS if kw in q]
    keyword_part = " ".join(matched[:3]) if matched else DEFAULT_TREND_KEYWORD
    query = " ".join(part for part in [area or "", keyword_part] if part)
    return query or DEFAULT_TREND_QUERY
