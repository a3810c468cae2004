from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Iterable, Mapping
from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any, Callable

from jsonschema import ValidationError as SchemaValidationError, validate

from advisor.areas import build_trend_query, normalize_locale_name, normalize_rent_area, normalize_trend_area
from advisor.business_data import PlacesProvider, RentPriceProvider
from advisor.cache import RetrievalCache, cache_key, hash_params
from advisor.errors import ToolExecutionError
from advisor.retrieval import HybridRetriever
from advisor.settings import AdvisorSettings
from advisor.token_budget import trim_documents

logger = logging.getLogger(__name__)

TREND_SEARCH = "search_trend_docs"
RENT_LOOKUP = "lookup_rent_price"
PLACES_SEARCH = "search_nearby_places"


@dataclass(frozen=True)
class ToolHints:
    """Caller-side defaults used when the model sends unusable arguments."""

    area: str = ""
    concept: str = ""
    question: str = ""


ToolHandler = Callable[[dict[str, Any], ToolHints], Awaitable[dict[str, Any]]]
ArgsNormalizer = Callable[[dict[str, Any], ToolHints], dict[str, Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    max_calls: int = 1
    normalize: ArgsNormalizer | None = None

    def openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Model tool arguments arrive as a JSON string; anything unparseable becomes ``{}``."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def args_hash(tool_name: str, args: Mapping[str, Any]) -> str:
    return hash_params({"tool": tool_name, "args": dict(args)})


_TREND_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1},
        "area": {"type": "string"},
    },
    "required": ["query"],
}

_RENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"area": {"type": "string", "minLength": 1}},
    "required": ["area"],
}

_PLACES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "area": {"type": "string", "minLength": 1},
        "keyword": {"type": "string"},
    },
    "required": ["area"],
}


def _checked(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any] | None:
    try:
        validate(instance=payload, schema=schema)
    except SchemaValidationError as exc:
        logger.debug("tool arguments rejected: %s", exc.message)
        return None
    return payload


@dataclass(frozen=True)
class TrendSearchArgs:
    query: str
    area: str

    @classmethod
    def parse(cls, payload: dict[str, Any], hints: ToolHints) -> "TrendSearchArgs":
        area = normalize_trend_area(hints.area)
        checked = _checked(_TREND_SCHEMA, payload)
        if checked is None:
            return cls(query=build_trend_query(hints.question or hints.concept, area), area=area)
        query = " ".join(str(checked["query"]).split())
        if checked.get("area"):
            area = normalize_trend_area(str(checked["area"])) or area
        return cls(query=query or build_trend_query(hints.question, area), area=area)


@dataclass(frozen=True)
class RentLookupArgs:
    area: str

    @classmethod
    def parse(cls, payload: dict[str, Any], hints: ToolHints) -> "RentLookupArgs":
        checked = _checked(_RENT_SCHEMA, payload)
        raw_area = str(checked["area"]) if checked else hints.area
        # Commercial-area aliases (e.g. 홍대입구) are not rent keys; keep the dong then.
        mapped = normalize_trend_area(raw_area)
        return cls(area=normalize_rent_area(mapped if mapped.endswith("동") else raw_area))


@dataclass(frozen=True)
class PlacesSearchArgs:
    area: str
    keyword: str

    @classmethod
    def parse(cls, payload: dict[str, Any], hints: ToolHints) -> "PlacesSearchArgs":
        checked = _checked(_PLACES_SCHEMA, payload)
        if checked is None:
            return cls(area=normalize_trend_area(hints.area), keyword=normalize_locale_name(hints.concept))
        keyword = str(checked.get("keyword") or hints.concept)
        return cls(area=normalize_trend_area(str(checked["area"])), keyword=keyword.strip())


class ToolRegistry:
    """Read-only name -> ToolSpec table, built once per process."""

    def __init__(self, specs: Iterable[ToolSpec]) -> None:
        table: dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in table:
                raise ValueError(f"duplicate tool: {spec.name}")
            table[spec.name] = spec
        self._specs = MappingProxyType(table)

    @property
    def specs(self) -> Mapping[str, ToolSpec]:
        return self._specs

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec:
        if name not in self._specs:
            raise KeyError(f"unknown tool: {name}")
        return self._specs[name]

    def caps(self) -> dict[str, int]:
        return {name: spec.max_calls for name, spec in self._specs.items()}

    def openai_tools(self) -> list[dict[str, Any]]:
        return [spec.openai_schema() for spec in self._specs.values()]

    def memo_key(self, name: str, raw_args: Any, hints: ToolHints) -> str:
        """Hash of the arguments the handler will actually run with."""
        payload = parse_tool_arguments(raw_args)
        spec = self._specs.get(name)
        if spec is not None and spec.normalize is not None:
            try:
                payload = spec.normalize(payload, hints)
            except Exception as exc:
                logger.debug("could not normalize %s arguments: %s", name, exc)
        return args_hash(name, payload)

    async def execute(self, name: str, raw_args: Any, hints: ToolHints) -> dict[str, Any]:
        """Run one tool call. Always returns a ``{tool, ok, ...}`` dict."""
        if name not in self._specs:
            return {"tool": name, "ok": False, "error": f"unknown tool: {name}"}
        spec = self._specs[name]
        payload = parse_tool_arguments(raw_args)
        try:
            result = await spec.handler(payload, hints)
        except Exception as exc:
            logger.warning("tool %s failed: %s", name, exc)
            return {"tool": name, "ok": False, "error": str(exc) or type(exc).__name__}
        if not isinstance(result, dict):
            return {"tool": name, "ok": False, "error": "tool output must be object"}
        result.setdefault("tool", name)
        result.setdefault("ok", True)
        return result


def _normalizer(args_cls: Any) -> ArgsNormalizer:
    def normalize(payload: dict[str, Any], hints: ToolHints) -> dict[str, Any]:
        return asdict(args_cls.parse(payload, hints))

    return normalize


def _slim_document(doc: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc.get("id"),
        "source": doc.get("source"),
        "url": doc.get("url"),
        "area": doc.get("area"),
        "timestamp": doc.get("timestamp"),
        "content": doc.get("content"),
        "final_score": doc.get("final_score"),
    }


def build_default_registry(
    *,
    retriever: HybridRetriever,
    cache: RetrievalCache,
    rent_provider: RentPriceProvider,
    places_provider: PlacesProvider,
    settings: AdvisorSettings | None = None,
) -> ToolRegistry:
    cfg = settings or AdvisorSettings()
    caps = cfg.tool_caps

    async def search_trend_docs(payload: dict[str, Any], hints: ToolHints) -> dict[str, Any]:
        args = TrendSearchArgs.parse(payload, hints)
        documents, cache_hit = await retriever.search_and_rerank(args.query, area_hint=args.area or None)
        documents = trim_documents([_slim_document(d) for d in documents])
        return {
            "tool": TREND_SEARCH,
            "ok": True,
            "args": asdict(args),
            "documents": documents,
            "cache_hit": cache_hit,
        }

    async def lookup_rent_price(payload: dict[str, Any], hints: ToolHints) -> dict[str, Any]:
        args = RentLookupArgs.parse(payload, hints)
        if not args.area:
            raise ToolExecutionError(RENT_LOOKUP, "area is required")

        async def _compute() -> dict[str, Any]:
            row = await rent_provider.lookup(args.area)
            return {"found": row is not None, "rent": row}

        value, cache_hit = await cache.get_or_compute(cache_key("rent_price", asdict(args)), _compute)
        return {"tool": RENT_LOOKUP, "ok": True, "args": asdict(args), **value, "cache_hit": cache_hit}

    async def search_nearby_places(payload: dict[str, Any], hints: ToolHints) -> dict[str, Any]:
        args = PlacesSearchArgs.parse(payload, hints)
        if not args.area:
            raise ToolExecutionError(PLACES_SEARCH, "area is required")

        async def _compute() -> dict[str, Any]:
            return {"places": await places_provider.search(args.area, args.keyword)}

        value, cache_hit = await cache.get_or_compute(cache_key("nearby_places", asdict(args)), _compute)
        return {"tool": PLACES_SEARCH, "ok": True, "args": asdict(args), **value, "cache_hit": cache_hit}

    return ToolRegistry(
        [
            ToolSpec(
                name=TREND_SEARCH,
                description="Search recent trend articles and reviews about bars in an area.",
                input_schema=_TREND_SCHEMA,
                handler=search_trend_docs,
                max_calls=caps[TREND_SEARCH],
                normalize=_normalizer(TrendSearchArgs),
            ),
            ToolSpec(
                name=RENT_LOOKUP,
                description="Look up average monthly rent and deposit for a neighbourhood.",
                input_schema=_RENT_SCHEMA,
                handler=lookup_rent_price,
                max_calls=caps[RENT_LOOKUP],
                normalize=_normalizer(RentLookupArgs),
            ),
            ToolSpec(
                name=PLACES_SEARCH,
                description="List existing bars near the area, optionally filtered by a keyword.",
                input_schema=_PLACES_SCHEMA,
                handler=search_nearby_places,
                max_calls=caps[PLACES_SEARCH],
                normalize=_normalizer(PlacesSearchArgs),
            ),
        ]
    )
