from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from advisor.advice_output import OutputRepairer
from advisor.advice_service import AdviceService
from advisor.agent_loop import ToolCallingAgent
from advisor.business_data import (
    BusinessDataProvider,
    PlacesProvider,
    RentPriceProvider,
    StaticBusinessDataProvider,
    StaticPlacesProvider,
    StaticRentPriceProvider,
)
from advisor.cache import RetrievalCache, create_cache_from_settings
from advisor.job_queue import AdviceJobQueue
from advisor.job_store import JobStore, create_job_store_from_settings
from advisor.llm_provider import ChatBackend, OpenAIChatBackend, create_chat_backend_from_env
from advisor.prompts import load_prompts
from advisor.queue_backend import QueueBackend, create_queue_from_env
from advisor.rate_limiter import SlidingWindowRateLimiter
from advisor.reranker import RerankWeights, RetrievalDocument
from advisor.retrieval import ChromaDocumentStore, DocumentStore, HybridRetriever, InMemoryDocumentStore
from advisor.settings import AdvisorSettings
from advisor.stream_relay import StreamRelay, create_stream_relay_from_settings
from advisor.tools_registry import ToolRegistry, build_default_registry
from advisor.worker_runtime import AdviceWorker

logger = logging.getLogger(__name__)

SAMPLE_TREND_DOCS: list[RetrievalDocument] = [
    RetrievalDocument(
        id="trend-seongsu-001",
        source="trend_docs",
        content="성수동 와인바 트렌드: 내추럴 와인과 소규모 페어링 메뉴가 20-30대 데이트 수요를 끌고 있다.",
        area="성수동",
        timestamp=datetime(2025, 6, 12, tzinfo=UTC),
        url="https://example.com/trend/seongsu-wine-bars",
    ),
    RetrievalDocument(
        id="trend-seongsu-002",
        source="trend_docs",
        content="성수동 술집 분위기는 공장 개조 인테리어와 늦은 저녁 피크가 특징이며 주말 대기줄이 길다.",
        area="성수동",
        timestamp=datetime(2025, 3, 2, tzinfo=UTC),
        url="https://example.com/trend/seongsu-vibe",
    ),
    RetrievalDocument(
        id="trend-seongsu-003",
        source="trend_docs",
        content="성수동 상권 포화 우려: 신규 주점 개업이 이어지며 골목 안쪽 매장 회전율이 떨어지고 있다.",
        area="성수동",
        timestamp=datetime(2024, 11, 20, tzinfo=UTC),
        url="https://example.com/trend/seongsu-saturation",
    ),
    RetrievalDocument(
        id="trend-yeonnam-001",
        source="trend_docs",
        content="연남동 하이볼 바와 이자카야가 인스타 감성 사진 명소로 인기다.",
        area="연남동",
        timestamp=datetime(2025, 5, 8, tzinfo=UTC),
        url="https://example.com/trend/yeonnam-highball",
    ),
]


@dataclass
class AdvisorRuntime:
    settings: AdvisorSettings
    cache: RetrievalCache
    retriever: HybridRetriever
    registry: ToolRegistry
    backend: ChatBackend
    relay: StreamRelay
    store: JobStore
    queue_backend: QueueBackend
    jobs: AdviceJobQueue
    service: AdviceService
    worker: AdviceWorker


def _document_store_from_env(env: Mapping[str, str]) -> DocumentStore:
    if env.get("CHROMA_PERSIST_DIR", "").strip() or env.get("CHROMA_HOST", "").strip():
        collection = env.get("CHROMA_COLLECTION", "trend_docs").strip() or "trend_docs"
        logger.info("trend documents served from chroma collection %s", collection)
        return ChromaDocumentStore(collection_name=collection)
    return InMemoryDocumentStore(SAMPLE_TREND_DOCS)


def build_runtime(
    settings: AdvisorSettings | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    backend: ChatBackend | None = None,
    business_data: BusinessDataProvider | None = None,
    rent_provider: RentPriceProvider | None = None,
    places_provider: PlacesProvider | None = None,
    document_store: DocumentStore | None = None,
) -> AdvisorRuntime:
    """Wire every collaborator of the advice pipeline from settings and environment."""
    env = os.environ if environ is None else environ
    cfg = settings or AdvisorSettings.from_env(env)

    cache = create_cache_from_settings(cfg)
    retriever = HybridRetriever(
        document_store or _document_store_from_env(env),
        cache=cache,
        weights=RerankWeights.from_env(env),
        recall_k=cfg.recall_k,
        top_k=cfg.top_k,
    )
    registry = build_default_registry(
        retriever=retriever,
        cache=cache,
        rent_provider=rent_provider or StaticRentPriceProvider.from_env(env),
        places_provider=places_provider or StaticPlacesProvider.from_env(env),
        settings=cfg,
    )
    chat_backend = backend or create_chat_backend_from_env(env)
    relay = create_stream_relay_from_settings(cfg)
    prompts = load_prompts(env.get("ADVISOR_PROMPTS_PATH") or None)

    agent = ToolCallingAgent(
        backend=chat_backend,
        registry=registry,
        relay=relay,
        max_rounds=cfg.max_rounds,
        flush_interval_ms=cfg.flush_interval_ms,
    )
    service = AdviceService(
        business_data=business_data or StaticBusinessDataProvider.from_env(env),
        agent=agent,
        repairer=OutputRepairer(chat_backend, prompts),
        relay=relay,
        prompts=prompts,
        classifier=chat_backend if isinstance(chat_backend, OpenAIChatBackend) else None,
    )
    store = create_job_store_from_settings(cfg)
    queue_backend = create_queue_from_env(
        {"ADVICE_QUEUE_BACKEND": cfg.queue_backend, "ADVICE_KEY_PREFIX": cfg.key_prefix, "REDIS_DSN": cfg.redis_dsn}
    )
    jobs = AdviceJobQueue(
        store=store,
        queue_backend=queue_backend,
        relay=relay,
        cancel_ttl_s=cfg.cancel_flag_ttl_s,
    )
    worker = AdviceWorker(
        store=store,
        queue_backend=queue_backend,
        relay=relay,
        service=service,
        limiter=SlidingWindowRateLimiter(max_starts=cfg.rate_limit_max, window_ms=cfg.rate_limit_window_ms),
        settings=cfg,
    )
    return AdvisorRuntime(
        settings=cfg,
        cache=cache,
        retriever=retriever,
        registry=registry,
        backend=chat_backend,
        relay=relay,
        store=store,
        queue_backend=queue_backend,
        jobs=jobs,
        service=service,
        worker=worker,
    )
