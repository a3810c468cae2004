from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Callable, Protocol

from advisor.cache import RetrievalCache, cache_key
from advisor.errors import UpstreamError
from advisor.reranker import RecallHit, RerankWeights, RetrievalDocument, rerank

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    def nearest(self, query: str, *, limit: int) -> list[RecallHit]: ...


class SimpleEmbeddingFunction:
    """Hash-based embedding; deterministic but NOT semantically meaningful."""

    def __init__(self, dim: int = 128) -> None:
        self._dim = max(8, dim)

    def __call__(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            raw = list(digest)
            data = (raw * ((self._dim // len(raw)) + 1))[: self._dim]
            vectors.append([x / 255.0 for x in data])
        return vectors


class OpenAICompatEmbeddingFunction:
    """Embedding function for any OpenAI-compatible API (OpenAI, Ollama, vLLM, etc.)."""

    def __init__(
        self,
        *,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self._base_url = base_url or os.environ.get("EMBEDDING_BASE_URL", "") or os.environ.get("OPENAI_BASE_URL", "")

    def __call__(self, texts: list[str]) -> list[list[float]]:
        import openai

        kwargs: dict[str, Any] = {"api_key": self._api_key or "unused"}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        client = openai.OpenAI(**kwargs)
        response = client.embeddings.create(model=self._model, input=texts)
        return [item.embedding for item in response.data]


@lru_cache(maxsize=1)
def _embedding_fn() -> Callable[[list[str]], list[list[float]]]:
    backend = os.environ.get("EMBEDDING_BACKEND", "auto").strip().lower()
    model = os.environ.get("EMBEDDING_MODEL_NAME", "text-embedding-3-small")
    if backend in {"openai", "ollama", "custom"}:
        base_url = os.environ.get("EMBEDDING_BASE_URL", "") or os.environ.get("OPENAI_BASE_URL", "")
        api_key = os.environ.get("OPENAI_API_KEY", "")
        if backend == "ollama":
            base_url = base_url or os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434/v1")
            api_key = api_key or "ollama"
            model = os.environ.get("EMBEDDING_MODEL_NAME", "nomic-embed-text")
        return OpenAICompatEmbeddingFunction(model=model, api_key=api_key, base_url=base_url)
    if backend == "auto" and os.environ.get("OPENAI_API_KEY", "").strip():
        logger.info("auto embedding: using OpenAI (%s)", model)
        return OpenAICompatEmbeddingFunction(model=model)
    if backend == "auto":
        logger.warning("auto embedding: OPENAI_API_KEY not set; falling back to SimpleEmbeddingFunction")
    return SimpleEmbeddingFunction(dim=int(os.environ.get("EMBEDDING_DIM", "128")))


def _parse_timestamp(raw: Any) -> datetime | None:
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=UTC)
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), tz=UTC)
    if isinstance(raw, str) and raw.strip():
        try:
            dt = datetime.fromisoformat(raw.strip())
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
    return None


def document_from_metadata(doc_id: str, text: str, metadata: Mapping[str, Any] | None) -> RetrievalDocument:
    meta = metadata or {}
    return RetrievalDocument(
        id=str(doc_id),
        source=str(meta.get("source") or "trend_docs"),
        content=text or "",
        area=str(meta.get("area") or ""),
        timestamp=_parse_timestamp(meta.get("timestamp")),
        url=str(meta["url"]) if meta.get("url") else None,
    )


class ChromaDocumentStore:
    """Trend documents in a Chroma collection (persistent, http, or ephemeral client)."""

    def __init__(self, *, collection_name: str = "trend_docs", client: Any | None = None) -> None:
        self._collection_name = collection_name
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import chromadb

        persist_dir = os.environ.get("CHROMA_PERSIST_DIR", "").strip()
        if persist_dir:
            self._client = chromadb.PersistentClient(path=persist_dir)
        elif os.environ.get("CHROMA_HOST", "").strip():
            port = int(os.environ.get("CHROMA_PORT", "8000"))
            self._client = chromadb.HttpClient(host=os.environ["CHROMA_HOST"].strip(), port=port)
        else:
            self._client = chromadb.Client()
        return self._client

    def _collection(self) -> Any:
        return self._get_client().get_or_create_collection(
            name=self._collection_name,
            embedding_function=_embedding_fn(),
        )

    def upsert(self, documents: list[RetrievalDocument]) -> int:
        ids: list[str] = []
        texts: list[str] = []
        metas: list[dict[str, Any]] = []
        for doc in documents:
            if not doc.id or not doc.content:
                continue
            ids.append(doc.id)
            texts.append(doc.content)
            metas.append(
                {
                    "source": doc.source,
                    "area": doc.area,
                    "timestamp": doc.timestamp.isoformat() if doc.timestamp else "",
                    "url": doc.url or "",
                }
            )
        if ids:
            self._collection().upsert(ids=ids, documents=texts, metadatas=metas)
        return len(ids)

    def nearest(self, query: str, *, limit: int) -> list[RecallHit]:
        collection = self._collection()
        try:
            count = collection.count()
        except Exception:
            count = 0
        if count == 0:
            return []
        result = collection.query(query_texts=[query], n_results=min(limit, count))
        ids = (result.get("ids") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        documents = (result.get("documents") or [[]])[0]
        hits: list[RecallHit] = []
        for idx, doc_id in enumerate(ids):
            metadata = metadatas[idx] if idx < len(metadatas) else {}
            text = documents[idx] if idx < len(documents) else ""
            distance = float(distances[idx]) if idx < len(distances) else 1.0
            hits.append(RecallHit(document=document_from_metadata(doc_id, text, metadata), distance=distance))
        return hits


def _cosine_distance(a: list[float] | tuple[float, ...], b: list[float] | tuple[float, ...]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


class InMemoryDocumentStore:
    def __init__(
        self,
        documents: list[RetrievalDocument] | None = None,
        *,
        embed: Callable[[list[str]], list[list[float]]] | None = None,
    ) -> None:
        self._embed = embed or SimpleEmbeddingFunction()
        self._docs: list[RetrievalDocument] = []
        self.query_count = 0
        if documents:
            self.upsert(documents)

    def upsert(self, documents: list[RetrievalDocument]) -> int:
        by_id = {doc.id: doc for doc in self._docs}
        for doc in documents:
            if not doc.embedding:
                vector = tuple(self._embed([doc.content])[0])
                doc = RetrievalDocument(
                    id=doc.id,
                    source=doc.source,
                    content=doc.content,
                    area=doc.area,
                    timestamp=doc.timestamp,
                    url=doc.url,
                    embedding=vector,
                )
            by_id[doc.id] = doc
        self._docs = list(by_id.values())
        return len(documents)

    def nearest(self, query: str, *, limit: int) -> list[RecallHit]:
        self.query_count += 1
        if not self._docs:
            return []
        query_vec = self._embed([query])[0]
        hits = [RecallHit(document=doc, distance=_cosine_distance(query_vec, doc.embedding)) for doc in self._docs]
        hits.sort(key=lambda h: h.distance)
        return hits[: max(1, limit)]


class HybridRetriever:
    """Vector recall of size ``recall_k`` followed by hybrid rerank to ``top_k``."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        cache: RetrievalCache | None = None,
        weights: RerankWeights | None = None,
        recall_k: int = 20,
        top_k: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.weights = weights or RerankWeights()
        self.recall_k = max(1, recall_k)
        self.top_k = max(1, top_k)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def search(self, query: str, *, recall_k: int | None = None) -> list[RecallHit]:
        limit = recall_k or self.recall_k
        try:
            return await asyncio.to_thread(self.store.nearest, query, limit=limit)
        except Exception as exc:
            raise UpstreamError(f"document store query failed: {exc}", backend="retrieval") from exc

    def rerank(
        self,
        recall: list[RecallHit],
        query: str,
        *,
        area_hint: str | None = None,
        top_k: int | None = None,
    ) -> list[dict[str, Any]]:
        ranked = rerank(
            recall,
            query,
            area_hint=area_hint,
            top_k=top_k or self.top_k,
            now=self._clock(),
            weights=self.weights,
        )
        return [item.as_dict() for item in ranked]

    async def search_and_rerank(
        self,
        query: str,
        *,
        area_hint: str | None = None,
        top_k: int | None = None,
    ) -> tuple[list[dict[str, Any]], bool]:
        k = top_k or self.top_k

        async def _compute() -> list[dict[str, Any]]:
            recall = await self.search(query)
            return self.rerank(recall, query, area_hint=area_hint, top_k=k)

        if self.cache is None:
            return await _compute(), False
        key = cache_key(
            "trend_search",
            {"query": query, "area": area_hint or "", "recall_k": self.recall_k, "top_k": k},
        )
        return await self.cache.get_or_compute(key, _compute)
