"""Token budget for tool results appended to the agent transcript.

  - single tool result  <= TOOL_RESULT_TOKEN_BUDGET tokens (default 1 500)
  - one document        <= DOC_CONTENT_TOKEN_BUDGET tokens (default 400)
  - over-budget trim order: lowest final_score first
"""

from __future__ import annotations

import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

TOOL_RESULT_TOKEN_BUDGET = int(os.environ.get("TOOL_RESULT_TOKEN_BUDGET", "1500"))
DOC_CONTENT_TOKEN_BUDGET = int(os.environ.get("DOC_CONTENT_TOKEN_BUDGET", "400"))
MIN_DOCS_PER_RESULT = 1

_encoder: Any = None
_encoder_loaded = False


def _get_encoder() -> Any:
    global _encoder, _encoder_loaded
    if not _encoder_loaded:
        try:
            import tiktoken
            _encoder = tiktoken.get_encoding("cl100k_base")
        except Exception:
            _encoder = None
        _encoder_loaded = True
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens. Uses tiktoken (cl100k_base) when available, else ~4 bytes/token."""
    enc = _get_encoder()
    if enc is None:
        return max(1, len(text.encode("utf-8")) // 4)
    return len(enc.encode(text))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    if max_tokens <= 0 or count_tokens(text) <= max_tokens:
        return text
    enc = _get_encoder()
    if enc is not None:
        return enc.decode(enc.encode(text)[:max_tokens]) + "..."
    # approximate: keep proportional prefix by bytes
    budget_bytes = max_tokens * 4
    return text.encode("utf-8")[:budget_bytes].decode("utf-8", errors="ignore") + "..."


def trim_documents(
    documents: list[dict[str, Any]],
    max_tokens: int = 0,
    *,
    per_doc_tokens: int = 0,
) -> list[dict[str, Any]]:
    """Fit reranked documents into *max_tokens*, keeping the best-scored ones.

    Always keeps at least ``MIN_DOCS_PER_RESULT`` document.  Input order is
    preserved for the documents that survive.
    """
    budget = max_tokens or TOOL_RESULT_TOKEN_BUDGET
    doc_budget = per_doc_tokens or DOC_CONTENT_TOKEN_BUDGET
    if not documents:
        return documents

    clipped = []
    for doc in documents:
        item = dict(doc)
        item["content"] = truncate_to_tokens(str(item.get("content", "")), doc_budget)
        clipped.append(item)

    order = sorted(
        range(len(clipped)),
        key=lambda i: float(clipped[i].get("final_score", 0.0)),
        reverse=True,
    )
    keep: set[int] = set()
    total = 0
    for idx in order:
        tokens = count_tokens(clipped[idx]["content"])
        if total + tokens > budget and len(keep) >= MIN_DOCS_PER_RESULT:
            continue
        keep.add(idx)
        total += tokens
    dropped = len(clipped) - len(keep)
    if dropped:
        logger.debug("trimmed %d documents to fit tool budget of %d tokens", dropped, budget)
    return [doc for i, doc in enumerate(clipped) if i in keep]
