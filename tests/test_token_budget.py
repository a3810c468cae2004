from __future__ import annotations

from advisor.token_budget import count_tokens, trim_documents, truncate_to_tokens


def _doc(doc_id: str, score: float, words: int = 200) -> dict:
    return {"id": doc_id, "content": "word " * words, "final_score": score}


def test_count_tokens_is_positive():
    assert count_tokens("성수동 와인바") >= 1


def test_truncate_to_tokens_shortens_long_text():
    text = "word " * 500
    clipped = truncate_to_tokens(text, 10)
    assert clipped.endswith("...")
    assert len(clipped) < len(text)
    assert truncate_to_tokens("short", 10) == "short"


def test_trim_documents_keeps_best_scored_within_budget():
    docs = [_doc("low", 0.2), _doc("high", 0.9), _doc("mid", 0.5)]
    kept = trim_documents(docs, max_tokens=300, per_doc_tokens=1000)
    assert [d["id"] for d in kept] == ["high"]


def test_trim_documents_preserves_input_order_of_survivors():
    docs = [_doc("low", 0.2, 10), _doc("high", 0.9, 10), _doc("mid", 0.5, 10)]
    kept = trim_documents(docs, max_tokens=1000, per_doc_tokens=1000)
    assert [d["id"] for d in kept] == ["low", "high", "mid"]


def test_trim_documents_always_keeps_one():
    kept = trim_documents([_doc("only", 0.1)], max_tokens=1, per_doc_tokens=1000)
    assert [d["id"] for d in kept] == ["only"]
    assert trim_documents([]) == []
