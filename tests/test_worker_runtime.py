from __future__ import annotations

import asyncio

import pytest

from conftest import fast_settings

from advisor.mock_llm import MockChatBackend, ScriptedChatBackend
from advisor.runtime import build_runtime
from advisor.worker_runtime import describe_worker, retry_backoff_ms, retry_jitter_ms

JOB_INPUT = {
    "district_id": 42,
    "options": {"budgetLevel": "high", "concept": "wine bar", "targetAge": "30s", "openHours": "evening"},
    "question": "Is this area saturated?",
}


def _submit_and_drain(runtime, job_input=JOB_INPUT, *, cancel_first: bool = False):
    async def scenario():
        job_id = await runtime.jobs.submit(job_input)
        if cancel_first:
            await runtime.jobs.cancel(job_id)
        stats = await runtime.worker.drain(max_iterations=200)
        return await runtime.jobs.get_status(job_id), stats

    return asyncio.run(scenario())


def test_retry_jitter_is_deterministic_and_bounded():
    first = retry_jitter_ms(job_id="adv_1", attempt=1, bound_ms=300)
    assert first == retry_jitter_ms(job_id="adv_1", attempt=1, bound_ms=300)
    assert 0 <= first <= 300
    assert retry_jitter_ms(job_id="adv_1", attempt=1, bound_ms=0) == 0


def test_retry_backoff_doubles_and_caps():
    delays = [
        retry_backoff_ms(job_id="adv_1", attempt=n, base_ms=100, max_ms=500, jitter_ms=0) for n in range(1, 6)
    ]
    assert delays == [100, 200, 400, 500, 500]


def test_mock_backend_job_completes_with_citations():
    runtime = build_runtime(fast_settings(), environ={}, backend=MockChatBackend(chunk_chars=16))
    status, stats = _submit_and_drain(runtime)

    assert status["status"] == "completed"
    assert status["attempts"] == 1
    result = status["result"]
    assert result["citations"]
    assert result["markdown"]
    assert result["report"]["dong"]
    assert stats["succeeded"] == 1
    assert stats["acked"] == 1


def test_transient_failure_is_retried_then_succeeds():
    backend = ScriptedChatBackend(chunks=["## 성수동 술집 상권\n", "- 저녁 수요가 많다."], fail_times=1)
    runtime = build_runtime(fast_settings(), environ={}, backend=backend)
    status, stats = _submit_and_drain(runtime)

    assert status["status"] == "completed"
    assert status["attempts"] == 2
    assert stats["retrying"] == 1
    assert stats["succeeded"] == 1
    assert any(c["source"] == "internal_db" for c in status["result"]["citations"])


def test_persistent_failure_fails_after_configured_attempts():
    backend = ScriptedChatBackend(fail_times=100)
    runtime = build_runtime(fast_settings(job_attempts=3), environ={}, backend=backend)
    status, stats = _submit_and_drain(runtime)

    assert status["status"] == "failed"
    assert status["attempts"] == 3
    assert "scripted backend unavailable" in status["failure_reason"]
    assert stats["retrying"] == 2
    assert stats["failed"] == 1


def test_job_cancelled_before_start_skips_rate_limiter():
    backend = ScriptedChatBackend()
    runtime = build_runtime(fast_settings(), environ={}, backend=backend)
    status, stats = _submit_and_drain(runtime, cancel_first=True)

    assert status["status"] == "failed"
    assert status["failure_reason"] == "cancelled"
    assert status["attempts"] == 0
    assert stats["cancelled"] == 1
    assert runtime.worker.limiter.in_window() == 0
    assert backend.requests == []


def test_missing_district_fails_without_retry():
    backend = ScriptedChatBackend()
    runtime = build_runtime(fast_settings(), environ={}, backend=backend)
    status, stats = _submit_and_drain(runtime, {**JOB_INPUT, "district_id": 999})

    assert status["status"] == "failed"
    assert status["attempts"] == 1
    assert "999" in status["failure_reason"]
    assert stats["retrying"] == 0


def test_terminal_job_message_is_acked_without_work():
    backend = ScriptedChatBackend()
    runtime = build_runtime(fast_settings(), environ={}, backend=backend)

    async def scenario():
        job_id = await runtime.jobs.submit(JOB_INPUT)
        await runtime.store.transition(job_id, "active")
        await runtime.store.transition(job_id, "failed", failure_reason="cancelled")
        return await runtime.worker.drain()

    stats = asyncio.run(scenario())
    assert stats["acked"] == 1
    assert stats["failed"] == 0
    assert backend.requests == []


def test_describe_worker_reports_pool_shape():
    runtime = build_runtime(fast_settings(worker_concurrency=3, rate_limit_max=7), environ={})
    info = describe_worker(runtime.worker)
    assert info["concurrency"] == 3
    assert info["rate_limit"]["max"] == 7
    assert info["attempts"] == 3


def _record_transitions(runtime) -> list[str]:
    seen: list[str] = []
    original = runtime.store.transition

    async def recording(job_id, new_status, **fields):
        seen.append(new_status)
        return await original(job_id, new_status, **fields)

    runtime.store.transition = recording
    return seen


@pytest.mark.parametrize(
    ("backend_factory", "cancel_first", "final"),
    [
        (lambda: MockChatBackend(chunk_chars=16), False, "completed"),
        (lambda: ScriptedChatBackend(fail_times=100), False, "failed"),
        (lambda: ScriptedChatBackend(), True, "failed"),
    ],
    ids=["completed", "retried-then-failed", "cancelled-before-start"],
)
def test_every_job_passes_through_active_exactly_once(backend_factory, cancel_first, final):
    runtime = build_runtime(fast_settings(), environ={}, backend=backend_factory())
    seen = _record_transitions(runtime)
    status, _ = _submit_and_drain(runtime, cancel_first=cancel_first)

    assert status["status"] == final
    assert seen == ["active", final]
