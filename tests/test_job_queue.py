from __future__ import annotations

import asyncio

import pytest

from advisor.errors import NotFoundError
from advisor.job_queue import AdviceJobQueue
from advisor.job_store import InMemoryJobStore
from advisor.queue_backend import InMemoryQueueBackend
from advisor.stream_relay import InMemoryStreamRelay

JOB_INPUT = {
    "district_id": 42,
    "options": {"budgetLevel": "high", "concept": "wine bar", "targetAge": "30s", "openHours": "evening"},
    "question": "Is this area saturated?",
}


def _queue():
    store = InMemoryJobStore()
    backend = InMemoryQueueBackend()
    relay = InMemoryStreamRelay()
    return AdviceJobQueue(store=store, queue_backend=backend, relay=relay), store, backend, relay


def test_identical_submissions_get_distinct_jobs():
    jobs, _, backend, _ = _queue()

    async def scenario():
        first = await jobs.submit(JOB_INPUT)
        second = await jobs.submit(JOB_INPUT)
        return first, second, await backend.pending_count(queue_name="advice")

    first, second, pending = asyncio.run(scenario())
    assert first != second
    assert pending == 2


def test_submitted_job_is_queued_with_progress_event():
    jobs, _, _, relay = _queue()

    async def scenario():
        job_id = await jobs.submit(JOB_INPUT)
        return job_id, await jobs.get_status(job_id), await relay.snapshot(job_id)

    job_id, status, snap = asyncio.run(scenario())
    assert status == {"job_id": job_id, "status": "queued", "result": None, "failure_reason": None, "attempts": 0}
    assert snap.stage == "queued"


def test_unknown_job_raises_not_found():
    jobs, _, _, _ = _queue()
    with pytest.raises(NotFoundError):
        asyncio.run(jobs.get_status("adv_missing"))


def test_cancel_sets_flag_for_live_job():
    jobs, store, _, relay = _queue()

    async def scenario():
        job_id = await jobs.submit(JOB_INPUT)
        result = await jobs.cancel(job_id)
        return job_id, result, await store.is_cancel_requested(job_id), await relay.snapshot(job_id)

    job_id, result, flagged, snap = asyncio.run(scenario())
    assert result == {"job_id": job_id, "status": "cancel_requested"}
    assert flagged is True
    assert snap.stage == "cancel_requested"


def test_cancel_of_finished_job_reports_terminal_status():
    jobs, store, _, _ = _queue()

    async def scenario():
        job_id = await jobs.submit(JOB_INPUT)
        await store.transition(job_id, "active")
        await store.transition(job_id, "completed", result={})
        return job_id, await jobs.cancel(job_id), await store.is_cancel_requested(job_id)

    job_id, result, flagged = asyncio.run(scenario())
    assert result == {"job_id": job_id, "status": "completed"}
    assert flagged is False
