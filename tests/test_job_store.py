from __future__ import annotations

import asyncio

import pytest

from advisor.errors import ApiError
from advisor.job_store import InMemoryJobStore, RedisJobStore, apply_transition, new_job_record


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_new_job_ids_are_distinct():
    ids = {new_job_record({"district_id": 42})["job_id"] for _ in range(50)}
    assert len(ids) == 50
    assert all(job_id.startswith("adv_") for job_id in ids)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("completed", "active"),
        ("failed", "queued"),
        ("active", "queued"),
        ("completed", "completed"),
        ("queued", "failed"),
        ("queued", "completed"),
    ],
)
def test_backward_skipping_or_repeated_transitions_are_rejected(current, target):
    job = dict(new_job_record({}), status=current)
    with pytest.raises(ApiError) as exc_info:
        apply_transition(job, target)
    assert exc_info.value.http_status == 409


def test_forward_transitions_stamp_finish_time():
    job = new_job_record({})
    active = apply_transition(job, "active", attempts=1)
    done = apply_transition(active, "completed", result={"ok": True})
    assert active["finished_at"] is None
    assert done["finished_at"] == done["updated_at"]
    assert apply_transition(active, "failed", failure_reason="cancelled")["status"] == "failed"


def test_terminal_jobs_are_pruned_after_ttl():
    clock = _Clock()
    store = InMemoryJobStore(completed_ttl_s=10, failed_ttl_s=20, clock=clock)

    async def scenario():
        job = await store.create(new_job_record({}))
        await store.transition(job["job_id"], "active")
        await store.transition(job["job_id"], "completed", result={})
        clock.now = 9
        still_there = await store.get(job["job_id"])
        clock.now = 11
        gone = await store.get(job["job_id"])
        return still_there, gone

    still_there, gone = asyncio.run(scenario())
    assert still_there["status"] == "completed"
    assert gone is None


def test_cancel_flag_expires():
    clock = _Clock()
    store = InMemoryJobStore(clock=clock)

    async def scenario():
        await store.request_cancel("adv_1", ttl_s=5)
        before = await store.is_cancel_requested("adv_1")
        clock.now = 6
        after = await store.is_cancel_requested("adv_1")
        return before, after

    assert asyncio.run(scenario()) == (True, False)


def test_redis_job_store_round_trip(fake_redis):
    store = RedisJobStore(client=fake_redis, prefix="advice", completed_ttl_s=600, failed_ttl_s=3600)

    async def scenario():
        job = await store.create(new_job_record({"district_id": 42}))
        with pytest.raises(ApiError):
            await store.create(job)
        await store.transition(job["job_id"], "active", attempts=1)
        await store.transition(job["job_id"], "failed", failure_reason="boom")
        await store.request_cancel(job["job_id"], ttl_s=30)
        return job["job_id"], await store.get(job["job_id"]), await store.is_cancel_requested(job["job_id"])

    job_id, saved, cancelled = asyncio.run(scenario())
    assert saved["status"] == "failed"
    assert saved["failure_reason"] == "boom"
    assert fake_redis.ttls[f"advice:jobrec:{job_id}"] == 3600
    assert fake_redis.ttls[f"advice:job:{job_id}:cancel"] == 30
    assert cancelled is True
