from __future__ import annotations

import asyncio
import json

from advisor.stream_relay import (
    DELTA,
    DELTA_SNAPSHOT,
    DONE,
    PING,
    PROGRESS,
    InMemoryStreamRelay,
    RedisStreamRelay,
    StreamEvent,
    format_sse,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def _publish_partial(relay, job_id="job_1"):
    await relay.progress(job_id, "generating")
    await relay.delta(job_id, 1, "## 상권")
    await relay.delta(job_id, 2, " 개요\n")
    await relay.delta(job_id, 3, "- 유동인구 많음")


def test_format_sse_frame_layout():
    event = StreamEvent(type=DELTA, job_id="j", data={"seq": 7, "text": "line1\nline2"})
    frame = format_sse(event, 3)
    assert frame.startswith("event: delta\nid: 3\ndata: ")
    assert frame.endswith("\n\n")
    payload = frame.split("data: ", 1)[1].strip()
    assert json.loads(payload) == {"seq": 7, "text": "line1\nline2"}


def test_snapshot_at_seq_n_is_concatenation_of_deltas():
    relay = InMemoryStreamRelay()
    asyncio.run(_publish_partial(relay))
    snap = asyncio.run(relay.snapshot("job_1"))
    assert snap.stage == "generating"
    assert snap.last_seq == 3
    assert snap.text == "## 상권 개요\n- 유동인구 많음"


def test_first_frame_for_unknown_job_is_subscribed_progress_without_snapshot():
    relay = InMemoryStreamRelay(heartbeat_s=0.01)

    async def scenario():
        stream = relay.subscribe("fresh")
        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.type == PROGRESS
    assert first.data == {"jobId": "fresh", "stage": "subscribed"}
    assert second.type == PING
    assert relay.subscriber_count("fresh") == 0


def test_late_subscriber_gets_snapshot_then_live_events_without_duplicates():
    relay = InMemoryStreamRelay(heartbeat_s=1.0)

    async def scenario():
        await _publish_partial(relay)
        stream = relay.subscribe("job_1")
        replay = [await stream.__anext__() for _ in range(3)]
        await relay.delta("job_1", 2, " 개요\n")
        await relay.delta("job_1", 4, "\n## 요약")
        await relay.done("job_1", {"title": "t"})
        live = [event async for event in stream]
        return replay, live

    replay, live = asyncio.run(scenario())
    assert [e.type for e in replay] == [PROGRESS, PROGRESS, DELTA_SNAPSHOT]
    assert replay[1].data["stage"] == "generating"
    assert replay[2].data == {"seq": 3, "text": "## 상권 개요\n- 유동인구 많음"}
    assert [(e.type, e.seq) for e in live] == [(DELTA, 4), (DONE, None)]


def test_subscriber_to_finished_job_receives_terminal_event_and_closes():
    relay = InMemoryStreamRelay()

    async def scenario():
        await _publish_partial(relay)
        await relay.done("job_1", {"ok": True})
        return [event async for event in relay.subscribe("job_1")]

    events = asyncio.run(scenario())
    assert [e.type for e in events] == [PROGRESS, PROGRESS, DELTA_SNAPSHOT, DONE]
    assert events[-1].data["result"] == {"ok": True}


def test_begin_attempt_clears_partial_text_and_keeps_seq():
    relay = InMemoryStreamRelay()

    async def scenario():
        await _publish_partial(relay)
        resume_after = await relay.begin_attempt("job_1")
        await relay.delta("job_1", resume_after + 1, "retry text")
        return resume_after, await relay.snapshot("job_1")

    resume_after, snap = asyncio.run(scenario())
    assert resume_after == 3
    assert snap.text == "retry text"
    assert snap.last_seq == 4


def test_begin_attempt_on_fresh_job_starts_at_zero():
    assert asyncio.run(InMemoryStreamRelay().begin_attempt("new")) == 0


def test_slow_subscriber_resyncs_from_snapshot_without_gaps():
    relay = InMemoryStreamRelay(buffer_size=2, heartbeat_s=1.0)

    async def scenario():
        stream = relay.subscribe("job_s")
        await stream.__anext__()
        for seq in range(1, 5):
            await relay.delta("job_s", seq, str(seq))
        received = [await stream.__anext__() for _ in range(2)]
        await stream.aclose()
        return received

    received = asyncio.run(scenario())
    assert [(e.type, e.seq) for e in received] == [(DELTA_SNAPSHOT, 3), (DELTA, 4)]
    text = received[0].data["text"] + received[1].data["text"]
    assert text == "1234"
    assert relay.dropped == 1


def test_overflowing_terminal_event_still_reaches_slow_subscriber():
    relay = InMemoryStreamRelay(buffer_size=1, heartbeat_s=1.0)

    async def scenario():
        stream = relay.subscribe("job_t")
        await stream.__anext__()
        await relay.delta("job_t", 1, "a")
        await relay.delta("job_t", 2, "b")
        await relay.done("job_t", {"ok": True})
        return [event async for event in stream]

    events = asyncio.run(scenario())
    assert [e.type for e in events] == [DELTA_SNAPSHOT, DONE]
    assert events[0].data == {"seq": 2, "text": "ab"}


def test_snapshot_expires_after_ttl():
    clock = _Clock()
    relay = InMemoryStreamRelay(ttl_s=10, clock=clock)
    asyncio.run(_publish_partial(relay))
    clock.now += 11
    assert asyncio.run(relay.snapshot("job_1")) is None
    assert relay.prune() == 1


def test_redis_relay_writes_snapshot_keys_and_channel(fake_redis):
    relay = RedisStreamRelay(client=fake_redis, prefix="advice", ttl_s=60)

    async def scenario():
        await _publish_partial(relay)
        await relay.done("job_1", {"ok": True})
        return await relay.snapshot("job_1")

    snap = asyncio.run(scenario())
    assert fake_redis.values["advice:job:job_1:text"] == "## 상권 개요\n- 유동인구 많음"
    assert fake_redis.values["advice:job:job_1:seq"] == "3"
    assert fake_redis.ttls["advice:job:job_1:stage"] == 60
    assert {channel for channel, _ in fake_redis.published} == {"advice:job:job_1"}
    assert snap.last_seq == 3
    assert snap.last_event.type == DONE


def test_redis_relay_subscriber_follows_live_events(fake_redis):
    relay = RedisStreamRelay(client=fake_redis, heartbeat_s=1.0)

    async def scenario():
        stream = relay.subscribe("job_r")
        first = await stream.__anext__()
        await relay.delta("job_r", 1, "a")
        await relay.delta("job_r", 1, "a")
        await relay.error("job_r", "boom")
        rest = [event async for event in stream]
        return first, rest

    first, rest = asyncio.run(scenario())
    assert first.data["stage"] == "subscribed"
    assert [(e.type, e.seq) for e in rest] == [(DELTA, 1), ("error", None)]
    assert rest[-1].data["message"] == "boom"
    assert fake_redis.closed_pubsubs == 1
    assert fake_redis.subscribers["advice:job:job_r"] == []
