from __future__ import annotations

import asyncio

import pytest

from advisor.queue_backend import InMemoryQueueBackend, RedisQueueBackend, create_queue_from_env


def test_in_memory_queue_is_fifo():
    q = InMemoryQueueBackend()

    async def scenario():
        await q.enqueue(queue_name="advice", payload={"job_id": "a"})
        await q.enqueue(queue_name="advice", payload={"job_id": "b"})
        first = await q.dequeue(queue_name="advice")
        second = await q.dequeue(queue_name="advice")
        empty = await q.dequeue(queue_name="advice")
        return first, second, empty

    first, second, empty = asyncio.run(scenario())
    assert [first.payload["job_id"], second.payload["job_id"]] == ["a", "b"]
    assert empty is None
    assert q.inflight_count() == 2


def test_queue_nack_requeues_with_attempt_increment():
    q = InMemoryQueueBackend()

    async def scenario():
        enqueued = await q.enqueue(queue_name="advice", payload={"job_id": "job_1"})
        msg = await q.dequeue(queue_name="advice")
        nack = await q.nack(message_id=msg.message_id, requeue=True)
        pending = await q.pending_count(queue_name="advice")
        replay = await q.dequeue(queue_name="advice")
        return enqueued, nack, pending, replay

    enqueued, nack, pending, replay = asyncio.run(scenario())
    assert nack.attempt == 1
    assert pending == 1
    assert replay.message_id == enqueued.message_id
    assert replay.attempt == 1


def test_delayed_message_is_not_redelivered_early():
    q = InMemoryQueueBackend()

    async def scenario():
        await q.enqueue(queue_name="advice", payload={"job_id": "slow"})
        msg = await q.dequeue(queue_name="advice")
        await q.nack(message_id=msg.message_id, delay_ms=60_000)
        return await q.dequeue(queue_name="advice"), await q.pending_count(queue_name="advice")

    early, pending = asyncio.run(scenario())
    assert early is None
    assert pending == 1


def test_ack_removes_inflight_message():
    q = InMemoryQueueBackend()

    async def scenario():
        await q.enqueue(queue_name="advice", payload={"job_id": "x"})
        msg = await q.dequeue(queue_name="advice")
        await q.ack(message_id=msg.message_id)
        return await q.nack(message_id=msg.message_id)

    assert asyncio.run(scenario()) is None
    assert q.inflight_count() == 0


def test_redis_queue_lifecycle(fake_redis):
    q = RedisQueueBackend(client=fake_redis, namespace="advice")

    async def scenario():
        await q.enqueue(queue_name="advice", payload={"job_id": "r1"})
        msg = await q.dequeue(queue_name="advice")
        inflight = set(fake_redis.sets["advice:queue:advice:inflight"])
        nack = await q.nack(message_id=msg.message_id, requeue=True)
        replay = await q.dequeue(queue_name="advice")
        await q.ack(message_id=replay.message_id)
        return msg, inflight, nack, replay

    msg, inflight, nack, replay = asyncio.run(scenario())
    assert msg.payload == {"job_id": "r1"}
    assert inflight == {msg.message_id}
    assert nack.attempt == 1
    assert replay.attempt == 1
    assert f"advice:msg:{msg.message_id}" not in fake_redis.values
    assert fake_redis.sets["advice:queue:advice:inflight"] == set()


def test_queue_factory_defaults_to_memory():
    assert isinstance(create_queue_from_env({}), InMemoryQueueBackend)


def test_queue_factory_rejects_unsupported_backend():
    with pytest.raises(RuntimeError, match="unsupported queue backend"):
        create_queue_from_env({"ADVICE_QUEUE_BACKEND": "rabbitmq"})


def test_queue_factory_requires_dsn_for_redis():
    with pytest.raises(RuntimeError, match="REDIS_DSN"):
        create_queue_from_env({"ADVICE_QUEUE_BACKEND": "redis"})
