"""Fan-out of per-job stream events with a resumable snapshot.

Every publish updates the job's snapshot (stage, accumulated text, last
delta seq, terminal event) before it is fanned out, so a late subscriber
can be brought up to date with one ``delta_snapshot`` and then follow the
live stream.  A subscriber that falls ``buffer_size`` events behind has its
backlog replaced by the same kind of ``delta_snapshot``.  Snapshot keys
expire ``ttl_s`` after the last write.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Callable

from advisor.redis_client import create_redis_client
from advisor.settings import AdvisorSettings

logger = logging.getLogger(__name__)

PROGRESS = "progress"
DELTA = "delta"
DELTA_SNAPSHOT = "delta_snapshot"
DONE = "done"
ERROR = "error"
PING = "ping"
TERMINAL_EVENTS = frozenset({DONE, ERROR})


@dataclass(frozen=True)
class StreamEvent:
    type: str
    job_id: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def seq(self) -> int | None:
        if self.type not in {DELTA, DELTA_SNAPSHOT}:
            return None
        return int(self.data.get("seq", 0))

    def to_message(self) -> str:
        return json.dumps({"type": self.type, "data": self.data}, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_message(cls, job_id: str, raw: str) -> "StreamEvent":
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return cls(type="message", job_id=job_id, data={"raw": raw})
        if not isinstance(parsed, dict):
            return cls(type="message", job_id=job_id, data={"raw": parsed})
        data = parsed.get("data")
        return cls(type=str(parsed.get("type") or "message"), job_id=job_id, data=data if isinstance(data, dict) else {})


@dataclass
class StreamSnapshot:
    stage: str | None = None
    text: str = ""
    last_seq: int = 0
    last_event: StreamEvent | None = None


def format_sse(event: StreamEvent, event_id: int) -> str:
    """Encode one SSE frame; multi-line payloads become several ``data:`` lines."""
    payload = json.dumps(event.data, ensure_ascii=False)
    lines = [f"event: {event.type}", f"id: {event_id}"]
    lines.extend(f"data: {line}" for line in payload.split("\n"))
    return "\n".join(lines) + "\n\n"


def _ping(job_id: str) -> StreamEvent:
    return StreamEvent(type=PING, job_id=job_id, data={"t": int(time.time() * 1000), "jobId": job_id})


def _apply(snapshot: StreamSnapshot, event: StreamEvent) -> None:
    if event.type == PROGRESS:
        stage = event.data.get("stage")
        if isinstance(stage, str) and stage:
            snapshot.stage = stage
    elif event.type == DELTA:
        seq = event.seq or 0
        if seq > snapshot.last_seq:
            snapshot.text += str(event.data.get("text", ""))
            snapshot.last_seq = seq
    elif event.type == DELTA_SNAPSHOT:
        snapshot.text = str(event.data.get("text", ""))
        snapshot.last_seq = max(snapshot.last_seq, event.seq or 0)
    elif event.type in TERMINAL_EVENTS:
        snapshot.last_event = event


class _Publisher:
    """Shared producer helpers; subclasses implement ``publish`` and ``snapshot``."""

    async def publish(self, event: StreamEvent) -> None:
        raise NotImplementedError

    async def snapshot(self, job_id: str) -> StreamSnapshot | None:
        raise NotImplementedError

    async def progress(self, job_id: str, stage: str) -> None:
        await self.publish(StreamEvent(type=PROGRESS, job_id=job_id, data={"jobId": job_id, "stage": stage}))

    async def delta(self, job_id: str, seq: int, text: str) -> None:
        await self.publish(StreamEvent(type=DELTA, job_id=job_id, data={"seq": seq, "text": text}))

    async def done(self, job_id: str, result: dict[str, Any]) -> None:
        await self.publish(StreamEvent(type=DONE, job_id=job_id, data={"jobId": job_id, "result": result}))

    async def error(self, job_id: str, message: str) -> None:
        await self.publish(StreamEvent(type=ERROR, job_id=job_id, data={"jobId": job_id, "message": message}))

    async def begin_attempt(self, job_id: str) -> int:
        """Clear partial text left by a failed attempt; returns the seq to continue after."""
        snap = await self.snapshot(job_id)
        if snap is None:
            return 0
        if snap.text:
            await self.publish(
                StreamEvent(type=DELTA_SNAPSHOT, job_id=job_id, data={"seq": snap.last_seq, "text": ""})
            )
        return snap.last_seq

    @staticmethod
    def _replay(job_id: str, snap: StreamSnapshot | None) -> list[StreamEvent]:
        events = [StreamEvent(type=PROGRESS, job_id=job_id, data={"jobId": job_id, "stage": "subscribed"})]
        if snap is None:
            return events
        if snap.stage:
            events.append(StreamEvent(type=PROGRESS, job_id=job_id, data={"jobId": job_id, "stage": snap.stage}))
        if snap.text:
            events.append(
                StreamEvent(type=DELTA_SNAPSHOT, job_id=job_id, data={"seq": snap.last_seq, "text": snap.text})
            )
        if snap.last_event is not None:
            events.append(snap.last_event)
        return events


@dataclass
class _JobChannel:
    snapshot: StreamSnapshot = field(default_factory=StreamSnapshot)
    expires_at: float = 0.0
    subscribers: set[asyncio.Queue] = field(default_factory=set)


class InMemoryStreamRelay(_Publisher):
    def __init__(
        self,
        *,
        ttl_s: int = 600,
        heartbeat_s: float = 15.0,
        buffer_size: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = max(1, ttl_s)
        self.heartbeat_s = heartbeat_s
        self.buffer_size = max(1, buffer_size)
        self._clock = clock
        self._channels: dict[str, _JobChannel] = {}
        self.dropped = 0

    def _channel(self, job_id: str) -> _JobChannel:
        channel = self._channels.get(job_id)
        if channel is not None and channel.expires_at <= self._clock():
            channel.snapshot = StreamSnapshot()
        if channel is None:
            channel = _JobChannel()
            self._channels[job_id] = channel
        return channel

    def _offer(self, queue: asyncio.Queue, channel: _JobChannel, event: StreamEvent) -> None:
        if queue.qsize() < self.buffer_size:
            queue.put_nowait(event)
            return
        # Slow subscriber: replace its backlog with the snapshot so no delta goes missing.
        while not queue.empty():
            queue.get_nowait()
        self.dropped += 1
        snap = channel.snapshot
        if snap.text or snap.last_seq:
            queue.put_nowait(
                StreamEvent(type=DELTA_SNAPSHOT, job_id=event.job_id, data={"seq": snap.last_seq, "text": snap.text})
            )
        if event.type not in {DELTA, DELTA_SNAPSHOT}:
            queue.put_nowait(event)

    async def publish(self, event: StreamEvent) -> None:
        channel = self._channel(event.job_id)
        _apply(channel.snapshot, event)
        channel.expires_at = self._clock() + self.ttl_s
        for queue in list(channel.subscribers):
            self._offer(queue, channel, event)

    async def snapshot(self, job_id: str) -> StreamSnapshot | None:
        channel = self._channels.get(job_id)
        if channel is None or channel.expires_at <= self._clock():
            return None
        snap = channel.snapshot
        if snap.stage is None and not snap.text and snap.last_event is None:
            return None
        return StreamSnapshot(stage=snap.stage, text=snap.text, last_seq=snap.last_seq, last_event=snap.last_event)

    def subscriber_count(self, job_id: str) -> int:
        channel = self._channels.get(job_id)
        return len(channel.subscribers) if channel else 0

    def prune(self) -> int:
        now = self._clock()
        stale = [jid for jid, ch in self._channels.items() if ch.expires_at <= now and not ch.subscribers]
        for job_id in stale:
            self._channels.pop(job_id, None)
        return len(stale)

    async def subscribe(self, job_id: str, *, heartbeat_s: float | None = None) -> AsyncIterator[StreamEvent]:
        interval = heartbeat_s or self.heartbeat_s
        channel = self._channels.setdefault(job_id, _JobChannel())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.buffer_size + 1)
        channel.subscribers.add(queue)
        try:
            snap = await self.snapshot(job_id)
            for event in self._replay(job_id, snap):
                yield event
            if snap is not None and snap.last_event is not None:
                return
            last_seq = snap.last_seq if snap else 0
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=interval)
                except asyncio.TimeoutError:
                    yield _ping(job_id)
                    continue
                seq = event.seq
                if event.type == DELTA and seq is not None and seq <= last_seq:
                    continue
                if seq is not None:
                    last_seq = max(last_seq, seq)
                yield event
                if event.type in TERMINAL_EVENTS:
                    return
        finally:
            channel.subscribers.discard(queue)


class RedisStreamRelay(_Publisher):
    """Redis pub/sub channel ``<prefix>:job:<id>`` plus ``:stage/:seq/:text/:last`` snapshot keys."""

    def __init__(
        self,
        *,
        client: Any,
        prefix: str = "advice",
        ttl_s: int = 600,
        heartbeat_s: float = 15.0,
    ) -> None:
        self._client = client
        self._prefix = prefix.strip() or "advice"
        self.ttl_s = max(1, ttl_s)
        self.heartbeat_s = heartbeat_s

    def channel(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def prune(self) -> int:
        return 0

    def _keys(self, job_id: str) -> dict[str, str]:
        base = self.channel(job_id)
        return {name: f"{base}:{name}" for name in ("stage", "seq", "text", "last")}

    async def publish(self, event: StreamEvent) -> None:
        keys = self._keys(event.job_id)
        async with self._client.pipeline(transaction=True) as pipe:
            if event.type == PROGRESS and event.data.get("stage"):
                pipe.set(keys["stage"], str(event.data["stage"]), ex=self.ttl_s)
            elif event.type == DELTA:
                pipe.append(keys["text"], str(event.data.get("text", "")))
                pipe.set(keys["seq"], str(event.seq or 0), ex=self.ttl_s)
            elif event.type == DELTA_SNAPSHOT:
                pipe.set(keys["text"], str(event.data.get("text", "")), ex=self.ttl_s)
                pipe.set(keys["seq"], str(event.seq or 0), ex=self.ttl_s)
            elif event.type in TERMINAL_EVENTS:
                pipe.set(keys["last"], event.to_message(), ex=self.ttl_s)
            for key in keys.values():
                pipe.expire(key, self.ttl_s)
            pipe.publish(self.channel(event.job_id), event.to_message())
            await pipe.execute()

    async def snapshot(self, job_id: str) -> StreamSnapshot | None:
        keys = self._keys(job_id)
        stage, seq, text, last = await self._client.mget([keys["stage"], keys["seq"], keys["text"], keys["last"]])
        if not stage and not text and not last:
            return None
        try:
            last_seq = int(seq or 0)
        except ValueError:
            last_seq = 0
        return StreamSnapshot(
            stage=stage or None,
            text=text or "",
            last_seq=last_seq,
            last_event=StreamEvent.from_message(job_id, last) if last else None,
        )

    async def subscribe(self, job_id: str, *, heartbeat_s: float | None = None) -> AsyncIterator[StreamEvent]:
        interval = heartbeat_s or self.heartbeat_s
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self.channel(job_id))
        try:
            snap = await self.snapshot(job_id)
            for event in self._replay(job_id, snap):
                yield event
            if snap is not None and snap.last_event is not None:
                return
            last_seq = snap.last_seq if snap else 0
            next_ping = time.monotonic() + interval
            while True:
                timeout = max(0.0, next_ping - time.monotonic())
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
                if message is None:
                    if time.monotonic() >= next_ping:
                        yield _ping(job_id)
                        next_ping = time.monotonic() + interval
                    continue
                event = StreamEvent.from_message(job_id, str(message.get("data", "")))
                seq = event.seq
                if event.type == DELTA and seq is not None and seq <= last_seq:
                    continue
                if seq is not None:
                    last_seq = max(last_seq, seq)
                yield event
                if event.type in TERMINAL_EVENTS:
                    return
        finally:
            await pubsub.unsubscribe(self.channel(job_id))
            await pubsub.aclose()


StreamRelay = InMemoryStreamRelay | RedisStreamRelay


def create_stream_relay_from_settings(settings: AdvisorSettings) -> StreamRelay:
    backend_name = settings.stream_backend
    if backend_name == "memory":
        return InMemoryStreamRelay(
            ttl_s=settings.stream_ttl_s,
            heartbeat_s=settings.heartbeat_s,
            buffer_size=settings.subscriber_buffer,
        )
    if backend_name == "redis":
        if not settings.redis_dsn:
            raise ValueError("REDIS_DSN must be set when ADVICE_STREAM_BACKEND=redis")
        return RedisStreamRelay(
            client=create_redis_client(settings.redis_dsn),
            prefix=settings.key_prefix,
            ttl_s=settings.stream_ttl_s,
            heartbeat_s=settings.heartbeat_s,
        )
    raise RuntimeError(f"unsupported stream backend: {backend_name}")
