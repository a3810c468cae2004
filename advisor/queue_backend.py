from __future__ import annotations

import json
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from advisor.redis_client import create_redis_client

ADVICE_QUEUE = "advice"


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _is_available(available_at: Any) -> bool:
    if not isinstance(available_at, str) or not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= datetime.now(UTC)


def _due_at(delay_ms: int) -> str:
    return (datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()


class InMemoryQueueBackend:
    """FIFO queue with delayed redelivery; one event loop, no locking needed."""

    def __init__(self, *, namespace: str = "advice") -> None:
        self._namespace = namespace.strip() or "advice"
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def queue_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}"

    async def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        msg = QueueMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            queue_name=queue_name,
            payload=payload,
            attempt=int(payload.get("attempt", 0)),
            available_at=(
                available_at.astimezone(UTC).isoformat() if isinstance(available_at, datetime) else _utcnow_iso()
            ),
        )
        self._queues.setdefault(self.queue_key(queue_name), deque()).append(msg)
        return msg

    async def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        queue = self._queues.setdefault(self.queue_key(queue_name), deque())
        for _ in range(len(queue)):
            msg = queue.popleft()
            if _is_available(msg.available_at):
                self._inflight[msg.message_id] = msg
                return msg
            queue.append(msg)
        return None

    async def ack(self, *, message_id: str) -> None:
        self._inflight.pop(message_id, None)

    async def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        msg = self._inflight.pop(message_id, None)
        if msg is None:
            return None
        msg.attempt += 1
        if requeue:
            msg.available_at = _due_at(delay_ms)
            self._queues.setdefault(self.queue_key(msg.queue_name), deque()).appendleft(msg)
        return msg

    async def pending_count(self, *, queue_name: str) -> int:
        return len(self._queues.get(self.queue_key(queue_name), deque()))

    def inflight_count(self) -> int:
        return len(self._inflight)


class RedisQueueBackend:
    """Redis list of message ids plus one JSON record per message."""

    def __init__(self, *, client: Any, namespace: str = "advice") -> None:
        self._client = client
        self._namespace = namespace.strip() or "advice"

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    async def _load_msg(self, message_id: str) -> dict[str, Any] | None:
        raw = await self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    async def _save_msg(self, message_id: str, data: dict[str, Any]) -> None:
        await self._client.set(
            self._msg_key(message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: Mapping[str, Any], queue_name: str) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", queue_name)),
            payload=dict(data.get("payload") or {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    async def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        msg = QueueMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            queue_name=queue_name,
            payload=payload,
            attempt=int(payload.get("attempt", 0)),
            available_at=(
                available_at.astimezone(UTC).isoformat() if isinstance(available_at, datetime) else _utcnow_iso()
            ),
        )
        await self._save_msg(
            msg.message_id,
            {
                "queue_name": msg.queue_name,
                "payload": msg.payload,
                "attempt": msg.attempt,
                "status": "pending",
                "available_at": msg.available_at,
            },
        )
        await self._client.rpush(self._pending_key(queue_name), msg.message_id)
        return msg

    async def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        pending_key = self._pending_key(queue_name)
        pending_count = int(await self._client.llen(pending_key))
        for _ in range(max(0, pending_count)):
            message_id = await self._client.lpop(pending_key)
            if not isinstance(message_id, str) or not message_id:
                return None
            data = await self._load_msg(message_id)
            if data is None:
                continue
            if not _is_available(data.get("available_at")):
                await self._client.rpush(pending_key, message_id)
                continue
            data["status"] = "inflight"
            await self._save_msg(message_id, data)
            await self._client.sadd(self._inflight_key(queue_name), message_id)
            return self._to_message(message_id, data, queue_name)
        return None

    async def ack(self, *, message_id: str) -> None:
        data = await self._load_msg(message_id)
        if data is None or data.get("status") != "inflight":
            return
        await self._client.srem(self._inflight_key(str(data.get("queue_name", ADVICE_QUEUE))), message_id)
        await self._client.delete(self._msg_key(message_id))

    async def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        data = await self._load_msg(message_id)
        if data is None or data.get("status") != "inflight":
            return None
        queue_name = str(data.get("queue_name", ADVICE_QUEUE))
        data["attempt"] = int(data.get("attempt", 0)) + 1
        await self._client.srem(self._inflight_key(queue_name), message_id)
        if requeue:
            data["status"] = "pending"
            data["available_at"] = _due_at(delay_ms)
            await self._save_msg(message_id, data)
            await self._client.lpush(self._pending_key(queue_name), message_id)
        else:
            await self._client.delete(self._msg_key(message_id))
        return self._to_message(message_id, data, queue_name)

    async def pending_count(self, *, queue_name: str) -> int:
        return int(await self._client.llen(self._pending_key(queue_name)))


QueueBackend = InMemoryQueueBackend | RedisQueueBackend


def create_queue_from_env(environ: Mapping[str, str]) -> QueueBackend:
    backend_name = str(environ.get("ADVICE_QUEUE_BACKEND", "memory")).strip().lower() or "memory"
    namespace = str(environ.get("ADVICE_KEY_PREFIX", "advice")).strip() or "advice"
    if backend_name == "memory":
        return InMemoryQueueBackend(namespace=namespace)
    if backend_name == "redis":
        dsn = str(environ.get("REDIS_DSN", "")).strip()
        if not dsn:
            raise RuntimeError("REDIS_DSN must be set when ADVICE_QUEUE_BACKEND=redis")
        return RedisQueueBackend(client=create_redis_client(dsn), namespace=namespace)
    raise RuntimeError(f"unsupported queue backend: {backend_name}")
