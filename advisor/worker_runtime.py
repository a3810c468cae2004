from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any

from advisor.advice_service import AdviceService
from advisor.errors import ApiError, JobCancelled
from advisor.job_store import TERMINAL_STATUSES, JobStore
from advisor.queue_backend import ADVICE_QUEUE, QueueBackend, QueueMessage
from advisor.rate_limiter import SlidingWindowRateLimiter
from advisor.settings import AdvisorSettings
from advisor.stream_relay import StreamRelay

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    cancelled: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "acked": self.acked,
            "requeued": self.requeued,
        }

    def merge(self, other: "WorkerRunStats") -> None:
        for key, value in other.as_dict().items():
            setattr(self, key, getattr(self, key) + value)


def retry_jitter_ms(*, job_id: str, attempt: int, bound_ms: int = 300) -> int:
    if bound_ms <= 0:
        return 0
    seed = f"{job_id}:{attempt}".encode("utf-8")
    digest = hashlib.sha256(seed).digest()
    return int.from_bytes(digest[:2], byteorder="big") % (bound_ms + 1)


def retry_backoff_ms(*, job_id: str, attempt: int, base_ms: int, max_ms: int, jitter_ms: int = 300) -> int:
    normalized = max(1, int(attempt))
    base = max(0, int(base_ms))
    cap = max(base, int(max_ms))
    exponential = base * (2 ** (normalized - 1))
    return min(cap, exponential) + retry_jitter_ms(job_id=job_id, attempt=normalized, bound_ms=jitter_ms)


class AdviceWorker:
    """Pool of ``concurrency`` asyncio tasks draining the advice queue."""

    def __init__(
        self,
        *,
        store: JobStore,
        queue_backend: QueueBackend,
        relay: StreamRelay,
        service: AdviceService,
        limiter: SlidingWindowRateLimiter,
        settings: AdvisorSettings | None = None,
        queue_name: str = ADVICE_QUEUE,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.relay = relay
        self.service = service
        self.limiter = limiter
        self.settings = settings or AdvisorSettings()
        self.queue_name = queue_name
        self.concurrency = max(1, self.settings.worker_concurrency)
        self.poll_interval_s = max(1, self.settings.poll_interval_ms) / 1000.0

    async def _fail(self, job_id: str, reason: str, stats: WorkerRunStats) -> None:
        await self.store.transition(job_id, "failed", failure_reason=reason)
        await self.relay.error(job_id, reason)
        stats.failed += 1

    async def _process_message(self, msg: QueueMessage, stats: WorkerRunStats) -> None:
        stats.processed += 1
        job_id = str(msg.payload.get("job_id") or "")
        job = await self.store.get(job_id) if job_id else None
        if job is None or job["status"] in TERMINAL_STATUSES:
            await self.queue_backend.ack(message_id=msg.message_id)
            stats.acked += 1
            return

        async def should_cancel() -> bool:
            return await self.store.is_cancel_requested(job_id)

        if await should_cancel():
            logger.info("advice job cancelled before start: %s", job_id)
            if job["status"] == "queued":
                await self.store.transition(job_id, "active")
            await self._fail(job_id, CANCELLED_REASON, stats)
            stats.cancelled += 1
            await self.queue_backend.ack(message_id=msg.message_id)
            stats.acked += 1
            return

        await self.limiter.acquire()
        attempt = int(job.get("attempts", 0)) + 1
        if job["status"] == "queued":
            job = await self.store.transition(job_id, "active", attempts=attempt)
        else:
            job = await self.store.update(job_id, attempts=attempt)
        await self.relay.progress(job_id, "started")

        try:
            result = await self.service.run(job, should_cancel=should_cancel)
        except JobCancelled:
            logger.info("advice job cancelled: %s (attempt %d)", job_id, attempt)
            await self._fail(job_id, CANCELLED_REASON, stats)
            stats.cancelled += 1
        except ApiError as exc:
            if exc.retryable and attempt < self.settings.job_attempts:
                await self._retry(job_id, msg, attempt, exc, stats)
                return
            logger.info("advice job failed: %s code=%s %s", job_id, exc.code, exc.message)
            await self._fail(job_id, exc.message, stats)
        except Exception as exc:
            if attempt < self.settings.job_attempts:
                await self._retry(job_id, msg, attempt, exc, stats)
                return
            reason = f"{type(exc).__name__}: {exc}"
            logger.error("advice job failed after %d attempts: %s %s", attempt, job_id, reason)
            await self._fail(job_id, reason, stats)
        else:
            await self.store.transition(job_id, "completed", result=result)
            await self.relay.done(job_id, result)
            stats.succeeded += 1
            logger.info("advice job completed: %s (attempt %d)", job_id, attempt)
        await self.queue_backend.ack(message_id=msg.message_id)
        stats.acked += 1

    async def _retry(
        self,
        job_id: str,
        msg: QueueMessage,
        attempt: int,
        exc: Exception,
        stats: WorkerRunStats,
    ) -> None:
        delay_ms = retry_backoff_ms(
            job_id=job_id,
            attempt=attempt,
            base_ms=self.settings.retry_backoff_base_ms,
            max_ms=self.settings.retry_backoff_max_ms,
            jitter_ms=self.settings.retry_jitter_ms,
        )
        logger.warning(
            "advice job retrying: %s attempt=%d/%d delay_ms=%d error=%s",
            job_id,
            attempt,
            self.settings.job_attempts,
            delay_ms,
            exc,
        )
        await self.store.update(job_id, last_error=str(exc))
        await self.queue_backend.nack(message_id=msg.message_id, requeue=True, delay_ms=delay_ms)
        stats.requeued += 1
        stats.retrying += 1

    async def run_once(self) -> dict[str, int]:
        """Pull up to ``concurrency`` ready messages and process them concurrently."""
        stats = WorkerRunStats()
        messages: list[QueueMessage] = []
        for _ in range(self.concurrency):
            msg = await self.queue_backend.dequeue(queue_name=self.queue_name)
            if msg is None:
                break
            messages.append(msg)
        await asyncio.gather(*(self._process_message(m, stats) for m in messages))
        return stats.as_dict()

    async def drain(self, *, max_iterations: int = 1000) -> dict[str, int]:
        """Run until the queue is empty, sleeping through backoff delays."""
        aggregate = WorkerRunStats()
        for _ in range(max(1, max_iterations)):
            current = await self.run_once()
            aggregate.merge(WorkerRunStats(**current))
            if current["processed"] == 0:
                if await self.queue_backend.pending_count(queue_name=self.queue_name) == 0:
                    break
                await asyncio.sleep(self.poll_interval_s)
        return aggregate.as_dict()

    async def _loop(self, stop: asyncio.Event, aggregate: WorkerRunStats) -> None:
        while not stop.is_set():
            msg = await self.queue_backend.dequeue(queue_name=self.queue_name)
            if msg is None:
                self.store.prune()
                self.relay.prune()
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval_s)
                except asyncio.TimeoutError:
                    pass
                continue
            stats = WorkerRunStats()
            try:
                await self._process_message(msg, stats)
            except Exception:
                # Keep the pool alive; the message stays unacked for inspection.
                logger.exception("advice worker crashed on message %s", msg.message_id)
            aggregate.merge(stats)

    async def run_forever(self, *, stop: asyncio.Event | None = None) -> dict[str, int]:
        stop_event = stop or asyncio.Event()
        aggregate = WorkerRunStats()
        logger.info("AdviceWorker started: concurrency=%d queue=%s", self.concurrency, self.queue_name)
        await asyncio.gather(*(self._loop(stop_event, aggregate) for _ in range(self.concurrency)))
        logger.info("AdviceWorker stopped: %s", aggregate.as_dict())
        return aggregate.as_dict()


def describe_worker(worker: AdviceWorker) -> dict[str, Any]:
    return {
        "concurrency": worker.concurrency,
        "queue": worker.queue_name,
        "rate_limit": {"max": worker.limiter.max_starts, "window_s": worker.limiter.window_s},
        "attempts": worker.settings.job_attempts,
    }
