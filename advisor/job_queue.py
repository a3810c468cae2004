from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from advisor.errors import NotFoundError
from advisor.job_store import TERMINAL_STATUSES, JobStore, new_job_record
from advisor.queue_backend import ADVICE_QUEUE, QueueBackend
from advisor.stream_relay import StreamRelay

logger = logging.getLogger(__name__)


class AdviceJobQueue:
    """Submission side of the advice pipeline: records, queue messages and cancel flags."""

    def __init__(
        self,
        *,
        store: JobStore,
        queue_backend: QueueBackend,
        relay: StreamRelay,
        cancel_ttl_s: int = 600,
        queue_name: str = ADVICE_QUEUE,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.relay = relay
        self.cancel_ttl_s = cancel_ttl_s
        self.queue_name = queue_name

    async def submit(self, job_input: Mapping[str, Any]) -> str:
        # No dedup: identical payloads always get separate jobs.
        job = await self.store.create(new_job_record(job_input))
        job_id = job["job_id"]
        await self.queue_backend.enqueue(queue_name=self.queue_name, payload={"job_id": job_id})
        await self.relay.progress(job_id, "queued")
        logger.info("advice job received: %s district=%s", job_id, job_input.get("district_id"))
        return job_id

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"advice job not found: {job_id}")
        return job

    async def get_status(self, job_id: str) -> dict[str, Any]:
        job = await self.get_job(job_id)
        return {
            "job_id": job_id,
            "status": job["status"],
            "result": job.get("result"),
            "failure_reason": job.get("failure_reason"),
            "attempts": int(job.get("attempts", 0)),
        }

    async def cancel(self, job_id: str) -> dict[str, Any]:
        job = await self.get_job(job_id)
        if job["status"] in TERMINAL_STATUSES:
            return {"job_id": job_id, "status": job["status"]}
        await self.store.request_cancel(job_id, ttl_s=self.cancel_ttl_s)
        await self.relay.progress(job_id, "cancel_requested")
        logger.info("advice job cancel requested: %s", job_id)
        return {"job_id": job_id, "status": "cancel_requested"}
