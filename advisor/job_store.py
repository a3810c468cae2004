"""Advice job records and cancel flags.

Status only moves forward: ``queued -> active -> completed | failed``; no job
reaches a terminal status without passing through ``active``.
Retries keep a job ``active``; only ``attempts`` changes between them.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Callable

from advisor.errors import ApiError
from advisor.redis_client import create_redis_client
from advisor.settings import AdvisorSettings

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"active"},
    "active": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}
TERMINAL_STATUSES = frozenset({"completed", "failed"})


def new_job_id() -> str:
    return f"adv_{uuid.uuid4().hex}"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_job_record(job_input: Mapping[str, Any]) -> dict[str, Any]:
    now = _utcnow_iso()
    return {
        "job_id": new_job_id(),
        "status": "queued",
        "input": dict(job_input),
        "result": None,
        "failure_reason": None,
        "attempts": 0,
        "created_at": now,
        "updated_at": now,
        "finished_at": None,
    }


def apply_transition(job: dict[str, Any], new_status: str, **fields: Any) -> dict[str, Any]:
    current = str(job.get("status"))
    if new_status != current and new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ApiError(
            code="ADVICE_JOB_TRANSITION_INVALID",
            message=f"invalid transition: {current} -> {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
    if new_status == current and current in TERMINAL_STATUSES:
        raise ApiError(
            code="ADVICE_JOB_TRANSITION_INVALID",
            message=f"job already {current}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
    updated = dict(job)
    updated.update(fields)
    updated["status"] = new_status
    updated["updated_at"] = _utcnow_iso()
    if new_status in TERMINAL_STATUSES:
        updated["finished_at"] = updated["updated_at"]
    return updated


class InMemoryJobStore:
    def __init__(
        self,
        *,
        completed_ttl_s: int = 600,
        failed_ttl_s: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.completed_ttl_s = completed_ttl_s
        self.failed_ttl_s = failed_ttl_s
        self._clock = clock
        self._jobs: dict[str, dict[str, Any]] = {}
        self._expires_at: dict[str, float] = {}
        self._cancel_flags: dict[str, float] = {}

    def _ttl_for(self, status: str) -> int:
        return self.completed_ttl_s if status == "completed" else self.failed_ttl_s

    async def create(self, job: dict[str, Any]) -> dict[str, Any]:
        if job["job_id"] in self._jobs:
            raise ApiError(
                code="ADVICE_JOB_DUPLICATE",
                message=f"job id already used: {job['job_id']}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        self._jobs[job["job_id"]] = dict(job)
        return dict(job)

    async def get(self, job_id: str) -> dict[str, Any] | None:
        self.prune()
        job = self._jobs.get(job_id)
        return dict(job) if job is not None else None

    async def update(self, job_id: str, **fields: Any) -> dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        job.update(fields)
        job["updated_at"] = _utcnow_iso()
        return dict(job)

    async def transition(self, job_id: str, new_status: str, **fields: Any) -> dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        updated = apply_transition(job, new_status, **fields)
        self._jobs[job_id] = updated
        if new_status in TERMINAL_STATUSES:
            self._expires_at[job_id] = self._clock() + self._ttl_for(new_status)
        return dict(updated)

    async def request_cancel(self, job_id: str, *, ttl_s: int) -> None:
        self._cancel_flags[job_id] = self._clock() + max(1, ttl_s)

    async def is_cancel_requested(self, job_id: str) -> bool:
        expires_at = self._cancel_flags.get(job_id)
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            self._cancel_flags.pop(job_id, None)
            return False
        return True

    def prune(self) -> int:
        now = self._clock()
        expired = [job_id for job_id, at in self._expires_at.items() if at <= now]
        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._expires_at.pop(job_id, None)
        return len(expired)


class RedisJobStore:
    """Job records as JSON strings; terminal records get ``EX`` so Redis prunes them."""

    def __init__(
        self,
        *,
        client: Any,
        prefix: str = "advice",
        completed_ttl_s: int = 600,
        failed_ttl_s: int = 3600,
    ) -> None:
        self._client = client
        self._prefix = prefix.strip() or "advice"
        self.completed_ttl_s = completed_ttl_s
        self.failed_ttl_s = failed_ttl_s

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:jobrec:{job_id}"

    def _cancel_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}:cancel"

    async def _save(self, job: dict[str, Any], *, ttl_s: int | None = None) -> None:
        raw = json.dumps(job, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        if ttl_s:
            await self._client.set(self._job_key(job["job_id"]), raw, ex=ttl_s)
        else:
            await self._client.set(self._job_key(job["job_id"]), raw)

    async def create(self, job: dict[str, Any]) -> dict[str, Any]:
        raw = json.dumps(job, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        created = await self._client.set(self._job_key(job["job_id"]), raw, nx=True)
        if not created:
            raise ApiError(
                code="ADVICE_JOB_DUPLICATE",
                message=f"job id already used: {job['job_id']}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        return dict(job)

    async def get(self, job_id: str) -> dict[str, Any] | None:
        raw = await self._client.get(self._job_key(job_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    async def update(self, job_id: str, **fields: Any) -> dict[str, Any]:
        job = await self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        job.update(fields)
        job["updated_at"] = _utcnow_iso()
        await self._save(job)
        return job

    async def transition(self, job_id: str, new_status: str, **fields: Any) -> dict[str, Any]:
        job = await self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        updated = apply_transition(job, new_status, **fields)
        ttl = None
        if new_status in TERMINAL_STATUSES:
            ttl = self.completed_ttl_s if new_status == "completed" else self.failed_ttl_s
        await self._save(updated, ttl_s=ttl)
        return updated

    async def request_cancel(self, job_id: str, *, ttl_s: int) -> None:
        await self._client.set(self._cancel_key(job_id), "1", ex=max(1, ttl_s))

    async def is_cancel_requested(self, job_id: str) -> bool:
        return bool(await self._client.exists(self._cancel_key(job_id)))

    def prune(self) -> int:
        return 0


JobStore = InMemoryJobStore | RedisJobStore


def create_job_store_from_settings(settings: AdvisorSettings) -> JobStore:
    if settings.queue_backend == "memory":
        return InMemoryJobStore(completed_ttl_s=settings.completed_ttl_s, failed_ttl_s=settings.failed_ttl_s)
    if settings.queue_backend == "redis":
        if not settings.redis_dsn:
            raise ValueError("REDIS_DSN must be set when ADVICE_QUEUE_BACKEND=redis")
        return RedisJobStore(
            client=create_redis_client(settings.redis_dsn),
            prefix=settings.key_prefix,
            completed_ttl_s=settings.completed_ttl_s,
            failed_ttl_s=settings.failed_ttl_s,
        )
    raise RuntimeError(f"unsupported job store backend: {settings.queue_backend}")
