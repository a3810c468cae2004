from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(
    env: Mapping[str, str],
    name: str,
    *,
    default: float,
    minimum: float = 0.0,
    maximum: float | None = None,
) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    return _as_bool(raw)


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("ADVISOR_REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class AdvisorSettings:
    # job queue & worker
    worker_concurrency: int = 2
    rate_limit_max: int = 10
    rate_limit_window_ms: int = 60_000
    job_attempts: int = 3
    retry_backoff_base_ms: int = 5
    retry_backoff_max_ms: int = 30_000
    retry_jitter_ms: int = 300
    completed_ttl_s: int = 600
    failed_ttl_s: int = 3600
    cancel_flag_ttl_s: int = 600
    poll_interval_ms: int = 200
    # streaming relay
    stream_ttl_s: int = 600
    heartbeat_s: float = 15.0
    flush_interval_ms: int = 80
    subscriber_buffer: int = 256
    # agent loop
    max_rounds: int = 3
    trend_search_cap: int = 2
    rent_lookup_cap: int = 2
    places_search_cap: int = 1
    # retrieval
    recall_k: int = 20
    top_k: int = 5
    cache_ttl_s: int = 3600
    # backends
    queue_backend: str = "memory"
    cache_backend: str = "memory"
    stream_backend: str = "memory"
    redis_dsn: str = ""
    key_prefix: str = "advice"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AdvisorSettings":
        env = os.environ if environ is None else environ
        return cls(
            worker_concurrency=_env_int(env, "ADVICE_WORKER_CONCURRENCY", default=2, minimum=1),
            rate_limit_max=_env_int(env, "ADVICE_RATE_LIMIT_MAX", default=10, minimum=1),
            rate_limit_window_ms=_env_int(env, "ADVICE_RATE_LIMIT_WINDOW_MS", default=60_000, minimum=1),
            job_attempts=_env_int(env, "ADVICE_JOB_ATTEMPTS", default=3, minimum=1),
            retry_backoff_base_ms=_env_int(env, "ADVICE_RETRY_BACKOFF_BASE_MS", default=5, minimum=0),
            retry_backoff_max_ms=_env_int(env, "ADVICE_RETRY_BACKOFF_MAX_MS", default=30_000, minimum=0),
            retry_jitter_ms=_env_int(env, "ADVICE_RETRY_JITTER_MS", default=300, minimum=0),
            completed_ttl_s=_env_int(env, "ADVICE_JOB_COMPLETED_TTL_S", default=600, minimum=1),
            failed_ttl_s=_env_int(env, "ADVICE_JOB_FAILED_TTL_S", default=3600, minimum=1),
            cancel_flag_ttl_s=_env_int(env, "ADVICE_CANCEL_TTL_S", default=600, minimum=1),
            poll_interval_ms=_env_int(env, "ADVICE_WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            stream_ttl_s=_env_int(env, "ADVICE_STREAM_TTL_S", default=600, minimum=1),
            heartbeat_s=_env_float(env, "ADVICE_STREAM_HEARTBEAT_S", default=15.0, minimum=0.01),
            flush_interval_ms=_env_int(env, "ADVICE_STREAM_FLUSH_MS", default=80, minimum=1),
            subscriber_buffer=_env_int(env, "ADVICE_STREAM_SUBSCRIBER_BUFFER", default=256, minimum=1),
            max_rounds=_env_int(env, "ADVICE_AGENT_MAX_ROUNDS", default=3, minimum=0),
            trend_search_cap=_env_int(env, "ADVICE_TOOL_TREND_CAP", default=2, minimum=0),
            rent_lookup_cap=_env_int(env, "ADVICE_TOOL_RENT_CAP", default=2, minimum=0),
            places_search_cap=_env_int(env, "ADVICE_TOOL_PLACES_CAP", default=1, minimum=0),
            recall_k=_env_int(env, "RETRIEVAL_RECALL_K", default=20, minimum=1),
            top_k=_env_int(env, "RETRIEVAL_TOP_K", default=5, minimum=1),
            cache_ttl_s=_env_int(env, "ADVICE_CACHE_TTL_S", default=3600, minimum=1),
            queue_backend=env.get("ADVICE_QUEUE_BACKEND", "memory").strip().lower() or "memory",
            cache_backend=env.get("ADVICE_CACHE_BACKEND", "memory").strip().lower() or "memory",
            stream_backend=env.get("ADVICE_STREAM_BACKEND", "memory").strip().lower() or "memory",
            redis_dsn=env.get("REDIS_DSN", "").strip(),
            key_prefix=env.get("ADVICE_KEY_PREFIX", "advice").strip() or "advice",
        )

    @property
    def tool_caps(self) -> dict[str, int]:
        return {
            "search_trend_docs": self.trend_search_cap,
            "lookup_rent_price": self.rent_lookup_cap,
            "search_nearby_places": self.places_search_cap,
        }
