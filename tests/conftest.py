import asyncio
import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from advisor.main import create_app
from advisor.mock_llm import MockChatBackend
from advisor.runtime import build_runtime
from advisor.settings import AdvisorSettings


def fast_settings(**overrides) -> AdvisorSettings:
    values = {
        "worker_concurrency": 2,
        "retry_backoff_base_ms": 1,
        "retry_backoff_max_ms": 5,
        "retry_jitter_ms": 0,
        "poll_interval_ms": 5,
        "flush_interval_ms": 5,
        "heartbeat_s": 0.05,
    }
    values.update(overrides)
    return AdvisorSettings(**values)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch):
    for name in ("OPENAI_API_KEY", "REDIS_DSN", "CHROMA_HOST", "CHROMA_PERSIST_DIR", "ADVISOR_PROMPTS_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MOCK_LLM_ENABLED", "true")
    monkeypatch.setenv("ADVISOR_REQUIRE_TRUESTACK", "false")
    yield


@pytest.fixture
def settings() -> AdvisorSettings:
    return fast_settings()


@pytest.fixture
def runtime(settings: AdvisorSettings):
    return build_runtime(settings, environ={}, backend=MockChatBackend(chunk_chars=16))


@pytest.fixture
def client(runtime):
    app = create_app(runtime, inprocess_worker=True)
    with TestClient(app) as test_client:
        yield test_client


class FakePubSub:
    def __init__(self, redis: "FakeAsyncRedis") -> None:
        self._redis = redis
        self._queue: asyncio.Queue = asyncio.Queue()
        self.channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        self.channels.add(channel)
        self._redis.subscribers.setdefault(channel, []).append(self._queue)

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)
        queues = self._redis.subscribers.get(channel, [])
        if self._queue in queues:
            queues.remove(self._queue)

    async def get_message(self, *, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=max(timeout, 0.001))
        except asyncio.TimeoutError:
            return None

    async def aclose(self) -> None:
        self._redis.closed_pubsubs += 1


class FakePipeline:
    def __init__(self, redis: "FakeAsyncRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    def __getattr__(self, name: str):
        def _queue_op(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return _queue_op

    async def execute(self) -> list:
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops.clear()
        return results


class FakeAsyncRedis:
    """Just enough of ``redis.asyncio.Redis`` (decode_responses=True) for the advice backends."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.subscribers: dict[str, list[asyncio.Queue]] = {}
        self.published: list[tuple[str, str]] = []
        self.closed_pubsubs = 0

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex:
            self.ttls[key] = int(ex)
        return True

    async def mget(self, keys):
        return [self.values.get(k) for k in keys]

    async def append(self, key, value):
        self.values[key] = self.values.get(key, "") + str(value)
        return len(self.values[key])

    async def expire(self, key, seconds):
        if key in self.values:
            self.ttls[key] = int(seconds)
            return True
        return False

    async def exists(self, key):
        return 1 if key in self.values else 0

    async def delete(self, key):
        existed = key in self.values
        self.values.pop(key, None)
        return 1 if existed else 0

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def lpop(self, key):
        items = self.lists.get(key) or []
        return items.pop(0) if items else None

    async def llen(self, key):
        return len(self.lists.get(key) or [])

    async def sadd(self, key, value):
        self.sets.setdefault(key, set()).add(value)
        return 1

    async def srem(self, key, value):
        self.sets.setdefault(key, set()).discard(value)
        return 1

    async def publish(self, channel, message):
        self.published.append((channel, message))
        for queue in self.subscribers.get(channel, []):
            queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(self.subscribers.get(channel, []))

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def pubsub(self):
        return FakePubSub(self)


@pytest.fixture
def fake_redis() -> FakeAsyncRedis:
    return FakeAsyncRedis()
