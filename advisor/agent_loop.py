"""Bounded tool-calling loop followed by one streamed, tool-free completion.

Per run:
  - at most ``max_rounds`` tool-enabled completions; a reply without tool
    calls ends the loop early
  - calls are memoized by ``tool + normalized args``; memo hits never
    execute and never count against the tool's cap
  - once a tool reaches its cap, further calls get the best earlier result
    (``reused``) or a ``skipped`` stub
  - calls from one round execute concurrently; their results are appended
    to the transcript in request order
  - tool failures become ``ok: false`` results and the loop continues
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Callable

from advisor.errors import JobCancelled
from advisor.llm_provider import ChatBackend, ToolCall
from advisor.stream_relay import StreamRelay
from advisor.tools_registry import ToolHints, ToolRegistry

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], Awaitable[bool]]


@dataclass
class ToolCallRecord:
    tool_name: str
    args_hash: str
    result: dict[str, Any]
    cache_hit: bool = False
    memo_hit: bool = False
    reused: bool = False
    skipped: bool = False
    invocation_index: int = 0

    @property
    def executed(self) -> bool:
        return self.invocation_index > 0


@dataclass
class AgentRunResult:
    text: str
    records: list[ToolCallRecord]
    rounds: int
    last_seq: int
    transcript: list[dict[str, Any]] = field(default_factory=list)

    def executions(self, tool_name: str) -> int:
        return sum(1 for r in self.records if r.tool_name == tool_name and r.executed)


class DeltaBatcher:
    """Coalesces streamed chunks into ``delta`` events every ``flush_interval_ms``."""

    def __init__(
        self,
        relay: StreamRelay,
        job_id: str,
        *,
        flush_interval_ms: int = 80,
        start_seq: int = 0,
        maxsize: int = 256,
    ) -> None:
        self._relay = relay
        self._job_id = job_id
        self._interval_s = max(1, flush_interval_ms) / 1000.0
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max(1, maxsize))
        self._task: asyncio.Task | None = None
        self.seq = start_seq
        self.parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self.parts)

    async def __aenter__(self) -> "DeltaBatcher":
        self._task = asyncio.create_task(self._flush_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._task is None:
            return
        if exc_type is None:
            await self._enqueue(None)
            await self._task
            return
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    async def put(self, chunk: str) -> None:
        if chunk:
            await self._enqueue(chunk)

    def _raise_if_stopped(self) -> None:
        if self._task is None or not self._task.done():
            return
        exc = None if self._task.cancelled() else self._task.exception()
        raise exc or RuntimeError(f"delta flusher stopped for job {self._job_id}")

    async def _enqueue(self, item: str | None) -> None:
        # A full queue waits on the flusher; if the flusher dies first its error surfaces here.
        self._raise_if_stopped()
        try:
            self._queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass
        if self._task is None:
            await self._queue.put(item)
            return
        waiter = asyncio.ensure_future(self._queue.put(item))
        await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if waiter.done():
            return
        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)
        self._raise_if_stopped()

    async def _emit(self, chunk: str) -> None:
        self.seq += 1
        self.parts.append(chunk)
        await self._relay.delta(self._job_id, self.seq, chunk)

    async def _flush_loop(self) -> None:
        loop = asyncio.get_running_loop()
        closing = False
        while not closing:
            first = await self._queue.get()
            if first is None:
                return
            buffer = [first]
            deadline = loop.time() + self._interval_s
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                if item is None:
                    closing = True
                    break
                buffer.append(item)
            await self._emit("".join(buffer))


def _result_quality(result: dict[str, Any]) -> tuple[int, float, int]:
    docs = result.get("documents") or []
    top = max((float(d.get("final_score") or 0.0) for d in docs), default=0.0)
    items = len(docs) + len(result.get("places") or []) + (1 if result.get("found") else 0)
    return (1 if result.get("ok") else 0, top, items)


@dataclass
class _RunState:
    caps: dict[str, int]
    counts: dict[str, int] = field(default_factory=dict)
    memo: dict[str, dict[str, Any]] = field(default_factory=dict)
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


class ToolCallingAgent:
    def __init__(
        self,
        *,
        backend: ChatBackend,
        registry: ToolRegistry,
        relay: StreamRelay,
        max_rounds: int = 3,
        flush_interval_ms: int = 80,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.relay = relay
        self.max_rounds = max(0, max_rounds)
        self.flush_interval_ms = flush_interval_ms

    async def _check_cancel(self, job_id: str, should_cancel: CancelCheck | None) -> None:
        if should_cancel is not None and await should_cancel():
            raise JobCancelled(job_id)

    async def _execute(self, job_id: str, call: ToolCall, hints: ToolHints) -> dict[str, Any]:
        await self.relay.progress(job_id, f"tool:{call.name}")
        return await self.registry.execute(call.name, call.arguments, hints)

    async def run_tool_round(
        self,
        job_id: str,
        calls: list[ToolCall],
        hints: ToolHints,
        state: _RunState,
    ) -> list[ToolCallRecord]:
        # Caps and memo are resolved before anything runs, in request order.
        records: list[ToolCallRecord] = []
        pending: dict[str, asyncio.Future] = {}
        tasks: list[tuple[int, str]] = []
        for call in calls:
            key = self.registry.memo_key(call.name, call.arguments, hints)
            record = ToolCallRecord(tool_name=call.name, args_hash=key, result={})
            if call.name not in self.registry:
                record.result = {"tool": call.name, "ok": False, "error": f"unknown tool: {call.name}"}
            elif key in state.memo:
                record.result = dict(state.memo[key])
                record.memo_hit = True
            elif key in pending:
                record.memo_hit = True
                tasks.append((len(records), key))
            elif state.counts.get(call.name, 0) >= state.caps.get(call.name, 0):
                prior = state.history.get(call.name) or []
                if prior:
                    best = max(prior, key=_result_quality)
                    record.result = {**best, "reused": True}
                    record.reused = True
                else:
                    record.result = {"tool": call.name, "ok": False, "skipped": True, "reason": "call_cap_reached"}
                    record.skipped = True
            else:
                state.counts[call.name] = state.counts.get(call.name, 0) + 1
                record.invocation_index = state.counts[call.name]
                pending[key] = asyncio.ensure_future(self._execute(job_id, call, hints))
                tasks.append((len(records), key))
            records.append(record)

        if pending:
            keys = list(pending)
            outcomes = await asyncio.gather(*(pending[k] for k in keys))
            by_key = dict(zip(keys, outcomes))
            for index, key in tasks:
                result = by_key[key]
                records[index].result = dict(result)
                records[index].cache_hit = bool(result.get("cache_hit"))
            for key, result in by_key.items():
                if result.get("ok"):
                    state.memo[key] = result
                    state.history.setdefault(str(result.get("tool")), []).append(result)
                else:
                    logger.warning("tool call failed job=%s tool=%s: %s", job_id, result.get("tool"), result.get("error"))
        return records

    async def run(
        self,
        job_id: str,
        messages: list[dict[str, Any]],
        hints: ToolHints,
        *,
        final_instruction: str,
        should_cancel: CancelCheck | None = None,
        start_seq: int = 0,
    ) -> AgentRunResult:
        transcript = list(messages)
        tools = self.registry.openai_tools()
        state = _RunState(caps=self.registry.caps())
        all_records: list[ToolCallRecord] = []
        rounds = 0

        for round_no in range(1, self.max_rounds + 1):
            await self._check_cancel(job_id, should_cancel)
            await self.relay.progress(job_id, f"agent_round_{round_no}")
            completion = await self.backend.complete(transcript, tools=tools)
            rounds = round_no
            if not completion.tool_calls:
                break
            transcript.append(
                {
                    "role": "assistant",
                    "content": completion.content or None,
                    "tool_calls": [c.as_message_part() for c in completion.tool_calls],
                }
            )
            records = await self.run_tool_round(job_id, completion.tool_calls, hints, state)
            for call, record in zip(completion.tool_calls, records):
                transcript.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(record.result, ensure_ascii=False),
                    }
                )
            all_records.extend(records)

        await self._check_cancel(job_id, should_cancel)
        await self.relay.progress(job_id, "generating")
        final_messages = transcript + [{"role": "user", "content": final_instruction}]
        async with DeltaBatcher(
            self.relay,
            job_id,
            flush_interval_ms=self.flush_interval_ms,
            start_seq=start_seq,
        ) as batcher:
            async for chunk in self.backend.stream(final_messages):
                await batcher.put(chunk)
        logger.info(
            "agent finished job=%s rounds=%d tool_calls=%d deltas=%d",
            job_id,
            rounds,
            len(all_records),
            batcher.seq - start_seq,
        )
        return AgentRunResult(
            text=batcher.text,
            records=all_records,
            rounds=rounds,
            last_seq=batcher.seq,
            transcript=transcript,
        )
